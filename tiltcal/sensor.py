#!/usr/bin/env python3
"""
sensor.py — Accelerometer sources feeding the tilt estimator.

Packet (18 bytes, ICM-42688-P via Arty A7 UART):
  [0xAA][0x55][AX_H][AX_L][AY_H][AY_L][AZ_H][AZ_L]
  [GX_H][GX_L][GY_H][GY_L][GZ_H][GZ_L][T_H][T_L][0x0D][0x0A]

A source exposes an availability check, an update-interval setting and a
subscribe/remove pair delivering :class:`AccelSample` objects to a listener.
Only the accelerometer part of each packet is used.
"""

from __future__ import annotations

import glob
import logging
import math
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

import numpy as np
import serial
import serial.tools.list_ports

log = logging.getLogger(__name__)

# ── Sensor constants ────────────────────────────────────────────────────────
BAUD       = 115_200
PKT_LEN    = 18
HEADER     = b"\xAA\x55"
TRAILER    = b"\x0D\x0A"
ACCEL_LSB  = 2048.0     # LSB/g   (±16 g)

DEFAULT_INTERVAL = 0.05  # s  (≈20 Hz delivery)


class SensorUnavailableError(RuntimeError):
    """Raised when a sensor source reports it cannot deliver samples."""


@dataclass(frozen=True)
class AccelSample:
    """One raw acceleration reading (sensor frame, g)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "AccelSample":
        """Build a sample from loosely-typed input; bad fields become 0."""
        if not isinstance(data, Mapping):
            return cls()
        return cls(*(_safe_value(data.get(k)) for k in ("x", "y", "z")))


def _safe_value(v: Any) -> float:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0.0
    v = float(v)
    return v if math.isfinite(v) else 0.0


Listener = Callable[[AccelSample], None]


class Subscription(Protocol):
    def remove(self) -> None: ...


class AccelSource(Protocol):
    """Capability consumed by the calibration session."""

    def is_available(self) -> bool: ...

    def set_update_interval(self, interval: float) -> None: ...

    def subscribe(self, listener: Listener) -> Subscription: ...


# ── Packet framing ──────────────────────────────────────────────────────────

def _s16(hi: int, lo: int) -> int:
    v = (hi << 8) | lo
    return v - 0x10000 if v >= 0x8000 else v


def decode_packet(pkt: bytes) -> AccelSample:
    """Scale the accel words of one framed packet to g."""
    if len(pkt) != PKT_LEN or pkt[:2] != HEADER or pkt[-2:] != TRAILER:
        raise ValueError(f"Malformed packet: {pkt.hex(' ')}")
    return AccelSample(
        x=_s16(pkt[2], pkt[3]) / ACCEL_LSB,
        y=_s16(pkt[4], pkt[5]) / ACCEL_LSB,
        z=_s16(pkt[6], pkt[7]) / ACCEL_LSB,
    )


class PacketParser:
    """
    Incremental packet framer.

    Feed arbitrary byte chunks; complete packets come back decoded.  Handles
    header sync, trailer verification, and byte-level resync.
    """

    def __init__(self):
        self.buf = bytearray()
        self.good = 0
        self.bad_trail = 0
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[AccelSample]:
        self.buf.extend(chunk)
        out: List[AccelSample] = []

        while len(self.buf) >= PKT_LEN:
            idx = self.buf.find(HEADER)
            if idx < 0:
                self.skipped += len(self.buf) - 1
                self.buf = self.buf[-1:]      # last byte could be 0xAA
                break
            if idx > 0:
                self.skipped += idx
                self.buf = self.buf[idx:]
            if len(self.buf) < PKT_LEN:
                break

            pkt = bytes(self.buf[:PKT_LEN])
            self.buf = self.buf[PKT_LEN:]

            if pkt[-2:] != TRAILER:
                # rescan from the byte after this header
                self.bad_trail += 1
                self.buf = bytearray(pkt[2:]) + self.buf
                continue

            self.good += 1
            out.append(decode_packet(pkt))
        return out


def find_port() -> Optional[str]:
    """Auto-detect the Arty A7 serial port."""
    for p in serial.tools.list_ports.comports():
        d = ((p.description or "") + (p.manufacturer or "")).lower()
        if any(k in d for k in ("ftdi", "ft2232", "digilent", "arty", "uart")):
            return p.device
    usbs = sorted(glob.glob("/dev/ttyUSB*"))
    return usbs[1] if len(usbs) >= 2 else (usbs[0] if usbs else None)


# ── Threaded sources ────────────────────────────────────────────────────────

class _ThreadSubscription:
    """Background worker delivering samples until removed."""

    def __init__(self, target: Callable[[threading.Event], None], name: str):
        self._stop = threading.Event()
        self._thread = threading.Thread(target=target, args=(self._stop,),
                                        name=name, daemon=True)
        self._thread.start()

    def remove(self) -> None:
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)


class _Throttle:
    """Pass at most one sample per *interval* seconds."""

    def __init__(self, interval: float):
        self.interval = interval
        self._last: Optional[float] = None

    def ready(self, now: float) -> bool:
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True


class SerialAccelSource:
    """Accelerometer source reading ICM-42688-P packets over pyserial."""

    def __init__(self, port: Optional[str] = None, baud: int = BAUD):
        self.port = port
        self.baud = baud
        self.interval = DEFAULT_INTERVAL

    def _resolve_port(self) -> Optional[str]:
        return self.port or find_port()

    def is_available(self) -> bool:
        return self._resolve_port() is not None

    def set_update_interval(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"Update interval must be positive, got {interval}")
        self.interval = interval

    def subscribe(self, listener: Listener) -> _ThreadSubscription:
        port = self._resolve_port()
        if port is None:
            raise SensorUnavailableError("No serial port found.  Is the Arty connected?")

        ser = serial.Serial(port, self.baud, timeout=0.5)
        ser.reset_input_buffer()
        log.info("Opened %s @ %d baud", port, self.baud)
        throttle = _Throttle(self.interval)

        def _run(stop: threading.Event) -> None:
            parser = PacketParser()
            try:
                while not stop.is_set():
                    chunk = ser.read(max(ser.in_waiting, 1))
                    if not chunk:
                        continue
                    for sample in parser.feed(chunk):
                        if throttle.ready(time.monotonic()):
                            listener(sample)
            except serial.SerialException:
                log.exception("Serial read failed on %s", port)
            finally:
                ser.close()
                log.info("Closed %s (%d packets, %d bad trailers)",
                         port, parser.good, parser.bad_trail)

        return _ThreadSubscription(_run, name=f"serial-{port}")


class SimulatedAccelSource:
    """
    Synthetic gravity vector for a fixed tilt plus Gaussian noise.

    Used for demos without hardware.  With the sensor at roll *r* and pitch
    *p* the emitted vector is ``[-sin r, cos r·sin p, cos r·cos p]`` (g).
    """

    def __init__(self, roll: float = 0.0, pitch: float = 0.0,
                 noise: float = 0.01, seed: Optional[int] = None,
                 available: bool = True):
        self.roll = roll
        self.pitch = pitch
        self.noise = noise
        self.available = available
        self.interval = DEFAULT_INTERVAL
        self._rng = np.random.default_rng(seed)

    def is_available(self) -> bool:
        return self.available

    def set_update_interval(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"Update interval must be positive, got {interval}")
        self.interval = interval

    def sample(self) -> AccelSample:
        r = math.radians(self.roll)
        p = math.radians(self.pitch)
        g = np.array([-math.sin(r), math.cos(r) * math.sin(p), math.cos(r) * math.cos(p)])
        g += self._rng.normal(0.0, self.noise, 3)
        return AccelSample(float(g[0]), float(g[1]), float(g[2]))

    def subscribe(self, listener: Listener) -> _ThreadSubscription:
        if not self.available:
            raise SensorUnavailableError("Simulated sensor disabled")

        def _run(stop: threading.Event) -> None:
            while not stop.is_set():
                listener(self.sample())
                stop.wait(self.interval)

        return _ThreadSubscription(_run, name="simulated-accel")
