#!/usr/bin/env python3
"""
calibration.py — Timed multi-step tilt-angle calibration.

A session runs *total_steps* capture windows.  During each window the
current angle is polled on a fixed interval and every reading is kept; at
the end of the window the readings are reduced to one
:class:`CalibrationStep`:
  • average angle  (°)  — arithmetic mean of the readings
  • std angle      (°)  — population standard deviation (steadiness)
  • valid                — std at or below ``max_step_std``

Only one run may be in flight per session.  ``stop()`` ends a run at the
next poll tick; the run then reports ``CANCELLED`` instead of completing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Protocol, Sequence

import numpy as np

from .estimator import AXES, AngleEstimator
from .sensor import AccelSource, SensorUnavailableError, Subscription

log = logging.getLogger(__name__)


class CalibrationBusyError(RuntimeError):
    """Raised when ``start()`` is called while a run is in progress."""


class AngleSource(Protocol):
    def read(self) -> float: ...


# ── Configuration ───────────────────────────────────────────────────────────

@dataclass
class CalibrationConfig:
    total_steps: int = 5
    capture_duration: float = 5.0     # s per step
    poll_interval: float = 0.05       # s between reads
    step_pause: float = 1.0           # s between steps
    sensor_interval: float = 0.05     # s, requested sensor update period
    axis: str = "roll"
    accel_window: int = 3
    angle_window: int = 3
    max_step_std: Optional[float] = 20.0   # °, None = every step valid
    min_valid_steps: Optional[int] = None   # None = min(4, total_steps)
    event_capacity: int = 32

    def __post_init__(self):
        if self.total_steps < 1:
            raise ValueError(f"total_steps must be >= 1, got {self.total_steps}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.capture_duration <= self.poll_interval:
            raise ValueError(
                f"capture_duration ({self.capture_duration}) must exceed "
                f"poll_interval ({self.poll_interval})"
            )
        if self.step_pause < 0:
            raise ValueError(f"step_pause must be >= 0, got {self.step_pause}")
        if self.sensor_interval <= 0:
            raise ValueError(f"sensor_interval must be > 0, got {self.sensor_interval}")
        if self.axis not in AXES:
            raise ValueError(f"Unknown axis {self.axis!r}; expected one of {AXES}")
        if self.max_step_std is not None and self.max_step_std < 0:
            raise ValueError(f"max_step_std must be >= 0, got {self.max_step_std}")
        if self.min_valid_steps is None:
            self.min_valid_steps = min(4, self.total_steps)
        if not 0 <= self.min_valid_steps <= self.total_steps:
            raise ValueError(
                f"min_valid_steps must be within 0..{self.total_steps}, "
                f"got {self.min_valid_steps}"
            )
        if self.event_capacity < 1:
            raise ValueError(f"event_capacity must be >= 1, got {self.event_capacity}")


# ── Records ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CalibrationStep:
    """One completed capture window."""
    step_index: int         # 1-based
    average_angle: float    # °
    captured_at: float      # wall-clock time (s since epoch)
    sample_count: int
    std_angle: float        # °
    is_valid: bool


@dataclass(frozen=True)
class CalibrationProgress:
    current_step: int
    total_steps: int
    current_angle: Optional[float]
    is_validating: bool
    validation_message: str


class SessionState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def summarize_capture(readings: Sequence[float], step_index: int,
                      max_std: Optional[float] = None) -> CalibrationStep:
    """
    Reduce the readings of one capture window to a step record.

    Parameters
    ----------
    readings : sequence of float
        Every angle polled during the window (°).
    step_index : int
        1-based position of the step in the run.
    max_std : float or None
        Steadiness limit; ``None`` marks the step valid unconditionally.
    """
    if len(readings) == 0:
        raise ValueError(f"Step {step_index} captured no readings")

    arr = np.asarray(readings, dtype=float)
    avg = float(arr.sum() / len(arr))
    std = float(arr.std())
    return CalibrationStep(
        step_index=step_index,
        average_angle=avg,
        captured_at=time.time(),
        sample_count=len(arr),
        std_angle=std,
        is_valid=max_std is None or std <= max_std,
    )


def mean_angle(steps: Sequence[CalibrationStep]) -> float:
    """Mean of the step averages; 0.0 for no steps."""
    if not steps:
        return 0.0
    return float(np.mean([s.average_angle for s in steps]))


@dataclass
class CalibrationOutcome:
    """How a run ended and what it captured."""
    status: SessionState
    steps: List[CalibrationStep] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status is SessionState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status is SessionState.CANCELLED

    @property
    def average_angle(self) -> float:
        return mean_angle([s for s in self.steps if s.is_valid])

    def summary(self) -> str:
        lines = [f"Calibration {self.status.value} ({len(self.steps)} steps)"]
        for s in self.steps:
            flag = "" if s.is_valid else "  (unsteady)"
            lines.append(
                f"  Step {s.step_index}: {s.average_angle:+8.2f}°  "
                f"σ {s.std_angle:6.2f}°  n={s.sample_count}{flag}"
            )
        lines.append(f"  Mean      : {self.average_angle:+8.2f}°")
        return "\n".join(lines) + "\n"


# ── Progress channel ────────────────────────────────────────────────────────

class ChannelClosed(Exception):
    """Raised by :meth:`ProgressChannel.get` once closed and drained."""


class ProgressChannel:
    """
    Bounded event queue that drops the oldest event when full.

    Producers never block; consumers ``await get()`` or ``async for``.
    """

    def __init__(self, capacity: int = 32):
        self._items: Deque[CalibrationProgress] = deque(maxlen=capacity)
        self._ready = asyncio.Event()
        self.closed = False
        self.dropped = 0

    def put_nowait(self, event: CalibrationProgress) -> None:
        if self.closed:
            raise ChannelClosed("Progress channel is closed")
        if len(self._items) == self._items.maxlen:
            self.dropped += 1
        self._items.append(event)
        self._ready.set()

    async def get(self) -> CalibrationProgress:
        while not self._items:
            if self.closed:
                raise ChannelClosed("Progress channel is closed")
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def drain(self) -> List[CalibrationProgress]:
        items = list(self._items)
        self._items.clear()
        return items

    def close(self) -> None:
        self.closed = True
        self._ready.set()

    def reset(self) -> None:
        """Empty and reopen the channel for a new run.

        Consumers already waiting are woken and keep waiting on the new run.
        """
        stale = self._ready
        self._ready = asyncio.Event()
        self._items.clear()
        self.closed = False
        self.dropped = 0
        stale.set()

    def __len__(self) -> int:
        return len(self._items)

    def __aiter__(self):
        return self

    async def __anext__(self) -> CalibrationProgress:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration


ProgressCallback = Callable[[CalibrationProgress], None]
CompletionCallback = Callable[[List[CalibrationStep]], None]


# ── Session ─────────────────────────────────────────────────────────────────

class CalibrationSession:
    """
    Drives one calibration run at a time over an angle source.

    When a *sensor* is attached, the session checks its availability,
    subscribes *estimator* for the duration of the run and always removes
    the subscription again, whatever way the run ends.
    """

    def __init__(self,
                 angle_source: AngleSource,
                 config: Optional[CalibrationConfig] = None,
                 sensor: Optional[AccelSource] = None,
                 estimator: Optional[AngleEstimator] = None):
        if sensor is not None and estimator is None:
            raise ValueError("A sensor needs an estimator to feed")
        self.angle_source = angle_source
        self.config = config or CalibrationConfig()
        self.sensor = sensor
        self.estimator = estimator

        self.state = SessionState.IDLE
        self.current_step = 0
        self.events = ProgressChannel(self.config.event_capacity)
        self._steps: List[CalibrationStep] = []
        self._stop_requested = False
        self._on_progress: Optional[ProgressCallback] = None

    @classmethod
    def from_sensor(cls, sensor: AccelSource,
                    config: Optional[CalibrationConfig] = None) -> "CalibrationSession":
        """Session reading ``config.axis`` from a fresh estimator on *sensor*."""
        config = config or CalibrationConfig()
        est = AngleEstimator(config.accel_window, config.angle_window)
        return cls(est.reader(config.axis), config, sensor=sensor, estimator=est)

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    # -- Entry points ----------------------------------------------------------

    async def start(self,
                    on_progress: Optional[ProgressCallback] = None,
                    on_complete: Optional[CompletionCallback] = None) -> CalibrationOutcome:
        """
        Run all capture steps.

        Returns a ``COMPLETED`` or ``CANCELLED`` outcome.  A stop that lands
        after the last step has been captured still completes.  Faults,
        including an unavailable sensor, propagate after the sensor is
        released and leave the session ``FAILED``; this covers an
        *on_complete* that raises, even though every step was captured and
        stays available from ``get_results()``.
        """
        if self.is_running:
            raise CalibrationBusyError("Calibration already in progress")

        self.state = SessionState.RUNNING
        self._steps = []
        self.current_step = 0
        self._stop_requested = False
        self._on_progress = on_progress
        self.events.reset()
        log.info("Calibration started: %d steps x %.2f s",
                 self.config.total_steps, self.config.capture_duration)

        try:
            subscription = self._acquire_sensor()
            try:
                await self._run_steps()
            finally:
                if subscription is not None:
                    subscription.remove()

            if self._stop_requested and not self.is_complete():
                self.state = SessionState.CANCELLED
                log.warning("Calibration stopped after %d/%d steps",
                            len(self._steps), self.config.total_steps)
            else:
                self.state = SessionState.COMPLETED
                log.info("Calibration complete: mean %.2f°", self.get_average_angle())
                if on_complete is not None:
                    on_complete(self.get_results())
        except asyncio.CancelledError:
            self.state = SessionState.CANCELLED
            raise
        except Exception:
            self.state = SessionState.FAILED
            log.error("Calibration failed at step %d", self.current_step, exc_info=True)
            raise
        finally:
            self._on_progress = None
            self.events.close()

        return CalibrationOutcome(self.state, self.get_results())

    def stop(self) -> None:
        """Request the running calibration to end at the next poll tick."""
        if self.is_running:
            self._stop_requested = True

    # -- Queries ---------------------------------------------------------------

    def get_results(self) -> List[CalibrationStep]:
        return list(self._steps)

    def get_valid_results(self) -> List[CalibrationStep]:
        return [s for s in self._steps if s.is_valid]

    def get_average_angle(self) -> float:
        return mean_angle(self.get_valid_results())

    def is_complete(self) -> bool:
        return len(self._steps) >= self.config.total_steps

    def has_valid_calibration(self) -> bool:
        return len(self.get_valid_results()) >= self.config.min_valid_steps

    # -- Internals -------------------------------------------------------------

    def _acquire_sensor(self) -> Optional[Subscription]:
        if self.sensor is None:
            return None
        if not self.sensor.is_available():
            raise SensorUnavailableError("Accelerometer not available")
        self.sensor.set_update_interval(self.config.sensor_interval)
        self.estimator.reset()
        return self.sensor.subscribe(self.estimator.update)

    def _emit(self, event: CalibrationProgress) -> None:
        self.events.put_nowait(event)
        if self._on_progress is not None:
            self._on_progress(event)

    async def _run_steps(self) -> None:
        cfg = self.config
        n = cfg.total_steps

        for k in range(1, n + 1):
            if self._stop_requested:
                return
            self.current_step = k
            self._emit(CalibrationProgress(
                k, n, None, True,
                f"Capturing angle {k}/{n}... hold for {cfg.capture_duration:g} seconds",
            ))

            readings = await self._capture(k)
            if readings is None:
                return

            step = summarize_capture(readings, k, cfg.max_step_std)
            self._steps.append(step)
            log.info("Step %d/%d: %.2f° (σ %.2f°, n=%d)",
                     k, n, step.average_angle, step.std_angle, step.sample_count)

            note = "" if step.is_valid else " (unsteady, consider repeating)"
            self._emit(CalibrationProgress(
                k, n, None, False,
                f"Angle {k} captured: {step.average_angle:.1f}°{note}",
            ))
            await asyncio.sleep(cfg.step_pause)

    async def _capture(self, k: int) -> Optional[List[float]]:
        """Poll the angle source for one window; None if stopped."""
        cfg = self.config
        readings: List[float] = []
        t0 = time.monotonic()

        while time.monotonic() - t0 < cfg.capture_duration:
            if self._stop_requested:
                return None
            angle = float(self.angle_source.read())
            readings.append(angle)
            self._emit(CalibrationProgress(
                k, cfg.total_steps, angle, True,
                f"Capturing angle... Current: {angle:.2f}°",
            ))
            await asyncio.sleep(cfg.poll_interval)

        return readings


async def run_calibration(angle_source: AngleSource,
                          config: Optional[CalibrationConfig] = None,
                          on_progress: Optional[ProgressCallback] = None) -> List[CalibrationStep]:
    """One-shot calibration over *angle_source*; returns the captured steps."""
    session = CalibrationSession(angle_source, config)
    outcome = await session.start(on_progress)
    return outcome.steps
