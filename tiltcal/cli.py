#!/usr/bin/env python3
"""
cli.py -- Tilt-angle calibration from the console.

Usage
-----
  python3 -m tiltcal.cli                        # auto-detect serial port
  python3 -m tiltcal.cli /dev/ttyUSB1           # explicit port
  python3 -m tiltcal.cli --simulate 12.5        # no hardware, fixed 12.5 deg roll
  python3 -m tiltcal.cli --readout 10           # live angles for 10 s
  python3 -m tiltcal.cli --csv > steps.csv      # per-step results as CSV

Workflow
--------
1. Attach the sensor and hold the pose to capture.
2. Five windows of 5 s are captured, 1 s apart; each is averaged.
3. The mean of the steady windows is the calibration angle.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import List, Optional

from .calibration import (
    CalibrationConfig, CalibrationProgress, CalibrationSession, CalibrationStep,
)
from .estimator import AngleEstimator
from .sensor import (
    BAUD, AccelSource, SensorUnavailableError, SerialAccelSource,
    SimulatedAccelSource,
)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="tiltcal -- accelerometer tilt calibration")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--simulate", type=float, metavar="ROLL",
                    help="Use a simulated sensor held at ROLL degrees")
    ap.add_argument("--noise", type=float, default=0.01,
                    help="Simulated accel noise, g (default 0.01)")
    ap.add_argument("--steps", type=int, default=5, help="Capture steps (default 5)")
    ap.add_argument("--capture", type=float, default=5.0,
                    help="Seconds per capture step (default 5)")
    ap.add_argument("--poll", type=float, default=0.05,
                    help="Poll interval, s (default 0.05)")
    ap.add_argument("--pause", type=float, default=1.0,
                    help="Pause between steps, s (default 1)")
    ap.add_argument("--axis", choices=("pitch", "roll", "yaw"), default="roll")
    ap.add_argument("--max-std", type=float, default=20.0,
                    help="Max per-step std, deg; negative disables (default 20)")
    ap.add_argument("--readout", type=float, metavar="SECONDS",
                    help="Print live smoothed angles instead of calibrating")
    ap.add_argument("--csv", action="store_true", help="CSV output mode")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def config_from_args(args: argparse.Namespace) -> CalibrationConfig:
    return CalibrationConfig(
        total_steps=args.steps,
        capture_duration=args.capture,
        poll_interval=args.poll,
        step_pause=args.pause,
        axis=args.axis,
        max_step_std=None if args.max_std < 0 else args.max_std,
    )


def make_source(args: argparse.Namespace) -> AccelSource:
    if args.simulate is not None:
        return SimulatedAccelSource(roll=args.simulate, noise=args.noise)
    return SerialAccelSource(args.port, args.baud)


# -- Output --------------------------------------------------------------------

def print_progress(p: CalibrationProgress) -> None:
    if p.is_validating:
        sys.stdout.write(f"\r  [{p.current_step}/{p.total_steps}]  "
                         f"{p.validation_message:<60s}")
    else:
        sys.stdout.write(f"\r  [{p.current_step}/{p.total_steps}]  "
                         f"{p.validation_message:<60s}\n")
    sys.stdout.flush()


def print_csv(steps: List[CalibrationStep]) -> None:
    print("step,angle_deg,std_deg,samples,valid,captured_at")
    for s in steps:
        print(f"{s.step_index},{s.average_angle:.4f},{s.std_angle:.4f},"
              f"{s.sample_count},{1 if s.is_valid else 0},{s.captured_at:.3f}")


# -- Modes ---------------------------------------------------------------------

async def calibrate_mode(source: AccelSource, config: CalibrationConfig,
                         csv: bool) -> int:
    session = CalibrationSession.from_sensor(source, config)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.stop)
    except (NotImplementedError, RuntimeError, ValueError):
        pass  # not supported on this platform

    if not csv:
        print(f"\n{'='*62}")
        print(f"  tiltcal -- {config.total_steps} x {config.capture_duration:g} s "
              f"capture on {config.axis}")
        print(f"{'='*62}\n")

    outcome = await session.start(on_progress=None if csv else print_progress)

    if csv:
        print_csv(outcome.steps)
        return 0 if outcome.completed else 1

    print()
    print(outcome.summary())
    if outcome.cancelled:
        print("  Stopped early -- results are partial.")
        return 1
    if not session.has_valid_calibration():
        print(f"  Only {len(session.get_valid_results())} steady steps "
              f"(need {config.min_valid_steps}); repeat the calibration.")
        return 1
    print(f"  Calibration angle: {session.get_average_angle():+.2f} deg")
    return 0


def readout_mode(source: AccelSource, seconds: float, interval: float,
                 csv: bool) -> int:
    if not source.is_available():
        raise SensorUnavailableError("Accelerometer not available")
    source.set_update_interval(interval)
    est = AngleEstimator()
    sub = source.subscribe(est.update)
    t0 = time.monotonic()
    if csv:
        print("t,pitch,roll,yaw")
    try:
        while time.monotonic() - t0 < seconds:
            a = est.cell.read()
            t = time.monotonic() - t0
            if csv:
                print(f"{t:.3f},{a.pitch:.3f},{a.roll:.3f},{a.yaw:.3f}")
            else:
                sys.stdout.write(f"\r  pitch={a.pitch:+8.2f}  roll={a.roll:+8.2f}  "
                                 f"yaw={a.yaw:+8.2f}  ({est.n_samples} samples)")
                sys.stdout.flush()
            time.sleep(interval)
    except KeyboardInterrupt:
        pass
    finally:
        sub.remove()
    if not csv:
        print()
    return 0


# -- Main ----------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")

    source = make_source(args)
    try:
        if args.readout is not None:
            return readout_mode(source, args.readout, config.sensor_interval, args.csv)
        return asyncio.run(calibrate_mode(source, config, args.csv))
    except SensorUnavailableError as e:
        sys.exit(f"ERROR: {e}")


if __name__ == "__main__":
    sys.exit(main())
