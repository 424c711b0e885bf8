#!/usr/bin/env python3
"""
estimator.py -- Accelerometer-only tilt estimation.

Each sample is converted independently from gravity-vector geometry; there
is no gyro fusion and no integration over time:

  * pitch = atan2(y, z)
  * roll  = atan2(-x, sqrt(y^2 + z^2))
  * yaw   = atan2(x, y)

Yaw is meaningless when the sensor is flat (x = y = 0) and is reported as 0
there; pitch is likewise 0 when y = z = 0.

The live pipeline smooths raw accel over a short moving window, converts to
angles, smooths the angles over a second window, and publishes the result
to an :class:`AngleCell` that the calibration loop polls.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import astuple, dataclass
from typing import Deque, Optional, TypeVar, Union

import numpy as np

from .sensor import AccelSample

RAD2DEG = 180.0 / math.pi

AXES = ("pitch", "roll", "yaw")


@dataclass(frozen=True)
class AngleTriple:
    """Tilt angles in degrees."""
    pitch: float = 0.0
    roll: float = 0.0
    yaw: float = 0.0


Vec3 = TypeVar("Vec3", AccelSample, AngleTriple)


# -- Angle conversion ----------------------------------------------------------

def _atan2_deg(y: float, x: float) -> float:
    if y == 0.0 and x == 0.0:
        return 0.0
    return math.atan2(y, x) * RAD2DEG


def accel_to_angles(sample: AccelSample) -> AngleTriple:
    """Raw acceleration -> pitch/roll/yaw (deg)."""
    x, y, z = sample.x, sample.y, sample.z
    return AngleTriple(
        pitch=_atan2_deg(y, z),
        roll=_atan2_deg(-x, math.sqrt(y * y + z * z)),
        yaw=_atan2_deg(x, y),
    )


# -- Moving-average smoothing --------------------------------------------------

def smooth(new: Vec3, window: Deque[Vec3], capacity: int) -> Vec3:
    """
    Push *new* into *window* and return the component-wise mean.

    Entries beyond *capacity* are evicted oldest-first.  Capacity 1 returns
    *new* unchanged.
    """
    if capacity < 1:
        raise ValueError(f"Smoothing capacity must be >= 1, got {capacity}")
    window.append(new)
    while len(window) > capacity:
        window.popleft()
    mean = np.array([astuple(v) for v in window], dtype=float).mean(axis=0)
    return type(new)(*(float(c) for c in mean))


class SmoothingWindow:
    """Bounded FIFO of recent samples with a mean readout."""

    def __init__(self, capacity: int = 3):
        if capacity < 1:
            raise ValueError(f"Smoothing capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.items: Deque = deque()

    def push(self, new: Vec3) -> Vec3:
        return smooth(new, self.items, self.capacity)

    def clear(self) -> None:
        self.items.clear()

    def __len__(self) -> int:
        return len(self.items)


# -- Shared current-angle cell -------------------------------------------------

class AngleCell:
    """
    Latest smoothed angles, written by the sensor side, read by the poller.

    Writes may come from a sensor reader thread, hence the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value = AngleTriple()

    def set(self, value: AngleTriple) -> None:
        with self._lock:
            self._value = value

    def read(self) -> AngleTriple:
        with self._lock:
            return self._value


class AxisReader:
    """Angle source bound to one axis of an :class:`AngleCell`."""

    def __init__(self, cell: AngleCell, axis: str = "roll"):
        if axis not in AXES:
            raise ValueError(f"Unknown axis {axis!r}; expected one of {AXES}")
        self.cell = cell
        self.axis = axis

    def read(self) -> float:
        return getattr(self.cell.read(), self.axis)


# -- Live pipeline -------------------------------------------------------------

class AngleEstimator:
    """Accel smoothing -> angle conversion -> angle smoothing -> cell."""

    def __init__(self, accel_window: int = 3, angle_window: int = 3,
                 cell: Optional[AngleCell] = None):
        self.accel_window = SmoothingWindow(accel_window)
        self.angle_window = SmoothingWindow(angle_window)
        self.cell = cell or AngleCell()
        self.n_samples = 0

    def update(self, sample: Union[AccelSample, dict]) -> AngleTriple:
        """Process one sensor event.  Returns the published angles."""
        if not isinstance(sample, AccelSample):
            sample = AccelSample.from_mapping(sample)
        accel = self.accel_window.push(sample)
        angles = self.angle_window.push(accel_to_angles(accel))
        self.cell.set(angles)
        self.n_samples += 1
        return angles

    def reset(self) -> None:
        self.accel_window.clear()
        self.angle_window.clear()
        self.cell.set(AngleTriple())
        self.n_samples = 0

    def reader(self, axis: str = "roll") -> AxisReader:
        return AxisReader(self.cell, axis)
