#!/usr/bin/env python3
"""
test_estimator.py -- Tests for accelerometer tilt estimation.

Tests cover:
  * accel -> pitch/roll/yaw conversion, including the degenerate origins
  * moving-average smoothing window
  * AngleCell / AxisReader
  * AngleEstimator live pipeline

Run:  python3 -m pytest tiltcal/tests/test_estimator.py -v
"""

import math
from collections import deque

import numpy as np
import pytest

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from tiltcal.estimator import (
    AngleCell, AngleEstimator, AngleTriple, AxisReader, SmoothingWindow,
    accel_to_angles, smooth,
)
from tiltcal.sensor import AccelSample


# ── Angle conversion ───────────────────────────────────────────────────────

class TestAccelToAngles:
    def test_flat_face_up(self):
        a = accel_to_angles(AccelSample(0.0, 0.0, 1.0))
        assert a.pitch == pytest.approx(0.0)
        assert a.roll == pytest.approx(0.0)
        assert a.yaw == 0.0

    @pytest.mark.parametrize("x", [1.0, -1.0, 0.25, -3.7])
    def test_gravity_along_x(self, x):
        """y = z = 0: roll and yaw are ±90°, pitch is 0."""
        a = accel_to_angles(AccelSample(x, 0.0, 0.0))
        assert a.pitch == 0.0
        assert a.roll == pytest.approx(-90.0 if x > 0 else 90.0)
        assert a.yaw == pytest.approx(90.0 if x > 0 else -90.0)

    def test_signed_zeros_give_zero(self):
        a = accel_to_angles(AccelSample(-0.0, -0.0, -0.0))
        assert a == AngleTriple(0.0, 0.0, 0.0)

    def test_yaw_zero_when_flat(self):
        a = accel_to_angles(AccelSample(0.0, 0.0, -1.0))
        assert a.yaw == 0.0
        assert abs(a.pitch) == pytest.approx(180.0)

    def test_pitch_45(self):
        a = accel_to_angles(AccelSample(0.0, 1.0, 1.0))
        assert a.pitch == pytest.approx(45.0)
        assert a.roll == pytest.approx(0.0)
        assert a.yaw == pytest.approx(0.0)

    def test_roll_30(self):
        r = math.radians(30.0)
        a = accel_to_angles(AccelSample(-math.sin(r), 0.0, math.cos(r)))
        assert a.roll == pytest.approx(30.0)
        assert a.pitch == pytest.approx(0.0)

    def test_scale_invariant(self):
        a1 = accel_to_angles(AccelSample(0.3, -0.4, 0.8))
        a2 = accel_to_angles(AccelSample(3.0, -4.0, 8.0))
        np.testing.assert_allclose(
            [a1.pitch, a1.roll, a1.yaw], [a2.pitch, a2.roll, a2.yaw], atol=1e-12)


# ── Smoothing ──────────────────────────────────────────────────────────────

class TestSmooth:
    def test_capacity_one_is_passthrough(self):
        w = deque()
        for v in (AccelSample(1, 2, 3), AccelSample(-5, 0, 9)):
            assert smooth(v, w, 1) == v
        assert len(w) == 1

    @pytest.mark.parametrize("capacity", [1, 3, 5])
    def test_holds_last_c_inputs(self, capacity):
        w = deque()
        inputs = [AccelSample(float(i), 2.0 * i, -float(i)) for i in range(12)]
        for v in inputs:
            out = smooth(v, w, capacity)
        assert list(w) == inputs[-capacity:]
        tail = np.array([[s.x, s.y, s.z] for s in inputs[-capacity:]])
        np.testing.assert_allclose([out.x, out.y, out.z], tail.mean(axis=0))

    def test_partial_window_mean(self):
        w = deque()
        smooth(AngleTriple(10.0, 0.0, 0.0), w, 5)
        out = smooth(AngleTriple(20.0, 4.0, -2.0), w, 5)
        assert out == AngleTriple(15.0, 2.0, -1.0)
        assert isinstance(out, AngleTriple)

    def test_bad_capacity(self):
        with pytest.raises(ValueError):
            smooth(AccelSample(), deque(), 0)
        with pytest.raises(ValueError):
            SmoothingWindow(0)

    def test_window_clear(self):
        sw = SmoothingWindow(3)
        sw.push(AccelSample(1, 1, 1))
        sw.push(AccelSample(3, 3, 3))
        assert len(sw) == 2
        sw.clear()
        assert len(sw) == 0
        assert sw.push(AccelSample(7, 8, 9)) == AccelSample(7, 8, 9)


# ── Cell / reader ──────────────────────────────────────────────────────────

class TestAngleCell:
    def test_default_is_zero(self):
        assert AngleCell().read() == AngleTriple()

    def test_latest_value_wins(self):
        c = AngleCell()
        c.set(AngleTriple(1, 2, 3))
        c.set(AngleTriple(4, 5, 6))
        assert c.read() == AngleTriple(4, 5, 6)

    def test_axis_reader(self):
        c = AngleCell()
        c.set(AngleTriple(pitch=1.0, roll=2.0, yaw=3.0))
        assert AxisReader(c, "pitch").read() == 1.0
        assert AxisReader(c, "roll").read() == 2.0
        assert AxisReader(c, "yaw").read() == 3.0

    def test_unknown_axis(self):
        with pytest.raises(ValueError):
            AxisReader(AngleCell(), "heading")


# ── Pipeline ───────────────────────────────────────────────────────────────

class TestAngleEstimator:
    def test_constant_input_publishes_angles(self):
        est = AngleEstimator()
        r = math.radians(20.0)
        s = AccelSample(-math.sin(r), 0.0, math.cos(r))
        for _ in range(5):
            out = est.update(s)
        assert out.roll == pytest.approx(20.0)
        assert est.cell.read() == out
        assert est.reader("roll").read() == pytest.approx(20.0)
        assert est.n_samples == 5

    def test_smooths_step_change(self):
        est = AngleEstimator(accel_window=1, angle_window=2)
        est.update(AccelSample(0.0, 0.0, 1.0))              # roll 0
        out = est.update(AccelSample(-1.0, 0.0, 0.0))       # roll 90
        assert out.roll == pytest.approx(45.0)

    def test_accepts_raw_mapping(self):
        est = AngleEstimator(accel_window=1, angle_window=1)
        out = est.update({"x": None, "y": "oops", "z": 1.0})
        assert out == AngleTriple(0.0, 0.0, 0.0)

    def test_reset(self):
        est = AngleEstimator()
        est.update(AccelSample(-1.0, 0.0, 0.0))
        est.reset()
        assert est.cell.read() == AngleTriple()
        assert est.n_samples == 0
        assert len(est.accel_window) == 0 and len(est.angle_window) == 0
