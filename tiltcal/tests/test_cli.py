#!/usr/bin/env python3
"""
test_cli.py -- End-to-end runs of the console tool on the simulated sensor.

Run:  python3 -m pytest tiltcal/tests/test_cli.py -v
"""

import pytest

# Allow running from repo root
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from tiltcal import cli
from tiltcal import sensor as sensor_mod


class TestCli:
    def test_simulated_calibration_csv(self, capsys):
        rc = cli.main(["--simulate", "10", "--noise", "0", "--steps", "2",
                       "--capture", "0.05", "--poll", "0.01", "--pause", "0", "--csv"])
        out = capsys.readouterr().out.strip().splitlines()
        assert rc == 0
        assert out[0].startswith("step,angle_deg")
        assert len(out) == 3

    def test_readout_csv(self, capsys):
        rc = cli.main(["--simulate", "-20", "--readout", "0.1", "--csv"])
        out = capsys.readouterr().out.strip().splitlines()
        assert rc == 0
        assert out[0] == "t,pitch,roll,yaw"
        assert len(out) >= 2

    def test_unavailable_sensor_exits(self, monkeypatch):
        monkeypatch.setattr(sensor_mod, "find_port", lambda: None)
        with pytest.raises(SystemExit, match="not available"):
            cli.main(["--steps", "1", "--capture", "0.05", "--poll", "0.01"])

    def test_bad_config_exits(self):
        with pytest.raises(SystemExit):
            cli.main(["--simulate", "0", "--capture", "0.01", "--poll", "0.05"])

    def test_short_run_config(self):
        args = cli.build_parser().parse_args(["--steps", "2"])
        cfg = cli.config_from_args(args)
        assert cfg.total_steps == 2
        assert cfg.min_valid_steps == 2
