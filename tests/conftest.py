"""Pytest configuration and fixtures for simcal tests."""

import os
from pathlib import Path

import pytest

from simcal import logging
from simcal.config.schema import IOConfig
from simcal.io import RunDirs


@pytest.fixture(autouse=True)
def mute_simcal_logs(caplog):
    # Coverage runs log at DEBUG so every logging branch executes;
    # everything else logs at ERROR for speed
    if os.environ.get("COVERAGE_RUN") == "true":
        level = logging.DEBUG
    else:
        level = logging.ERROR

    caplog.set_level(level, logger="simcal")
    logging.getLogger("simcal").setLevel(level)


@pytest.fixture
def run_dirs(tmp_path: Path) -> RunDirs:
    """Freshly created output tree under a temporary directory."""
    return RunDirs(tmp_path / "run").create()


@pytest.fixture(params=["parquet", "csv"])
def any_io(request) -> IOConfig:
    """Both table formats."""
    if request.param == "csv":
        return IOConfig(format="csv", compression=None, compression_level=None)
    return IOConfig()
