"""Shared test fixtures for the perimeter test suite."""

import pytest
from pathlib import Path

from .fakes import FakeRunner


@pytest.fixture
def fixtures_dir():
    """Path to the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def state_dir(tmp_path):
    """Temporary directory for PID side-files and service logs."""
    d = tmp_path / "state"
    d.mkdir()
    return d
