"""Shared pytest fixtures for the collector test suite.

Non-fixture helpers (fake sessions, fake clock, tab builders) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from council_config import CollectorConfig  # noqa: E402
from helpers import FakeClock  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> CollectorConfig:
    """Default config with every output path inside tmp_path."""
    cfg = CollectorConfig()
    cfg.output.output_dir = tmp_path / "responses"
    cfg.output.run_log_path = tmp_path / "runs.jsonl"
    return cfg


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
