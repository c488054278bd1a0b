"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import Config  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with no retry or polling delays."""
    return Config(
        state_dir=tmp_path / "state",
        max_workers=4,
        provider_timeout_seconds=5,
        provider_max_retries=3,
        retry_backoff_base_seconds=0.0,
        validation_timeout_seconds=5,
        validation_poll_initial_seconds=0.0,
        validation_poll_max_seconds=0.0,
        validation_max_polls=3,
    )
