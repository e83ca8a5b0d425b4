"""
Pytest configuration and fixtures for ooda-agent tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import sys
from pathlib import Path

import pytest
import yaml

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def policy():
    """The shipped policy.yaml, parsed."""
    with open(ROOT_DIR / "config" / "policy.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def app_config():
    """The shipped app.yaml, parsed."""
    with open(ROOT_DIR / "config" / "app.yaml") as f:
        return yaml.safe_load(f)
