"""Shared pytest fixtures and configuration.

This file is automatically loaded by pytest and provides fixtures
accessible to all tests.
"""

import os

import pytest
from hypothesis import HealthCheck, settings

from tickreward import RewardSession
from tickreward.telemetry import DiagnosticHub, MemoryOutput, reset_hub

from tests.helpers import relaxed_config

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

settings.register_profile(
    "dev",
    max_examples=50,
    deadline=None,
)

settings.register_profile(
    "thorough",
    max_examples=2000,
    deadline=None,
)

# Usage: HYPOTHESIS_PROFILE=ci pytest
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def config():
    """Default knobs with a relaxed latency budget."""
    return relaxed_config()


# =============================================================================
# Diagnostics Fixtures
# =============================================================================

@pytest.fixture
def memory_output():
    return MemoryOutput()


@pytest.fixture
def hub(memory_output):
    """Isolated hub wired to an in-memory backend."""
    hub = DiagnosticHub()
    hub.add_backend(memory_output)
    yield hub
    hub.close()


@pytest.fixture
def session(config, hub):
    """Fresh reward session with cold-start statistics."""
    return RewardSession(config, hub=hub, session_id="test")


@pytest.fixture(autouse=True)
def isolate_global_hub():
    """Keep backends attached to the process-default hub from leaking."""
    yield
    reset_hub()
