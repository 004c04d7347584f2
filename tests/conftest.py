# tests/conftest.py
"""Shared test configuration.

Database, manager and scheduler fixtures live in tests/fixtures and are
registered here; their factory functions are imported directly by tests
that need non-default collaborators.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import logging
import os

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from tests.fixtures.engine import clock, listing, manager, scheduler  # noqa: F401
from tests.fixtures.store import pipeline_db, store  # noqa: F401


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo logging configuration done by CLI tests."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers = []


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
