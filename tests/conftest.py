# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/metrics/
"""

import os
from unittest.mock import Mock

import pytest
from hypothesis import Phase, Verbosity, settings

from trapmetrics.checkmgr.resolver import ResolverState, Trap

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
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

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_resolver() -> Mock:
    """A resolver that is READY on a plaintext trap with every metric active."""
    resolver = Mock()
    resolver.state = ResolverState.READY
    resolver.trap = Trap(url="http://127.0.0.1:56104/write/test", tls=False)
    resolver.ensure_ready.return_value = resolver.trap
    resolver.is_metric_active.return_value = True
    resolver.activate_metric.return_value = False
    resolver.register_metrics.return_value = True
    return resolver
