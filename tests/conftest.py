import os
import sys

import pytest

# Ensure repository root is on sys.path before importing project modules.
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from tokenbucket.core.clock import ManualClock  # noqa: E402


@pytest.fixture
def clock():
    """Frozen clock starting at t=0; tests move it explicitly."""
    return ManualClock(0.0)
