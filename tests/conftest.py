"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for org_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from org_mock import MockOrganizationWriter  # noqa: E402
from orgsync.state import PersistedState  # noqa: E402


@pytest.fixture
def writer() -> MockOrganizationWriter:
    """Fresh in-memory organization writer."""
    return MockOrganizationWriter()


@pytest.fixture
def state(tmp_path: Path) -> PersistedState:
    """Empty state backed by a file in a temporary directory."""
    return PersistedState.load(tmp_path / "state.json")
