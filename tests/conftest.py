"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.adaptive.proficiency import ProficiencyCalculator  # noqa: E402
from src.graph.knowledge_graph import KnowledgeGraphStore  # noqa: E402
from src.graph.models import EventType, Outcome, UserEvent  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (full engine pipeline)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    """Fixed reference time for deterministic scoring."""
    return datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """Empty knowledge graph with the default calculator."""
    return KnowledgeGraphStore(profile_id="test-user", calculator=ProficiencyCalculator())


@pytest.fixture
def make_event(now):
    """
    Factory for UserEvents offset from the reference time.

    Usage:
        make_event("edit", "a.py", seconds=10)
        make_event("search", seconds=5, query="useMemo")
    """

    def _make(
        event_type: str,
        *node_ids: str,
        seconds: float = 0,
        outcome: str = "neutral",
        **kwargs,
    ) -> UserEvent:
        return UserEvent(
            timestamp=now + timedelta(seconds=seconds),
            event_type=EventType(event_type),
            node_ids=tuple(node_ids),
            outcome=Outcome(outcome),
            **kwargs,
        )

    return _make
