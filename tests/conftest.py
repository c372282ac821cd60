"""Shared fixtures: every test gets its own SQLite file under tmp_path."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from supervisor_desk.core.config import DEFAULT_CATEGORY_KEYWORDS
from supervisor_desk.services import (
    EscalationCoordinator,
    EscalationLedger,
    KnowledgeStore,
    Matcher,
    Notifier,
)


class FakeClock:
    """Manually advanced clock for ledger timestamps."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "supervisor_desk_test.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_path):
    return KnowledgeStore(db_path=db_path)


@pytest.fixture
def ledger(db_path, clock):
    return EscalationLedger(db_path=db_path, escalation_window=timedelta(minutes=30), clock=clock)


@pytest.fixture
def matcher(store):
    return Matcher(store, confidence_threshold=0.5, category_keywords=DEFAULT_CATEGORY_KEYWORDS)


@pytest.fixture
def notifier():
    return AsyncMock(spec=Notifier)


@pytest.fixture
def session_events():
    return []


@pytest.fixture
def coordinator(store, matcher, ledger, notifier, session_events):
    return EscalationCoordinator(
        store=store,
        matcher=matcher,
        ledger=ledger,
        notifier=notifier,
        session_listener=session_events.append,
        sweep_interval_seconds=0.01,
    )
