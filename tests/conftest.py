"""
Shared fixtures.

Every default test runs against the in-memory backends with a fake clock,
so event order is deterministic and nothing touches the network.
"""

from datetime import date

import pytest

from app.core import EventStore, LedgerService
from app.db import InMemoryEventIndex
from app.observability import get_metrics
from app.storage import InMemoryContentStore

from support import FakeClock


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def event_index():
    return InMemoryEventIndex()


@pytest.fixture
def event_store(content_store, event_index, clock):
    return EventStore(content_store, event_index, clock=clock)


@pytest.fixture
def ledger(event_store):
    return LedgerService(event_store)


@pytest.fixture
def product_details():
    return {
        "crop": "Tomato",
        "variety": "Roma",
        "harvest_date": date(2024, 2, 28),
        "grading": "A",
        "certification": "Organic",
    }
