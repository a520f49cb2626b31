"""Test doubles shared by several test modules."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.core import StorageError
from app.db import InMemoryEventIndex
from app.schemas import TransactionEvent
from app.storage import InMemoryContentStore


class FakeClock:
    """Returns start, start + step, start + 2*step, ... on successive calls."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class YieldingContentStore(InMemoryContentStore):
    """Suspends at every upload, like a real network call would."""

    async def upload(self, data, filename, metadata=None):
        await asyncio.sleep(0)
        return await super().upload(data, filename, metadata)


class FlakyIndex(InMemoryEventIndex):
    """Fails the next `failures` inserts with a plain StorageError."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def insert(self, event):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("connection reset")
        await super().insert(event)


class BrokenContentStore(InMemoryContentStore):
    async def upload(self, data, filename, metadata=None):
        raise StorageError("pinning service unavailable")


DETAILS = {"crop": "Tomato", "variety": "Roma", "harvest_date": "2024-02-28"}
T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_event(n, type, from_owner, to_owner, quantity, previous=None):
    """An already persisted-looking event: txn_<n>, hash_<n>, T0 + n minutes."""
    return TransactionEvent(
        transaction_id=f"txn_{n}",
        type=type,
        from_owner=from_owner,
        to_owner=to_owner,
        quantity=Decimal(str(quantity)),
        timestamp=T0 + timedelta(minutes=n),
        previous_event_hash=previous,
        batch_id="batch1",
        product_details=DETAILS,
        content_hash=f"hash_{n}",
    )
