"""
Chain Builder

Derives a batch's current state by replaying its events in chain order.
Nothing here is stored; every call re-reads the index.

Replay rules:
- HARVEST: the recipient holds the whole quantity; total = available = quantity
- PURCHASE / TRANSFER: quantity moves from the sender to the recipient, and
  available drops by the same amount. Owners whose holding reaches zero or
  less are removed.

The builder is best-effort display. It never raises for a logically
impossible chain; a negative available quantity is clamped to zero here and
reported by the integrity verifier instead.
"""

from decimal import Decimal
from typing import Iterable, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import (
    EventType,
    OwnerHolding,
    OwnershipRecord,
    TransactionChain,
    TransactionEvent,
)

if TYPE_CHECKING:
    from .event_store import EventStore

logger = get_logger(__name__)

ZERO = Decimal("0")


class ChainReplay:
    """
    Running state of a replay. Feed events in chain order with apply().

    available is NOT clamped, so callers can detect a prefix that
    overdraws the harvest.
    """

    def __init__(self):
        self.owners: dict[str, tuple[Decimal, str]] = {}
        self.total = ZERO
        self.available = ZERO

    def apply(self, event: TransactionEvent) -> None:
        if event.type == EventType.HARVEST:
            self.owners[event.to_owner] = (event.quantity, event.transaction_id)
            self.total = event.quantity
            self.available = event.quantity
            return

        if event.type.moves_ownership:
            sender = self.owners.get(event.from_owner)
            if sender is not None:
                remaining = sender[0] - event.quantity
                if remaining <= 0:
                    del self.owners[event.from_owner]
                else:
                    self.owners[event.from_owner] = (remaining, event.transaction_id)

            held = self.owners.get(event.to_owner, (ZERO, event.transaction_id))[0]
            self.owners[event.to_owner] = (held + event.quantity, event.transaction_id)
            self.available -= event.quantity

    def to_chain(self, batch_id: str, events: list[TransactionEvent]) -> TransactionChain:
        return TransactionChain(
            batch_id=batch_id,
            events=events,
            current_owners={
                owner: OwnerHolding(quantity=quantity, last_event_id=event_id)
                for owner, (quantity, event_id) in self.owners.items()
            },
            total_quantity=self.total,
            available_quantity=max(ZERO, self.available),
        )


def replay(batch_id: str, events: Iterable[TransactionEvent]) -> TransactionChain:
    """Replay events (already in chain order) into a TransactionChain."""
    events = list(events)
    state = ChainReplay()
    for event in events:
        state.apply(event)
    return state.to_chain(batch_id, events)


class ChainBuilder:
    """Builds derived chain state from an EventStore."""

    def __init__(self, event_store: "EventStore"):
        self._event_store = event_store

    async def build_chain(self, batch_id: str) -> TransactionChain:
        """
        Current derived state of a batch.

        An unknown batch yields the zero-value chain, not an error.
        """
        events = await self._event_store.get_events_for_batch(batch_id)
        chain = replay(batch_id, events)
        get_metrics().record_chain_build()
        logger.debug(
            "Chain built",
            batch_id=batch_id,
            event_count=len(events),
            available_quantity=str(chain.available_quantity),
        )
        return chain

    async def get_ownership_history(self, batch_id: str) -> list[OwnershipRecord]:
        """Who received how much, one record per event, in chain order."""
        events = await self._event_store.get_events_for_batch(batch_id)
        return [
            OwnershipRecord(
                owner=event.to_owner,
                quantity=event.quantity,
                event_id=event.transaction_id,
                timestamp=event.timestamp,
                type=event.type,
            )
            for event in events
        ]
