"""
Derived State Schemas

None of these are persisted as source of truth. They are projections of a
batch's event chain, recomputed on every read.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .events import EventType, ProductDetails, TransactionEvent


class OwnerHolding(BaseModel):
    """What one owner currently holds of a batch."""
    quantity: Decimal
    last_event_id: str


class TransactionChain(BaseModel):
    """
    A batch's events in chain order plus the state derived by replaying them.

    available_quantity is "not yet consumed from the original harvest",
    not "held by the farmer".
    """
    batch_id: str
    events: list[TransactionEvent] = Field(default_factory=list)
    current_owners: dict[str, OwnerHolding] = Field(default_factory=dict)
    total_quantity: Decimal = Decimal("0")
    available_quantity: Decimal = Decimal("0")

    @property
    def is_empty(self) -> bool:
        return not self.events

    @property
    def last_event(self) -> Optional[TransactionEvent]:
        return self.events[-1] if self.events else None

    @property
    def harvest_event(self) -> Optional[TransactionEvent]:
        for event in self.events:
            if event.type == EventType.HARVEST:
                return event
        return None

    def held_by(self, owner: str) -> Decimal:
        holding = self.current_owners.get(owner)
        return holding.quantity if holding else Decimal("0")


class OwnershipRecord(BaseModel):
    """One step in a provenance timeline: who received how much, and when."""
    owner: str
    quantity: Decimal
    event_id: str
    timestamp: datetime
    type: EventType


class ChainIssue(BaseModel):
    """Serializable form of a ChainCorruptionError."""
    kind: str
    message: str
    transaction_id: Optional[str] = None


class VerificationReport(BaseModel):
    """Result of verify_chain. is_valid iff errors is empty."""
    batch_id: str
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    issues: list[ChainIssue] = Field(default_factory=list)
    event_count: int = 0


class DocumentAuditReport(BaseModel):
    """Result of comparing indexed events with their content-store documents."""
    batch_id: str
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    checked: int = 0
    signed: int = 0


class TransferCheck(BaseModel):
    """Pre-check result for a purchase or transfer."""
    is_valid: bool
    error: Optional[str] = None
    available: Decimal = Decimal("0")


class CertificateData(BaseModel):
    """
    Everything a certificate generator needs for one batch.

    Rendering (PDF, QR codes) happens elsewhere.
    """
    batch_id: str
    product_details: Optional[ProductDetails] = None
    ownership_history: list[OwnershipRecord] = Field(default_factory=list)
    current_owners: dict[str, Decimal] = Field(default_factory=dict)
    display_names: dict[str, str] = Field(default_factory=dict)
    transaction_chain: list[TransactionEvent] = Field(default_factory=list)
    total_quantity: Decimal = Decimal("0")
    available_quantity: Decimal = Decimal("0")
    harvest_content_hash: Optional[str] = None
    head_content_hash: Optional[str] = None
    chain_valid: bool = False
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
