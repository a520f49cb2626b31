"""
Transaction Event Schema

This is an event-sourced ledger, not CRUD.
Nothing is "edited". Produce changes hands.

Each event:
- Is created exactly once
- Is serialized to a canonical document
- Is addressed by the content hash of that document
- Points at its predecessor's content hash
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Sentinel source owner for HARVEST events
HARVEST_ORIGIN = "Farm"


def _floats_to_decimal(value: Any) -> Any:
    """JSON numbers in free-form fields arrive as floats; the hasher refuses floats."""
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite number not allowed: {value!r}")
        return Decimal(repr(value))
    if isinstance(value, dict):
        return {key: _floats_to_decimal(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_floats_to_decimal(item) for item in value]
    return value


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    HARVEST = "HARVEST"    # Introduces quantity into the system
    PURCHASE = "PURCHASE"  # Ownership transfer via sale
    TRANSFER = "TRANSFER"  # Ownership transfer without sale semantics

    @property
    def moves_ownership(self) -> bool:
        return self in (EventType.PURCHASE, EventType.TRANSFER)


class ProductDetails(BaseModel):
    """
    Snapshot of what was harvested.

    Captured once on the HARVEST event and carried unchanged by every later
    event of the batch for display. Never re-validated after harvest.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    crop: str = Field(..., min_length=1)
    variety: str = Field(..., min_length=1)
    harvest_date: date
    grading: Optional[str] = None
    certification: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def floats_to_decimal(cls, data: Any) -> Any:
        return _floats_to_decimal(data)


class EventMetadata(BaseModel):
    """Advisory fields. Never used in invariant checks."""
    model_config = ConfigDict(extra="allow", frozen=True)

    location: Optional[str] = None
    notes: Optional[str] = None
    quality_score: Optional[Decimal] = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    storage_conditions: Optional[str] = None
    processing_details: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def floats_to_decimal(cls, data: Any) -> Any:
        return _floats_to_decimal(data)


class TransactionEvent(BaseModel):
    """
    The immutable record of one transfer of custody.

    Rules:
    - No UPDATE
    - No DELETE
    - Corrections are new events

    Chain rules (checked by the integrity verifier, not here):
    - previous_event_hash is None only for the batch's HARVEST
    - previous_event_hash equals the content_hash of the preceding event
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    transaction_id: str = Field(..., min_length=1)
    type: EventType

    from_owner: str = Field(..., alias="from", min_length=1)
    to_owner: str = Field(..., alias="to", min_length=1)

    quantity: Decimal = Field(..., gt=Decimal("0"), description="Kilograms moved by this event")
    price: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), description="Total value of this event")

    timestamp: datetime
    previous_event_hash: Optional[str] = None
    batch_id: str = Field(..., min_length=1)

    product_details: ProductDetails
    metadata: Optional[EventMetadata] = None

    # Optional Ed25519 signature over the unsigned document
    signature: Optional[str] = None
    signer_public_key: Optional[str] = None

    # Assigned by the content store. Not part of the document itself.
    content_hash: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def is_harvest(self) -> bool:
        return self.type == EventType.HARVEST

    @property
    def is_persisted(self) -> bool:
        return self.content_hash is not None

    def to_document(self, include_signature: bool = True) -> dict[str, Any]:
        """
        The dict that is canonicalized and uploaded to the content store.

        content_hash is excluded because a document cannot contain its own
        address. Signature fields are excluded when building the bytes that
        get signed.
        """
        exclude = {"content_hash"}
        if not include_signature:
            exclude |= {"signature", "signer_public_key"}
        return self.model_dump(mode="python", by_alias=True, exclude=exclude)

    @classmethod
    def from_document(cls, document: dict[str, Any], content_hash: str) -> "TransactionEvent":
        """Rebuild an event from a decoded content-store document."""
        return cls.model_validate({**document, "content_hash": content_hash})

    def same_content(self, other: "TransactionEvent") -> bool:
        """True if both events carry the same document, ignoring storage bookkeeping."""
        return self.to_document() == other.to_document()
