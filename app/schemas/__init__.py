# Canonical Schemas for the FarmChain Ledger
# These define the contract every transaction document must obey.

from .events import (
    HARVEST_ORIGIN,
    EventMetadata,
    EventType,
    ProductDetails,
    TransactionEvent,
)
from .chain import (
    CertificateData,
    ChainIssue,
    DocumentAuditReport,
    OwnerHolding,
    OwnershipRecord,
    TransactionChain,
    TransferCheck,
    VerificationReport,
)

__all__ = [
    # Events
    "HARVEST_ORIGIN",
    "EventType",
    "EventMetadata",
    "ProductDetails",
    "TransactionEvent",
    # Derived state
    "OwnerHolding",
    "TransactionChain",
    "OwnershipRecord",
    "TransferCheck",
    "CertificateData",
    # Verification
    "ChainIssue",
    "VerificationReport",
    "DocumentAuditReport",
]
