"""
Service Wiring

Builds a LedgerService and its collaborators from environment
configuration. The API lifespan and the management CLI both use this; no
module-level instances exist anywhere.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .core import (
    DisplayNameResolver,
    EventSigner,
    EventStore,
    IntegrityVerifier,
    LedgerService,
    SigningConfig,
)
from .db import EventIndex, create_event_index
from .observability import get_logger
from .storage import ContentStore, create_content_store

logger = get_logger(__name__)


@dataclass
class LedgerResources:
    """A ledger plus the resources that must be closed with it."""
    ledger: LedgerService
    content_store: ContentStore
    event_index: EventIndex

    async def close(self) -> None:
        await self.content_store.close()
        await self.event_index.close()


def build_ledger(
    content_store: ContentStore,
    event_index: EventIndex,
    signer: Optional[EventSigner] = None,
    name_resolver: Optional[DisplayNameResolver] = None,
    trusted_keys: Iterable[str] = (),
) -> LedgerService:
    event_store = EventStore(content_store, event_index, signer=signer)
    return LedgerService(
        event_store,
        verifier=IntegrityVerifier(event_store, trusted_keys),
        name_resolver=name_resolver,
    )


async def build_ledger_from_env() -> LedgerResources:
    """
    Construct every collaborator from environment variables.

    See app.storage.config, app.db.config and app.core.signer for the
    variables each part reads.
    """
    content_store = create_content_store()
    event_index = await create_event_index()
    signing = SigningConfig.from_env()
    signer = EventSigner.from_config(signing)

    logger.info(
        "Ledger services ready",
        content_store=type(content_store).__name__,
        event_index=type(event_index).__name__,
        signing_enabled=signer is not None,
        trusted_keys=len(signing.trusted_keys),
    )
    return LedgerResources(
        ledger=build_ledger(
            content_store, event_index, signer=signer, trusted_keys=signing.trusted_keys,
        ),
        content_store=content_store,
        event_index=event_index,
    )
