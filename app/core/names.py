"""
Display Name Resolution

Turns owner identifiers (wallet addresses, emails, profile ids, plain
names) into something a certificate can print. Purely presentational:
events always store the raw identifier, and nothing in the ledger depends
on a resolved name.
"""

import re
from abc import ABC, abstractmethod
from typing import Optional

from ..observability import get_logger
from ..schemas import HARVEST_ORIGIN
from .exceptions import StorageError

logger = get_logger(__name__)

_PROFILE_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

UNKNOWN_USER = "Unknown User"
FARM_LOCATION = "Farm Location"
_UNKNOWN_PLACEHOLDERS = frozenset(("Unknown Farmer", "Unknown Buyer", "Unknown Seller"))


class ProfileDirectory(ABC):
    """Where full names come from. Each lookup returns None when nobody matches."""

    @abstractmethod
    async def find_by_wallet(self, wallet_address: str) -> Optional[str]:
        pass

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[str]:
        pass

    @abstractmethod
    async def find_by_profile_id(self, profile_id: str) -> Optional[str]:
        pass


class InMemoryProfileDirectory(ProfileDirectory):
    """Dict-backed directory for development and tests."""

    def __init__(self):
        self._by_wallet: dict[str, str] = {}
        self._by_email: dict[str, str] = {}
        self._by_profile_id: dict[str, str] = {}

    def add(
        self,
        full_name: str,
        wallet_address: Optional[str] = None,
        email: Optional[str] = None,
        profile_id: Optional[str] = None,
    ) -> None:
        if wallet_address:
            self._by_wallet[wallet_address.lower()] = full_name
        if email:
            self._by_email[email.lower()] = full_name
        if profile_id:
            self._by_profile_id[profile_id.lower()] = full_name

    async def find_by_wallet(self, wallet_address: str) -> Optional[str]:
        return self._by_wallet.get(wallet_address.lower())

    async def find_by_email(self, email: str) -> Optional[str]:
        return self._by_email.get(email.lower())

    async def find_by_profile_id(self, profile_id: str) -> Optional[str]:
        return self._by_profile_id.get(profile_id.lower())


def fallback_name(identifier: str) -> str:
    """Best guess at a display name without consulting any directory."""
    if not identifier:
        return UNKNOWN_USER
    if identifier.startswith("0x"):
        return f"User {identifier[-4:]}"
    if "@" in identifier:
        local = identifier.split("@", 1)[0]
        return local[:1].upper() + local[1:] if local else UNKNOWN_USER
    if identifier in (HARVEST_ORIGIN, FARM_LOCATION):
        return FARM_LOCATION
    if identifier in _UNKNOWN_PLACEHOLDERS:
        return UNKNOWN_USER
    return identifier


class DisplayNameResolver:
    """
    Resolves identifiers to display names, caching every answer.

    Directory failures degrade to fallback_name; a certificate with a
    guessed name is better than no certificate.
    """

    def __init__(self, directory: Optional[ProfileDirectory] = None):
        self._directory = directory
        self._cache: dict[str, str] = {}

    async def resolve_display_name(self, identifier: str) -> str:
        cached = self._cache.get(identifier)
        if cached is not None:
            return cached

        name = None
        if self._directory is not None and identifier:
            try:
                name = await self._lookup(identifier)
            except StorageError as e:
                logger.warning(
                    "Profile lookup failed, using fallback name",
                    identifier=identifier,
                    error=str(e),
                )

        resolved = name or fallback_name(identifier)
        self._cache[identifier] = resolved
        return resolved

    async def resolve_many(self, identifiers) -> dict[str, str]:
        return {identifier: await self.resolve_display_name(identifier) for identifier in identifiers}

    async def _lookup(self, identifier: str) -> Optional[str]:
        if identifier.startswith("0x"):
            return await self._directory.find_by_wallet(identifier)
        if "@" in identifier:
            return await self._directory.find_by_email(identifier)
        if _PROFILE_ID_RE.match(identifier):
            return await self._directory.find_by_profile_id(identifier)
        return None

    def cached_name(self, identifier: str) -> Optional[str]:
        return self._cache.get(identifier)

    def clear_cache(self) -> None:
        self._cache.clear()
