"""
Content-Addressable Storage

This module defines the ContentStore interface and two implementations:
- InMemoryContentStore: For development and testing
- PinataContentStore: IPFS pinning through the Pinata HTTP API

The ledger depends on exactly three operations:
- upload(bytes, filename, metadata) -> content hash
- fetch(content hash) -> bytes
- unpin(content hash) -> bool

Uploads are idempotent by content: uploading the same bytes twice yields the
same hash. There is no transaction and no rollback. An uploaded document
stays retrievable by its hash until it is explicitly unpinned.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from ..core.exceptions import StorageError
from ..core.hasher import Hasher
from ..observability import get_logger
from .config import ContentStoreConfig

logger = get_logger(__name__)


class ContentNotFoundError(StorageError):
    """Raised when a content hash is not retrievable."""
    pass


@dataclass(frozen=True)
class UploadResult:
    """What the store returns for a successful upload."""
    content_hash: str
    size: int
    timestamp: datetime


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ContentStore(ABC):
    """
    Abstract base class for content-addressable storage.

    Implementations must ensure:
    1. The returned hash is derived from the content alone
    2. fetch(hash) returns exactly the uploaded bytes
    3. Failures surface as StorageError, never as a silent None
    """

    @abstractmethod
    async def upload(
        self,
        data: bytes,
        filename: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadResult:
        """Store data and return its content hash."""
        pass

    @abstractmethod
    async def fetch(self, content_hash: str) -> bytes:
        """
        Retrieve stored bytes.

        Raises:
            ContentNotFoundError: If nothing is stored under content_hash
            StorageError: On any other failure
        """
        pass

    @abstractmethod
    async def unpin(self, content_hash: str) -> bool:
        """Release a document. Returns False if it was not pinned."""
        pass

    async def close(self) -> None:
        """Release network resources, if any."""
        return None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryContentStore(ContentStore):
    """
    In-memory implementation of ContentStore.

    The content hash is the SHA-256 hex digest of the bytes.

    Suitable for development and testing. NOT suitable for production
    (no durability, no sharing between processes).
    """

    def __init__(self):
        self._objects: dict[str, bytes] = {}
        self._metadata: dict[str, dict[str, str]] = {}

    async def upload(
        self,
        data: bytes,
        filename: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadResult:
        content_hash = Hasher.digest(data)
        self._objects[content_hash] = data
        self._metadata[content_hash] = {"name": filename, **(metadata or {})}
        return UploadResult(
            content_hash=content_hash,
            size=len(data),
            timestamp=datetime.now(timezone.utc),
        )

    async def fetch(self, content_hash: str) -> bytes:
        try:
            return self._objects[content_hash]
        except KeyError:
            raise ContentNotFoundError(f"Content {content_hash} not found") from None

    async def unpin(self, content_hash: str) -> bool:
        self._metadata.pop(content_hash, None)
        return self._objects.pop(content_hash, None) is not None

    def contains(self, content_hash: str) -> bool:
        return content_hash in self._objects

    def metadata_for(self, content_hash: str) -> Optional[dict[str, str]]:
        return self._metadata.get(content_hash)

    def put_raw(self, content_hash: str, data: bytes) -> None:
        """Overwrite stored bytes without rehashing (for tamper tests only)."""
        self._objects[content_hash] = data

    def __len__(self) -> int:
        return len(self._objects)


# ============================================================
# PINATA IMPLEMENTATION
# ============================================================

class PinataContentStore(ContentStore):
    """
    IPFS pinning via the Pinata HTTP API.

    Uploads go to the pinning API, reads go through the gateway.
    The content hash is the CID Pinata returns (CIDv1 by default).

    Usage:
        store = PinataContentStore(ContentStoreConfig.from_env())
        result = await store.upload(data, "transaction_txn_1.json", {"batchId": "b1"})
        data = await store.fetch(result.content_hash)
        await store.close()
    """

    PIN_FILE_PATH = "/pinning/pinFileToIPFS"
    UNPIN_PATH = "/pinning/unpin/{content_hash}"
    GATEWAY_PATH = "/ipfs/{content_hash}"

    def __init__(
        self,
        config: ContentStoreConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.has_credentials:
            raise ValueError(
                "Pinata credentials are not configured. "
                "Set PINATA_JWT or PINATA_API_KEY and PINATA_API_SECRET."
            )
        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout)

    async def upload(
        self,
        data: bytes,
        filename: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadResult:
        pinata_metadata = {"name": filename}
        if metadata:
            pinata_metadata["keyvalues"] = {k: str(v) for k, v in metadata.items()}

        response = await self._request(
            "POST",
            self._config.api_url + self.PIN_FILE_PATH,
            operation="upload",
            files={"file": (filename, data, "application/json")},
            data={
                "pinataMetadata": json.dumps(pinata_metadata),
                "pinataOptions": json.dumps({"cidVersion": self._config.cid_version}),
            },
            headers=self._config.auth_headers(),
        )

        try:
            body = response.json()
            content_hash = body["IpfsHash"]
        except (ValueError, KeyError) as e:
            raise StorageError(f"Pinning service returned an unexpected response: {e}") from e

        timestamp = datetime.now(timezone.utc)
        if body.get("Timestamp"):
            try:
                timestamp = datetime.fromisoformat(body["Timestamp"].replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Unparseable pin timestamp", raw=body["Timestamp"])

        logger.debug("Pinned document", content_hash=content_hash, filename=filename)
        return UploadResult(
            content_hash=content_hash,
            size=int(body.get("PinSize", len(data))),
            timestamp=timestamp,
        )

    async def fetch(self, content_hash: str) -> bytes:
        url = self._config.gateway_url + self.GATEWAY_PATH.format(content_hash=content_hash)
        response = await self._request(
            "GET", url, operation="fetch", allow_statuses=(404,),
        )
        if response.status_code == 404:
            raise ContentNotFoundError(f"Content {content_hash} not found")
        return response.content

    async def unpin(self, content_hash: str) -> bool:
        url = self._config.api_url + self.UNPIN_PATH.format(content_hash=content_hash)
        response = await self._request(
            "DELETE",
            url,
            operation="unpin",
            headers=self._config.auth_headers(),
            allow_statuses=(404,),
        )
        if response.status_code == 404:
            return False
        logger.info("Unpinned document", content_hash=content_hash)
        return True

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        allow_statuses: tuple[int, ...] = (),
        **kwargs,
    ) -> httpx.Response:
        """Send a request, turning transport and HTTP errors into StorageError."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Content store request failed", operation=operation, error=str(e))
            raise StorageError(f"Content store {operation} failed: {e}") from e

        if response.status_code in allow_statuses:
            return response

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Content store returned an error status",
                operation=operation,
                status_code=response.status_code,
            )
            raise StorageError(
                f"Content store {operation} failed with HTTP {response.status_code}"
            ) from e

        return response

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_content_store(config: Optional[ContentStoreConfig] = None) -> ContentStore:
    """
    Create the ContentStore selected by CONTENT_STORE_DRIVER.

    Returns:
        InMemoryContentStore when no pinning credentials are configured
        PinataContentStore otherwise
    """
    from .config import ContentStoreDriver, get_content_store_driver

    driver = get_content_store_driver()
    if driver == ContentStoreDriver.MEMORY:
        logger.info("Using in-memory content store (no persistence)")
        return InMemoryContentStore()

    config = config or ContentStoreConfig.from_env()
    logger.info("Using Pinata content store", api_url=config.api_url)
    return PinataContentStore(config)
