"""
Content-Addressable Storage Layer

Provides:
- ContentStore abstraction (upload / fetch / unpin)
- InMemoryContentStore for development and tests
- PinataContentStore for IPFS pinning in production
"""

from .config import ContentStoreConfig, ContentStoreDriver, get_content_store_driver
from .content_store import (
    ContentNotFoundError,
    ContentStore,
    InMemoryContentStore,
    PinataContentStore,
    UploadResult,
    create_content_store,
)

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "PinataContentStore",
    "ContentNotFoundError",
    "UploadResult",
    "create_content_store",
    "ContentStoreConfig",
    "ContentStoreDriver",
    "get_content_store_driver",
]
