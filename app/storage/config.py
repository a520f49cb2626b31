"""
Content Store Configuration

Environment Variables:
    CONTENT_STORE_DRIVER: "memory" (default if no credentials) or "pinata"
    PINATA_JWT: Bearer token (preferred over key/secret)
    PINATA_API_KEY / PINATA_API_SECRET: legacy key pair
    PINATA_API_URL: pinning API base (default https://api.pinata.cloud)
    PINATA_GATEWAY_URL: gateway base (default https://gateway.pinata.cloud)
    CONTENT_STORE_TIMEOUT: request timeout in seconds (default 30)
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ContentStoreDriver(str, Enum):
    """Supported content store drivers."""
    MEMORY = "memory"
    PINATA = "pinata"


@dataclass
class ContentStoreConfig:
    """Pinning service connection configuration."""
    api_url: str = "https://api.pinata.cloud"
    gateway_url: str = "https://gateway.pinata.cloud"
    jwt: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    timeout: float = 30.0
    cid_version: int = 1

    @property
    def has_credentials(self) -> bool:
        return bool(self.jwt) or bool(self.api_key and self.api_secret)

    @classmethod
    def from_env(cls) -> "ContentStoreConfig":
        return cls(
            api_url=os.getenv("PINATA_API_URL", "https://api.pinata.cloud").rstrip("/"),
            gateway_url=os.getenv("PINATA_GATEWAY_URL", "https://gateway.pinata.cloud").rstrip("/"),
            jwt=os.getenv("PINATA_JWT") or None,
            api_key=os.getenv("PINATA_API_KEY") or None,
            api_secret=os.getenv("PINATA_API_SECRET") or None,
            timeout=float(os.getenv("CONTENT_STORE_TIMEOUT", "30.0")),
        )

    def auth_headers(self) -> dict[str, str]:
        """Headers for the pinning API. Never log these."""
        if self.jwt:
            return {"Authorization": f"Bearer {self.jwt}"}
        if self.api_key and self.api_secret:
            return {
                "pinata_api_key": self.api_key,
                "pinata_secret_api_key": self.api_secret,
            }
        return {}


def get_content_store_driver() -> ContentStoreDriver:
    """
    Get the content store driver to use.

    Checks CONTENT_STORE_DRIVER, then falls back to pinata if credentials
    are configured and memory otherwise.
    """
    explicit = os.getenv("CONTENT_STORE_DRIVER", "").lower()

    if explicit:
        try:
            return ContentStoreDriver(explicit)
        except ValueError:
            raise ValueError(
                f"Unknown CONTENT_STORE_DRIVER: {explicit}. "
                f"Valid values: memory, pinata"
            ) from None

    if ContentStoreConfig.from_env().has_credentials:
        return ContentStoreDriver.PINATA

    return ContentStoreDriver.MEMORY
