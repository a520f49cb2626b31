"""
Event Signing

Optional Ed25519 signatures over transaction documents.

Content addressing alone proves a document has not changed since it was
uploaded. It does not prove who wrote it. When the ledger runs with a
signer, each event's unsigned canonical document is signed before upload
and the signature travels inside the document.

Configuration:
    FARMCHAIN_SIGNING_PRIVATE_KEY: base64 Ed25519 private key (32-byte seed)
    FARMCHAIN_SIGNING_PUBLIC_KEY: base64 Ed25519 public key
    FARMCHAIN_TRUSTED_PUBLIC_KEYS: comma-separated extra keys an audit accepts
"""

import base64
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from ..schemas import TransactionEvent
from .hasher import Hasher


class Signer:
    """Ed25519 primitives on base64-encoded keys and signatures."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

    @staticmethod
    def sign(message: bytes, private_key_b64: str) -> str:
        """Sign raw bytes, returning the base64 detached signature."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message)
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: bytes, signature_b64: str, public_key_b64: str) -> bool:
        """True iff signature_b64 is a valid signature of message by public_key_b64."""
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message, base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError):
            return False


@dataclass(frozen=True)
class SigningConfig:
    """
    Signing key configuration. A public key without a private key lets an
    audit check signatures on a deployment that does not sign.

    trusted_public_keys lists keys whose signatures an audit accepts in
    addition to public_key, e.g. keys retired by a rotation.
    """
    private_key: Optional[str] = None
    public_key: Optional[str] = None
    trusted_public_keys: Tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.private_key)

    @property
    def trusted_keys(self) -> frozenset[str]:
        keys = set(self.trusted_public_keys)
        if self.public_key:
            keys.add(self.public_key)
        elif self.private_key:
            keys.add(Signer.public_key_for(self.private_key))
        return frozenset(keys)

    @classmethod
    def from_env(cls) -> "SigningConfig":
        trusted = os.getenv("FARMCHAIN_TRUSTED_PUBLIC_KEYS", "")
        return cls(
            private_key=os.getenv("FARMCHAIN_SIGNING_PRIVATE_KEY") or None,
            public_key=os.getenv("FARMCHAIN_SIGNING_PUBLIC_KEY") or None,
            trusted_public_keys=tuple(key.strip() for key in trusted.split(",") if key.strip()),
        )


class EventSigner:
    """
    Signs and verifies TransactionEvents.

    The signed message is the canonical document WITHOUT the signature
    fields, so a signature can be checked from the stored document alone.
    """

    def __init__(self, private_key_b64: str, public_key_b64: Optional[str] = None):
        derived = Signer.public_key_for(private_key_b64)
        if public_key_b64 is not None and public_key_b64 != derived:
            raise ValueError(
                "Signing keypair validation failed. "
                "Private and public keys do not match."
            )
        self._private_key = private_key_b64
        self.public_key = derived

    @classmethod
    def from_config(cls, config: SigningConfig) -> Optional["EventSigner"]:
        if not config.enabled:
            return None
        return cls(config.private_key, config.public_key)

    @staticmethod
    def signing_bytes(event: TransactionEvent) -> bytes:
        return Hasher.to_bytes(event.to_document(include_signature=False))

    def sign(self, event: TransactionEvent) -> TransactionEvent:
        """Return a copy of event carrying this signer's signature."""
        signature = Signer.sign(self.signing_bytes(event), self._private_key)
        return event.model_copy(
            update={"signature": signature, "signer_public_key": self.public_key}
        )

    @staticmethod
    def verify(event: TransactionEvent) -> bool:
        """
        Verify an event's embedded signature.

        Unsigned events return False; callers decide whether unsigned is acceptable.
        """
        if not event.signature or not event.signer_public_key:
            return False
        return Signer.verify(
            EventSigner.signing_bytes(event),
            event.signature,
            event.signer_public_key,
        )
