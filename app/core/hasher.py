"""
Canonical Document Serialization

Every transaction event is persisted as a JSON document in a
content-addressable store. The store derives the document's address from
its bytes, so the bytes must be deterministic:

Same event → same bytes → same content hash.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every document (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Dates: ISO 8601 (YYYY-MM-DD)
7. UUIDs: lowercase string
8. Enums: string value (not name)
9. Decimals: normalized string ("40.50" and "40.5" serialize the same)
10. Floats: BANNED - quantities and prices are Decimal
11. JSON output: no whitespace, sorted keys, ASCII only
12. Top-level: must be dict/object
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and SHA-256 digests for ledger documents.

    If the rules change, SERIALIZATION_VERSION must change with them;
    documents already in the content store keep the version they were
    written with.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in ledger documents. "
                "Use Decimal for quantities and prices."
            )

        if isinstance(value, Decimal):
            return cls._serialize_decimal(value, path)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python", by_alias=True), path)

        if isinstance(value, set):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ (timezone-aware input only)."""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @staticmethod
    def _serialize_decimal(value: Decimal, path: str) -> str:
        if not value.is_finite():
            raise CanonicalSerializationError(
                f"Cannot serialize non-finite Decimal at {path}"
            )
        # normalize() turns 100 into 1E+2; format with "f" keeps it plain
        normalized = value.normalize()
        text = format(normalized, "f")
        return "0" if text in ("-0", "0") else text

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to its canonical JSON string.

        Args:
            data: Dict or pydantic model (dumped by alias)

        Returns:
            Canonical JSON string with version marker

        Raises:
            CanonicalSerializationError: If data cannot be serialized deterministically
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python", by_alias=True)

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        canonical_dict = cls._to_canonical_dict(data)
        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **canonical_dict}

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def to_bytes(cls, data: dict[str, Any] | Any) -> bytes:
        """Canonical document bytes, ready for upload."""
        return cls.canonicalize(data).encode("utf-8")

    @staticmethod
    def digest(data: bytes) -> str:
        """Hex-encoded SHA-256 of raw bytes (64 lowercase characters)."""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """SHA-256 of the canonical form of data."""
        return cls.digest(cls.to_bytes(data))

    @staticmethod
    def parse(data: bytes) -> dict[str, Any]:
        """
        Decode a canonical document back to a plain dict.

        The version marker is stripped. Values stay in their canonical
        (string) form; model validation turns them back into Decimals
        and datetimes.
        """
        try:
            decoded = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CanonicalSerializationError(f"Document is not valid JSON: {e}") from e
        if not isinstance(decoded, dict):
            raise CanonicalSerializationError("Document top level must be an object")
        decoded.pop("__canon_v", None)
        return decoded
