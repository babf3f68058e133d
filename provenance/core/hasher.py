"""
Record Hashing

Deterministic serialization and SHA-256 hashing of provenance records.
Same record -> same hash. Always.

Every record hash covers the previous record's hash, so a product history
is a tamper-evident chain: changing any byte of any record breaks every
hash after it.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively
3. Nulls: omitted entirely
4. Empty strings: preserved (they are valid data)
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Enums: string value (not name)
7. Floats: BANNED
8. JSON output: no extra whitespace, ASCII only
9. Top-level: must be a dict
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    If serialization rules change, SERIALIZATION_VERSION must change with them.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, Enum):
            return value.value

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads."
            )

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict, path: str = "") -> dict:
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
    def canonicalize(cls, data: dict) -> str:
        """Convert a dict to its canonical JSON string, with version marker."""
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, "
                f"got {type(data).__name__}"
            )

        canonical_dict = {
            "__canon_v": cls.SERIALIZATION_VERSION,
            **cls._to_canonical_dict(data),
        }

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_record(cls, body: dict, previous_hash: Optional[str] = None) -> str:
        """
        Hash a record body with chain linkage.

        FORMAT:
        - First record: SHA256(canonical_body)
        - Chained:      SHA256(previous_hash + ":" + canonical_body)
        """
        canonical = cls.canonicalize(body)

        if previous_hash is None:
            chain_input = canonical
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash!r}. "
                    "Must be 64 lowercase hex characters."
                )
            chain_input = f"{previous_hash}:{canonical}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_record(
        cls,
        body: dict,
        expected_hash: Optional[str],
        previous_hash: Optional[str] = None,
    ) -> bool:
        """Check that a record body hashes to expected_hash."""
        if not expected_hash:
            return False
        try:
            computed = cls.hash_record(body, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash)
