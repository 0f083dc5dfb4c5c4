"""
Hashing Service

Two jobs:
- Canonical serialization + SHA-256 for event chaining and call signing.
  Same input -> same bytes -> same hash.
- Storage key derivation for proofs (blake2_128_concat).

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively, must be strings
3. Nulls: omitted entirely
4. Empty strings, lists, dicts: preserved
5. Datetimes: timezone-aware only, forced to UTC, microseconds, Z suffix
6. Enums: string value
7. Floats: BANNED
8. Bytes: BANNED (hex-encode first)
9. JSON output: no whitespace, sorted keys, ASCII only
10. Top-level: must be a dict
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    If serialization rules change, SERIALIZATION_VERSION must change too,
    otherwise existing event chains and signatures stop verifying.
    """

    SERIALIZATION_VERSION = 1

    # blake2_128_concat: 16-byte blake2b digest followed by the raw key
    STORAGE_KEY_DIGEST_SIZE = 16

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

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, bytearray)):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. Hex-encode first."
            )

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys(), key=str):
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

        Raises:
            CanonicalSerializationError: If data cannot be serialized deterministically
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, "
                f"got {type(data).__name__}."
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
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """Hex SHA-256 of the canonical form."""
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def hash_event(
        cls,
        payload: dict[str, Any],
        previous_hash: str | None = None
    ) -> str:
        """
        Hash an event with chain linkage.

        FORMAT:
        - Genesis: SHA256(canonical_payload)
        - Chained: SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_chain(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None
    ) -> bool:
        """Check a payload against its expected chained hash."""
        try:
            computed = cls.hash_event(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return cls._constant_time_compare(computed, expected_hash.lower())

    @staticmethod
    def _constant_time_compare(a: str, b: str) -> bool:
        if len(a) != len(b):
            return False
        result = 0
        for x, y in zip(a, b):
            result |= ord(x) ^ ord(y)
        return result == 0

    # ================================================================
    # STORAGE KEYS
    # ================================================================

    @classmethod
    def storage_key(cls, proof: bytes) -> bytes:
        """
        blake2_128_concat(proof).

        The digest prefix spreads keys evenly; the concatenated proof keeps
        the key reversible.
        """
        digest = hashlib.blake2b(
            bytes(proof), digest_size=cls.STORAGE_KEY_DIGEST_SIZE
        ).digest()
        return digest + bytes(proof)

    @classmethod
    def proof_from_storage_key(cls, key: bytes) -> bytes:
        """Recover the proof from a blake2_128_concat key."""
        if len(key) < cls.STORAGE_KEY_DIGEST_SIZE:
            raise ValueError(
                f"Storage key too short: {len(key)} bytes, "
                f"need at least {cls.STORAGE_KEY_DIGEST_SIZE}"
            )
        proof = bytes(key[cls.STORAGE_KEY_DIGEST_SIZE:])
        if cls.storage_key(proof) != bytes(key):
            raise ValueError("Storage key digest does not match its proof")
        return proof

    @staticmethod
    def fingerprint(data: bytes) -> bytes:
        """SHA-256 of raw content. A convenient way to turn a file into a proof."""
        return hashlib.sha256(data).digest()
