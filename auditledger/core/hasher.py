"""
Cryptographic Hashing Service

Handles deterministic serialization and SHA-256 hashing of ledger entries.
Same input → same hash. Always. Forever.

This is SACRED GROUND.

If this breaks, every chain becomes unverifiable.
Every change here must be backward-compatible or versioned
(bump SERIALIZATION_VERSION and LEDGER_HASH_SALT together).

CANONICAL SERIALIZATION RULES:
1. Dictionary keys: sorted recursively (Unicode codepoint order)
2. Nulls inside metadata: omitted entirely (not serialized as null)
3. Empty strings, lists, dicts: preserved (they are valid data)
4. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
5. Dates: ISO 8601 (YYYY-MM-DD)
6. UUIDs: lowercase string representation
7. Enums: string value (not name)
8. Floats: BANNED - use Decimal, int or string instead
9. Decimals: string representation
10. Booleans: JSON true/false
11. JSON output: no extra whitespace, sorted keys, ASCII only

ENTRY HASH:
    SHA256( envelope || prev_hash_or_empty || salt )

where envelope is a JSON array of [name, value] pairs in this exact order:
    v, seq, organization_id, actor_id, event_name, target_type,
    target_id, created_at, metadata
A missing actor_id or target_id serializes as "".
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from .errors import HashComputationFailure


# Fixed, versioned salt mixed into every entry hash
LEDGER_HASH_SALT = "auditledger-ledger-v1"


class CanonicalSerializationError(HashComputationFailure):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    IMMUTABLE CONTRACT:
    - Same logical input → same hash
    - Forever
    - Across platforms
    - Across Python versions

    If you need to change serialization rules, you MUST version them.
    """

    # Version of the canonical serialization format
    # Increment this if serialization rules change in breaking ways
    SERIALIZATION_VERSION = 1

    # Envelope field order. Never reorder, only version.
    ENTRY_FIELDS = (
        "seq",
        "organization_id",
        "actor_id",
        "event_name",
        "target_type",
        "target_id",
        "created_at",
        "metadata",
    )

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert Python objects to JSON-serializable canonical format.

        Args:
            value: The value to serialize
            path: Current path in object tree (for error messages)

        Returns:
            JSON-serializable value

        Raises:
            CanonicalSerializationError: If value cannot be serialized deterministically
        """
        if value is None:
            return None  # Will be filtered out by _to_canonical_dict

        # UUID - lowercase string
        if isinstance(value, UUID):
            return str(value).lower()

        # Datetime - ISO 8601 with microseconds, forced to UTC
        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        # Date - ISO 8601
        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        # Enum - use value, not name
        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        # Floats are the #1 long-term determinism hazard
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads due to platform-dependent "
                "serialization. Use Decimal for precise numbers or string."
            )

        # Decimal - convert to string to preserve precision
        if isinstance(value, Decimal):
            return str(value)

        # String - pass through (preserve whitespace)
        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        # Pydantic model - dump to dict first
        if hasattr(value, "model_dump"):
            dumped = value.model_dump(mode="python")
            return cls._to_canonical_dict(dumped, path)

        if isinstance(value, bytes):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. "
                "Convert to base64 string first."
            )

        if isinstance(value, (set, frozenset)):
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
        """
        Serialize datetime to canonical ISO 8601 format.

        RULES:
        - Must be timezone-aware (we need to know the absolute moment)
        - Converted to UTC for consistency
        - Includes microseconds (6 digits, zero-padded)
        - Uses Z suffix for UTC

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + \
               f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(
        cls,
        data: dict[str, Any],
        path: str = ""
    ) -> dict[str, Any]:
        """
        Convert a dict to canonical form.

        RULES:
        - Keys sorted alphabetically (Unicode code point order)
        - None values omitted entirely
        - Empty strings, lists, dicts PRESERVED (they are valid data)
        - All values recursively serialized
        """
        result = {}

        for key in sorted(data.keys(), key=str):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )

            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)

            # Omit None values (they're non-data)
            if serialized is not None:
                result[key] = serialized

        return result

    @staticmethod
    def _dumps(value: Any) -> str:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def normalize_metadata(cls, metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Reduce metadata to its canonical JSON-native form.

        The stored metadata is exactly what gets hashed, so an entry read
        back from a JSONB column rehashes to the same digest.
        """
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise CanonicalSerializationError(
                f"Metadata must be a dict/object, got {type(metadata).__name__}."
            )
        return cls._to_canonical_dict(metadata, "metadata")

    @classmethod
    def canonical_metadata(cls, metadata: Optional[dict[str, Any]]) -> str:
        """Canonical JSON text of metadata, exactly as it enters the envelope."""
        return cls._dumps(cls.normalize_metadata(metadata))

    @staticmethod
    def _check_hash_format(value: str, label: str) -> str:
        if len(value) != 64 or not all(
            c in "0123456789abcdef" for c in value.lower()
        ):
            raise CanonicalSerializationError(
                f"Invalid {label} format: {value}. "
                "Must be 64 hex characters."
            )
        return value.lower()

    @classmethod
    def entry_envelope(
        cls,
        seq: int,
        organization_id: UUID,
        actor_id: Optional[UUID],
        event_name: str,
        target_type: str,
        target_id: Optional[UUID | str],
        metadata: Optional[dict[str, Any]],
        created_at: datetime,
    ) -> str:
        """
        Build the ordered field envelope for one entry.

        The envelope is a JSON array, not an object, so the field order is
        part of the format rather than an accident of key sorting.
        """
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            raise CanonicalSerializationError(
                f"seq must be a positive integer, got {seq!r}"
            )
        if not isinstance(created_at, datetime):
            raise CanonicalSerializationError(
                f"created_at must be a datetime, got {type(created_at).__name__}"
            )
        if not event_name or not target_type:
            raise CanonicalSerializationError(
                "event_name and target_type are required"
            )

        values = {
            "seq": seq,
            "organization_id": organization_id,
            "actor_id": actor_id if actor_id is not None else "",
            "event_name": event_name,
            "target_type": target_type,
            "target_id": target_id if target_id is not None else "",
            "created_at": created_at,
            "metadata": cls.normalize_metadata(metadata),
        }

        pairs = [["v", cls.SERIALIZATION_VERSION]]
        for name in cls.ENTRY_FIELDS:
            pairs.append([name, cls._serialize_value(values[name], name)])

        return cls._dumps(pairs)

    @classmethod
    def compute_entry_hash(
        cls,
        prev_hash: Optional[str],
        seq: int,
        organization_id: UUID,
        actor_id: Optional[UUID],
        event_name: str,
        target_type: str,
        target_id: Optional[UUID | str],
        metadata: Optional[dict[str, Any]],
        created_at: datetime,
        salt: str = LEDGER_HASH_SALT,
    ) -> str:
        """
        Hash one ledger entry with chain linkage.

        Pure: no I/O, no clock, no randomness. prev_hash is None only for
        the first entry of an organization's chain.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)

        Raises:
            CanonicalSerializationError: If any field cannot be serialized
        """
        envelope = cls.entry_envelope(
            seq=seq,
            organization_id=organization_id,
            actor_id=actor_id,
            event_name=event_name,
            target_type=target_type,
            target_id=target_id,
            metadata=metadata,
            created_at=created_at,
        )

        link = "" if prev_hash is None else cls._check_hash_format(prev_hash, "prev_hash")
        chain_input = f"{envelope}{link}{salt}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def hash_entry(cls, entry: Any, prev_hash: Optional[str]) -> str:
        """Recompute the hash of a stored entry against a given predecessor."""
        return cls.compute_entry_hash(
            prev_hash=prev_hash,
            seq=entry.seq,
            organization_id=entry.organization_id,
            actor_id=entry.actor_id,
            event_name=entry.event_name,
            target_type=entry.target_type,
            target_id=entry.target_id,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )

    @classmethod
    def verify_entry(cls, entry: Any, prev_hash: Optional[str]) -> bool:
        """Check a stored entry's hash. Serialization failures count as a mismatch."""
        if not entry.hash:
            return False
        try:
            computed = cls.hash_entry(entry, prev_hash)
        except CanonicalSerializationError:
            return False
        return cls._constant_time_compare(computed, entry.hash.lower())

    @staticmethod
    def _constant_time_compare(a: str, b: str) -> bool:
        """
        Compare two strings in constant time.

        Prevents timing attacks where an attacker could learn
        about the hash by measuring comparison time.
        """
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
