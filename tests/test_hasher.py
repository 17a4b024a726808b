"""Canonical serialization and entry hashing - THIS IS SACRED GROUND."""

import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from auditledger.core import (
    CanonicalSerializationError,
    HashComputationFailure,
    Hasher,
    LEDGER_HASH_SALT,
)


ORG = UUID("12345678-1234-5678-1234-567812345678")
WHEN = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def entry_hash(**overrides):
    fields = dict(
        prev_hash=None,
        seq=1,
        organization_id=ORG,
        actor_id=None,
        event_name="job.created",
        target_type="job",
        target_id=None,
        metadata={"a": 1},
        created_at=WHEN,
    )
    fields.update(overrides)
    return Hasher.compute_entry_hash(**fields)


class TestCanonicalization:

    def test_compact_ascii_output(self):
        assert Hasher.canonical_metadata({"name": "caf\u00e9", "n": 42}) == '{"n":42,"name":"caf\\u00e9"}'

    def test_recursively_sorted_keys(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.canonical_metadata(data1) == Hasher.canonical_metadata(data2)

    def test_nulls_omitted_empty_values_preserved(self):
        assert Hasher.canonical_metadata({"a": 1, "b": None}) == Hasher.canonical_metadata({"a": 1})
        assert Hasher.canonical_metadata({"a": ""}) != Hasher.canonical_metadata({"a": None})
        assert Hasher.canonical_metadata({"a": []}) != Hasher.canonical_metadata({})

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonical_metadata({"score": 1.5})

    def test_sets_and_bytes_banned(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonical_metadata({"tags": {"a", "b"}})
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonical_metadata({"blob": b"raw"})

    def test_decimal_as_string(self):
        assert Hasher.canonical_metadata({"n": Decimal("1.50")}) == '{"n":"1.50"}'

    def test_serialization_error_is_hash_failure(self):
        assert issubclass(CanonicalSerializationError, HashComputationFailure)

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonical_metadata({"at": datetime(2024, 1, 1)})

    def test_datetime_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        local = datetime(2024, 1, 2, 5, 4, 5, tzinfo=plus_two)
        assert Hasher.canonical_metadata({"at": local}) == Hasher.canonical_metadata({"at": WHEN})
        assert '"2024-01-02T03:04:05.000000Z"' in Hasher.canonical_metadata({"at": WHEN})

    def test_uuid_lowercase(self):
        upper = UUID("ABCDEF12-1234-5678-1234-567812345678")
        assert "abcdef12-1234" in Hasher.canonical_metadata({"id": upper})

    def test_metadata_normalization(self):
        assert Hasher.normalize_metadata(None) == {}
        assert Hasher.normalize_metadata({"b": None, "a": ORG}) == {"a": str(ORG)}
        with pytest.raises(CanonicalSerializationError):
            Hasher.normalize_metadata(["not", "a", "dict"])


class TestConstantTimeCompare:

    def test_equal(self):
        assert Hasher._constant_time_compare("a" * 64, "a" * 64)

    def test_different(self):
        assert not Hasher._constant_time_compare("a" * 64, "a" * 63 + "b")

    def test_different_length(self):
        assert not Hasher._constant_time_compare("a" * 64, "a" * 63)


class TestEntryHash:

    def test_golden_envelope(self):
        envelope = Hasher.entry_envelope(
            seq=1,
            organization_id=ORG,
            actor_id=None,
            event_name="job.created",
            target_type="job",
            target_id=None,
            metadata={"b": 2, "a": 1},
            created_at=WHEN,
        )
        assert envelope == (
            '[["v",1],["seq",1],'
            '["organization_id","12345678-1234-5678-1234-567812345678"],'
            '["actor_id",""],["event_name","job.created"],["target_type","job"],'
            '["target_id",""],["created_at","2024-01-02T03:04:05.000000Z"],'
            '["metadata",{"a":1,"b":2}]]'
        )

    def test_hash_formula(self):
        envelope = Hasher.entry_envelope(
            seq=1,
            organization_id=ORG,
            actor_id=None,
            event_name="job.created",
            target_type="job",
            target_id=None,
            metadata={"a": 1},
            created_at=WHEN,
        )
        first = hashlib.sha256(f"{envelope}{LEDGER_HASH_SALT}".encode("utf-8")).hexdigest()
        assert entry_hash() == first

        second = hashlib.sha256(
            f"{envelope}{first}{LEDGER_HASH_SALT}".encode("utf-8")
        ).hexdigest()
        assert entry_hash(prev_hash=first) == second

    def test_hash_format(self):
        value = entry_hash()
        assert len(value) == 64
        assert value == value.lower()

    @pytest.mark.parametrize("override", [
        {"seq": 2},
        {"organization_id": uuid4()},
        {"actor_id": uuid4()},
        {"event_name": "job.updated"},
        {"target_type": "control"},
        {"target_id": uuid4()},
        {"metadata": {"a": 2}},
        {"created_at": WHEN + timedelta(microseconds=1)},
        {"prev_hash": "a" * 64},
        {"salt": "other-salt"},
    ])
    def test_every_field_changes_hash(self, override):
        assert entry_hash(**override) != entry_hash()

    def test_invalid_prev_hash_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="prev_hash"):
            entry_hash(prev_hash="not-a-hash")

    @pytest.mark.parametrize("seq", [0, -1, True, "1"])
    def test_invalid_seq_rejected(self, seq):
        with pytest.raises(CanonicalSerializationError):
            entry_hash(seq=seq)

    def test_required_names(self):
        with pytest.raises(CanonicalSerializationError):
            entry_hash(event_name="")
        with pytest.raises(CanonicalSerializationError):
            entry_hash(target_type="")

    def test_float_metadata_fails(self):
        with pytest.raises(HashComputationFailure):
            entry_hash(metadata={"score": 0.5})
