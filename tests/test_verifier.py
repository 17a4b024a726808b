"""
Chain verification against tampered storage.

Tampering reaches into the in-memory store's private state, which is
exactly what an attacker with database access would do.
"""

import pytest

from auditledger.core import ChainBrokenAtSeq, Hasher
from auditledger.observability import get_metrics


def tamper(store, entry, **changes):
    store._entries[entry.id] = entry.model_copy(update=changes)


@pytest.fixture
def chain(append, org_a):
    return [append(org_a, f"job.step_{i}", metadata={"step": i}) for i in range(5)]


class TestVerify:

    def test_intact_chain(self, verifier, chain, org_a):
        result = verifier.verify(org_a)
        assert result.ok
        assert result.entries_checked == 5
        assert result.broken_at_seq is None

    def test_empty_organization(self, verifier, org_a):
        result = verifier.verify(org_a)
        assert result.ok
        assert result.entries_checked == 0
        assert result.last_hash is None

    def test_metadata_tamper_detected(self, verifier, store, chain, org_a):
        tamper(store, chain[2], metadata={"step": 99})

        result = verifier.verify(org_a)
        assert not result.ok
        assert result.broken_at_seq == chain[2].seq
        assert result.entries_checked == 2
        assert "contents" in result.reason

    def test_rewritten_hash_breaks_next_link(self, verifier, store, chain, org_a):
        # Recompute a valid-looking hash for altered contents
        altered = chain[1].model_copy(update={"event_name": "job.forged"})
        forged_hash = Hasher.hash_entry(altered, altered.prev_hash)
        tamper(store, chain[1], event_name="job.forged", hash=forged_hash)

        result = verifier.verify(org_a)
        assert result.broken_at_seq == chain[2].seq
        assert "prev_hash" in result.reason

    def test_prev_hash_tamper_detected(self, verifier, store, chain, org_a):
        tamper(store, chain[3], prev_hash="f" * 64)
        assert verifier.verify(org_a).broken_at_seq == chain[3].seq

    def test_first_mismatch_reported(self, verifier, store, chain, org_a):
        tamper(store, chain[1], metadata={"step": -1})
        tamper(store, chain[4], metadata={"step": -4})
        assert verifier.verify(org_a).broken_at_seq == chain[1].seq

    def test_other_organizations_unaffected(self, verifier, store, append, chain, org_a, org_b):
        other = append(org_b)
        tamper(store, other, metadata={"forged": True})

        assert not verifier.verify(org_b).ok
        assert verifier.verify(org_a).ok

    def test_failure_counted(self, verifier, store, chain, org_a):
        failures_before = get_metrics().verification_failures
        tamper(store, chain[0], metadata={})
        verifier.verify(org_a)
        assert get_metrics().verification_failures == failures_before + 1


class TestRangeVerify:

    def test_range_seeded_from_predecessor(self, verifier, chain, org_a):
        result = verifier.verify(org_a, from_seq=chain[2].seq, to_seq=chain[3].seq)
        assert result.ok
        assert result.entries_checked == 2
        assert result.last_hash == chain[3].hash

    def test_tamper_outside_range_ignored(self, verifier, store, chain, org_a):
        tamper(store, chain[4], metadata={"step": 0})
        assert verifier.verify(org_a, to_seq=chain[3].seq).ok
        assert not verifier.verify(org_a, from_seq=chain[4].seq).ok


class TestRequireIntact:

    def test_raises_on_break(self, verifier, store, chain, org_a):
        tamper(store, chain[2], metadata={"step": 7})
        with pytest.raises(ChainBrokenAtSeq) as exc_info:
            verifier.require_intact(org_a)
        assert exc_info.value.seq == chain[2].seq
        assert exc_info.value.organization_id == org_a

    def test_returns_result_when_intact(self, verifier, chain, org_a):
        assert verifier.require_intact(org_a).entries_checked == 5

    def test_verify_all(self, verifier, append, chain, org_b):
        append(org_b)
        results = verifier.verify_all()
        assert len(results) == 2
        assert all(r.ok for r in results)
