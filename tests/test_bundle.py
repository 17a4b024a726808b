"""Export bundles checked offline, as an auditor would receive them."""

import json

import pytest

from auditledger.core import BundleResult, BundleVerifier, export_bundle


def roundtrip(bundle):
    return json.loads(json.dumps(bundle))


@pytest.fixture
def populated(append, org_a, org_b):
    entries = [append(org_a, f"job.step_{i}", metadata={"step": i}) for i in range(4)]
    append(org_b)
    return entries


class TestExport:

    def test_contains_only_own_chain(self, store, populated, org_a):
        bundle = export_bundle(store, org_a)
        assert bundle["_meta"]["entry_count"] == 4
        assert bundle["_meta"]["chain_valid_at_export"] is True
        assert [e["seq"] for e in bundle["entries"]] == [e.seq for e in populated]

    def test_unanchored_bundle_has_no_proofs(self, store, populated, org_a):
        bundle = export_bundle(store, org_a)
        assert bundle["roots"] == []
        assert bundle["proofs"] == {}

    def test_anchored_bundle_carries_proofs(self, store, anchors, populated, org_a):
        anchors.checkpoint()
        bundle = export_bundle(store, org_a)
        assert len(bundle["roots"]) == 1
        assert set(bundle["proofs"]) == {str(e.seq) for e in populated}


class TestVerify:

    def test_unanchored_verifies(self, store, populated, org_a):
        report = BundleVerifier(roundtrip(export_bundle(store, org_a))).verify()
        assert report.result == BundleResult.VERIFIED
        assert report.entry_count == 4

    def test_anchored_verifies(self, store, anchors, populated, org_a):
        anchors.checkpoint()
        report = BundleVerifier(roundtrip(export_bundle(store, org_a))).verify()
        assert report.result == BundleResult.VERIFIED
        assert report.checks_failed == []

    def test_edited_entry_is_tampered(self, store, populated, org_a):
        bundle = roundtrip(export_bundle(store, org_a))
        bundle["entries"][1]["metadata"]["step"] = 42

        report = BundleVerifier(bundle).verify()
        assert report.result == BundleResult.TAMPERED
        assert report.broken_at_seq == populated[1].seq

    def test_dropped_entry_is_tampered(self, store, populated, org_a):
        bundle = roundtrip(export_bundle(store, org_a))
        del bundle["entries"][2]
        assert BundleVerifier(bundle).verify().result == BundleResult.TAMPERED

    def test_forged_proof_is_tampered(self, store, anchors, populated, org_a):
        anchors.checkpoint()
        bundle = roundtrip(export_bundle(store, org_a))
        key = str(populated[0].seq)
        bundle["proofs"][key]["proof_hashes"][0] = "0" * 64
        assert BundleVerifier(bundle).verify().result == BundleResult.TAMPERED

    def test_missing_proof_is_incomplete(self, store, anchors, populated, org_a):
        anchors.checkpoint()
        bundle = roundtrip(export_bundle(store, org_a))
        del bundle["proofs"][str(populated[2].seq)]
        assert BundleVerifier(bundle).verify().result == BundleResult.INCOMPLETE

    def test_count_mismatch_is_incomplete(self, store, populated, org_a):
        bundle = roundtrip(export_bundle(store, org_a))
        bundle["_meta"]["entry_count"] = 10
        assert BundleVerifier(bundle).verify().result == BundleResult.INCOMPLETE

    @pytest.mark.parametrize("bundle", [
        [],
        {"_meta": {}, "entries": []},
        {"_meta": {"organization_id": "not-a-uuid"}, "entries": [], "roots": [], "proofs": {}},
        {"_meta": {}, "entries": {}, "roots": [], "proofs": {}},
    ])
    def test_malformed_is_invalid_format(self, bundle):
        assert BundleVerifier(bundle).verify().result == BundleResult.INVALID_FORMAT

    def test_report_serializes(self, store, populated, org_a):
        report = BundleVerifier(roundtrip(export_bundle(store, org_a))).verify()
        data = report.to_dict()
        assert data["result"] == "VERIFIED"
        assert data["organization_id"] == str(org_a)
