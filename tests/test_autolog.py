"""
Dual-path capture: explicit logging plus the mutation-hook fallback.

Every watched mutation shape must end up with exactly one entry.
"""

from uuid import uuid4

import pytest

from auditledger.core import HashComputationFailure, MutationRule
from auditledger.core.autolog import TRIGGER_SOURCE
from auditledger.observability import get_metrics
from auditledger.schemas import (
    EntityType,
    EntryDraft,
    MutationOperation,
    Outcome,
    Severity,
)


def fallback_entries(store, organization_id):
    return [
        e for e in store.iter_chain(organization_id)
        if e.metadata.get("trigger_source") == TRIGGER_SOURCE
    ]


class TestFallbackPath:

    def test_job_insert_logged_once(self, autologger, store, org_a, actor):
        job_id = uuid4()
        with store.transaction(actor_id=actor, actor_role="owner") as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"client_name": "Acme", "status": "draft"})

        entries = store.iter_chain(org_a)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.event_name == "job.created"
        assert entry.target_type == "job"
        assert entry.target_id == job_id
        assert entry.actor_id == actor
        assert entry.metadata["trigger_source"] == TRIGGER_SOURCE
        assert entry.metadata["client_name"] == "Acme"

    def test_status_change_records_transition(self, autologger, store, org_a):
        job_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "draft"})
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "active"})

        latest = store.iter_chain(org_a)[-1]
        assert latest.event_name == "job.status_changed"
        assert latest.metadata["old_status"] == "draft"
        assert latest.metadata["new_status"] == "active"
        assert latest.severity == Severity.MATERIAL

    def test_risk_change_includes_level(self, autologger, store, org_a):
        job_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"risk_score": 10, "risk_level": "low"})
            tx.save_record(EntityType.JOB, job_id, org_a, {"risk_score": 80, "risk_level": "high"})

        latest = store.iter_chain(org_a)[-1]
        assert latest.event_name == "job.risk_score_changed"
        assert latest.metadata["old_score"] == 10
        assert latest.metadata["new_score"] == 80
        assert latest.metadata["new_risk_level"] == "high"

    def test_unwatched_update_not_logged(self, autologger, store, org_a):
        job_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "draft", "notes": "a"})
            tx.save_record(EntityType.JOB, job_id, org_a, {"notes": "b"})

        assert [e.event_name for e in store.iter_chain(org_a)] == ["job.created"]

    def test_control_completion(self, autologger, store, org_a):
        control_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.CONTROL, control_id, org_a, {"title": "LOTO", "is_completed": False})
            tx.save_record(EntityType.CONTROL, control_id, org_a, {"is_completed": True})
            # Un-completing is not a watched shape
            tx.save_record(EntityType.CONTROL, control_id, org_a, {"is_completed": False})

        assert [e.event_name for e in store.iter_chain(org_a)] == ["control.completed"]

    def test_evidence_lifecycle(self, autologger, store, org_a):
        evidence_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.EVIDENCE, evidence_id, org_a, {"file_name": "a.jpg", "state": "uploaded"})
            tx.save_record(EntityType.EVIDENCE, evidence_id, org_a, {"state": "sealed"})
            tx.save_record(EntityType.EVIDENCE, evidence_id, org_a, {"state": "verified"})

        assert [e.event_name for e in store.iter_chain(org_a)] == [
            "evidence.uploaded",
            "evidence.sealed",
            "evidence.verified",
        ]
        assert all(e.severity == Severity.MATERIAL for e in store.iter_chain(org_a))

    def test_export_outcomes(self, autologger, store, org_a):
        ready_id, failed_id = uuid4(), uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.EXPORT, ready_id, org_a, {"export_type": "pdf", "state": "queued"})
            tx.save_record(EntityType.EXPORT, ready_id, org_a, {"state": "ready"})
            tx.save_record(EntityType.EXPORT, failed_id, org_a, {"state": "queued"})
            tx.save_record(EntityType.EXPORT, failed_id, org_a, {"state": "failed", "error_code": "E42"})

        completed, failed = store.iter_chain(org_a)
        assert completed.event_name == "export.pdf.completed"
        assert completed.outcome == Outcome.ALLOWED
        assert completed.severity == Severity.MATERIAL
        assert failed.event_name == "export.unknown.failed"
        assert failed.outcome == Outcome.BLOCKED
        assert failed.severity == Severity.MATERIAL
        assert failed.metadata["error_code"] == "E42"

    def test_fallback_severities(self, autologger, store, org_a):
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, uuid4(), org_a, {"status": "draft"})
            control_id = uuid4()
            tx.save_record(EntityType.CONTROL, control_id, org_a, {"is_completed": False})
            tx.save_record(EntityType.CONTROL, control_id, org_a, {"is_completed": True})
            evidence_id = uuid4()
            tx.save_record(EntityType.EVIDENCE, evidence_id, org_a, {"state": "uploaded"})
            tx.save_record(EntityType.EVIDENCE, evidence_id, org_a, {"state": "sealed"})

        assert {e.event_name: e.severity for e in store.iter_chain(org_a)} == {
            "job.created": Severity.INFO,
            "control.completed": Severity.MATERIAL,
            "evidence.uploaded": Severity.MATERIAL,
            "evidence.sealed": Severity.MATERIAL,
        }

    def test_fallback_failure_rolls_back_mutation(self, autologger, store, org_a):
        job_id = uuid4()
        with pytest.raises(HashComputationFailure):
            with store.transaction() as tx:
                tx.save_record(EntityType.JOB, job_id, org_a, {"risk_score": 1.5})

        with store.transaction() as tx:
            assert tx.get_record(EntityType.JOB, job_id) is None
        assert store.entry_count() == 0


class TestExplicitPath:

    def test_marked_mutation_logged_once(self, autologger, ledger, store, org_a):
        job_id = uuid4()
        skips_before = get_metrics().dedup_skips

        with store.transaction() as tx:
            ledger.mark_explicit_log(tx)
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "draft"})
            ledger.append(tx, EntryDraft(
                organization_id=org_a,
                event_name="job.created",
                target_type="job",
                target_id=job_id,
                metadata={"source": "job_service"},
            ))

        entries = store.iter_chain(org_a)
        assert len(entries) == 1
        assert entries[0].metadata == {"source": "job_service"}
        assert fallback_entries(store, org_a) == []
        assert get_metrics().dedup_skips == skips_before + 1

    def test_mark_covers_only_next_mutation(self, autologger, ledger, store, org_a):
        job_id = uuid4()
        with store.transaction() as tx:
            ledger.mark_explicit_log(tx)
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "draft"})
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "active"})

        assert [e.event_name for e in fallback_entries(store, org_a)] == ["job.status_changed"]

    def test_flag_cleared_at_transaction_end(self, autologger, ledger, store, org_a):
        with store.transaction() as tx:
            ledger.mark_explicit_log(tx)
            assert tx.dedup.is_marked
        assert not tx.dedup.is_marked

    def test_flag_cleared_on_rollback(self, autologger, ledger, store, org_a):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                ledger.mark_explicit_log(tx)
                raise RuntimeError("boom")
        assert not tx.dedup.is_marked


class TestRules:

    def test_custom_rule(self, autologger, store, org_a):
        autologger.register(MutationRule(
            entity_type=EntityType.CONTROL,
            operation=MutationOperation.INSERT,
            event_name="control.added",
        ))
        with store.transaction() as tx:
            tx.save_record(EntityType.CONTROL, uuid4(), org_a, {"title": "Harness"})

        assert [e.event_name for e in store.iter_chain(org_a)] == ["control.added"]

    def test_detach_stops_logging(self, autologger, store, org_a):
        autologger.detach()
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, uuid4(), org_a, {"status": "draft"})
        assert store.entry_count() == 0

    def test_record_belongs_to_one_organization(self, autologger, store, org_a, org_b):
        job_id = uuid4()
        with store.transaction() as tx:
            tx.save_record(EntityType.JOB, job_id, org_a, {"status": "draft"})
        with pytest.raises(Exception, match="another organization"):
            with store.transaction() as tx:
                tx.save_record(EntityType.JOB, job_id, org_b, {"status": "active"})
