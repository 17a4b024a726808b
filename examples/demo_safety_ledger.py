"""
Demonstration: A Job's Audit Trail

Shows both write paths feeding one organization's chain:
- JobService logs job creation explicitly (and marks the dedup flag)
- Control completion and evidence sealing are caught by the auto-logger

Then checkpoints the history, proves one entry is anchored and
verifies the chain.

Run with: python -m examples.demo_safety_ledger
"""

from uuid import UUID, uuid4

from auditledger.core import AutoLogger, ChainVerifier, LedgerService, RootAnchorService
from auditledger.db import InMemoryLedgerStore
from auditledger.schemas import EntityType, EntryDraft, Severity


class JobService:
    """A domain service that logs its own job creation."""

    def __init__(self, ledger: LedgerService):
        self._ledger = ledger
        self._store = ledger.store

    def create_job(self, organization_id: UUID, owner_id: UUID, client_name: str) -> UUID:
        job_id = uuid4()
        with self._store.transaction(actor_id=owner_id, actor_role="owner") as tx:
            self._ledger.mark_explicit_log(tx)
            tx.save_record(EntityType.JOB, job_id, organization_id, {
                "client_name": client_name,
                "status": "draft",
                "risk_score": 0,
            })
            self._ledger.append(tx, EntryDraft(
                organization_id=organization_id,
                event_name="job.created",
                target_type="job",
                target_id=job_id,
                severity=Severity.INFO,
                metadata={"client_name": client_name, "source": "job_service"},
            ))
        return job_id


def main():
    print("=" * 60)
    print("Audit Ledger - Job Audit Trail Demonstration")
    print("=" * 60)
    print()

    store = InMemoryLedgerStore()
    ledger = LedgerService(store=store)
    AutoLogger(ledger).attach()
    anchors = RootAnchorService(store)
    verifier = ChainVerifier(store)

    organization_id = uuid4()
    owner_id = uuid4()
    jobs = JobService(ledger)

    # Explicit path: one entry, no fallback
    job_id = jobs.create_job(organization_id, owner_id, "Harbor Crane Refit")

    # Fallback path: nobody logs these, the auto-logger does
    control_id = uuid4()
    evidence_id = uuid4()
    with store.transaction(actor_id=owner_id, actor_role="owner") as tx:
        tx.save_record(EntityType.CONTROL, control_id, organization_id, {
            "job_id": str(job_id), "title": "Lockout/tagout", "is_completed": False,
        })
        tx.save_record(EntityType.CONTROL, control_id, organization_id, {"is_completed": True})
        tx.save_record(EntityType.EVIDENCE, evidence_id, organization_id, {
            "job_id": str(job_id), "file_name": "lockout.jpg", "state": "uploaded",
        })
        tx.save_record(EntityType.EVIDENCE, evidence_id, organization_id, {"state": "sealed"})

    page = ledger.list(organization_id)
    print(f"{len(page.entries)} entries (newest first):")
    for entry in page.entries:
        source = entry.metadata.get("trigger_source", "explicit")
        print(f"  seq {entry.seq:>3}  {entry.event_name:<22} {entry.severity.value:<9} {source}")
    print()

    root = anchors.checkpoint()
    print(f"Checkpoint {root.first_seq}-{root.last_seq}: {root.root_hash[:16]}...")

    proof = anchors.prove_entry(page.entries[-1].seq)
    print(f"Proof for seq {proof.seq} verifies: {anchors.verify_proof(proof)}")

    result = verifier.verify(organization_id)
    print(f"Chain intact: {result.ok} ({result.entries_checked} entries)")


if __name__ == "__main__":
    main()
