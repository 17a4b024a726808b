"""
Auto-Logger

The safety net behind explicit logging. Registered as a mutation observer
on the store, it sees every watched insert/update of a job, control,
evidence or export record inside the transaction that made it.

For each mutation:
- If the transaction's dedup flag is set, the flag is consumed and
  nothing is written (the service logged this mutation itself).
- Otherwise every rule whose shape matches appends one coarse fallback
  entry, tagged trigger_source="mutation_hook".

Either way a watched mutation shape ends up with exactly one entry.
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import (
    Category,
    EntityType,
    EntryDraft,
    LedgerEntry,
    MutationOperation,
    Outcome,
    Severity,
    WatchedMutation,
)

if TYPE_CHECKING:
    from ..db.store import LedgerStore, TransactionContext
    from .ledger import LedgerService


logger = get_logger(__name__)

TRIGGER_SOURCE = "mutation_hook"

# Sentinel: rule fires on any change of its field
ANY_VALUE = object()


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return "unknown"


def _no_metadata(mutation: WatchedMutation) -> dict[str, Any]:
    return {}


def _pick(*names: str) -> Callable[[WatchedMutation], dict[str, Any]]:
    """Projection copying the named fields from the new record."""
    def project(mutation: WatchedMutation) -> dict[str, Any]:
        return {name: mutation.new.get(name) for name in names}
    return project


def _transition(field_name: str, old_key: str, new_key: str, *extra: str):
    """Projection recording a field's before/after values."""
    def project(mutation: WatchedMutation) -> dict[str, Any]:
        data = {
            old_key: (mutation.old or {}).get(field_name),
            new_key: mutation.new.get(field_name),
        }
        for name in extra:
            data[f"old_{name}"] = (mutation.old or {}).get(name)
            data[f"new_{name}"] = mutation.new.get(name)
        return data
    return project


@dataclass(frozen=True)
class MutationRule:
    """
    Maps one mutation shape to one fallback entry.

    Shapes: any insert of entity_type, or an update where `field`
    changed (and, with to_value, changed into that value).
    """
    entity_type: EntityType
    operation: MutationOperation
    event_name: str
    field: Optional[str] = None
    to_value: Any = ANY_VALUE
    project: Callable[[WatchedMutation], dict[str, Any]] = _no_metadata
    category: Optional[Category] = None
    severity: Optional[Severity] = None
    outcome: Optional[Outcome] = None

    def matches(self, mutation: WatchedMutation) -> bool:
        if mutation.entity_type != self.entity_type:
            return False
        if mutation.operation != self.operation:
            return False
        if self.operation == MutationOperation.INSERT:
            return True
        if self.to_value is ANY_VALUE:
            return mutation.changed(self.field)
        return mutation.became(self.field, self.to_value)

    def build_draft(self, mutation: WatchedMutation) -> EntryDraft:
        metadata = dict(self.project(mutation))
        metadata["trigger_source"] = TRIGGER_SOURCE
        return EntryDraft(
            organization_id=mutation.organization_id,
            event_name=self.event_name.format_map(_Placeholders(mutation.new)),
            target_type=self.entity_type.value,
            target_id=mutation.record_id,
            metadata=metadata,
            category=self.category,
            severity=self.severity,
            outcome=self.outcome,
        )


DEFAULT_RULES: tuple[MutationRule, ...] = (
    # Jobs
    MutationRule(
        entity_type=EntityType.JOB,
        operation=MutationOperation.INSERT,
        event_name="job.created",
        project=_pick("client_name", "job_type", "status", "risk_score", "risk_level"),
        severity=Severity.INFO,
    ),
    MutationRule(
        entity_type=EntityType.JOB,
        operation=MutationOperation.UPDATE,
        event_name="job.status_changed",
        field="status",
        project=_transition("status", "old_status", "new_status"),
        severity=Severity.MATERIAL,
    ),
    MutationRule(
        entity_type=EntityType.JOB,
        operation=MutationOperation.UPDATE,
        event_name="job.risk_score_changed",
        field="risk_score",
        project=_transition("risk_score", "old_score", "new_score", "risk_level"),
        severity=Severity.MATERIAL,
    ),
    # Hazard controls
    MutationRule(
        entity_type=EntityType.CONTROL,
        operation=MutationOperation.UPDATE,
        event_name="control.completed",
        field="is_completed",
        to_value=True,
        project=_pick("job_id", "title", "completed_by", "completed_at"),
        severity=Severity.MATERIAL,
    ),
    # Evidence
    MutationRule(
        entity_type=EntityType.EVIDENCE,
        operation=MutationOperation.INSERT,
        event_name="evidence.uploaded",
        project=_pick("job_id", "file_name", "file_sha256", "phase", "evidence_type", "state"),
        severity=Severity.MATERIAL,
    ),
    MutationRule(
        entity_type=EntityType.EVIDENCE,
        operation=MutationOperation.UPDATE,
        event_name="evidence.sealed",
        field="state",
        to_value="sealed",
        project=_pick("job_id", "file_sha256", "sealed_at"),
        severity=Severity.MATERIAL,
    ),
    MutationRule(
        entity_type=EntityType.EVIDENCE,
        operation=MutationOperation.UPDATE,
        event_name="evidence.verified",
        field="state",
        to_value="verified",
        project=_pick("job_id", "file_sha256", "verified_at"),
        severity=Severity.MATERIAL,
    ),
    # Exports
    MutationRule(
        entity_type=EntityType.EXPORT,
        operation=MutationOperation.UPDATE,
        event_name="export.{export_type}.completed",
        field="state",
        to_value="ready",
        project=_pick("export_type", "manifest_hash", "completed_at"),
        severity=Severity.MATERIAL,
    ),
    MutationRule(
        entity_type=EntityType.EXPORT,
        operation=MutationOperation.UPDATE,
        event_name="export.{export_type}.failed",
        field="state",
        to_value="failed",
        project=_pick("export_type", "error_code", "error_id", "error_message"),
        severity=Severity.MATERIAL,
        outcome=Outcome.BLOCKED,
    ),
)


class AutoLogger:
    """
    Rule registry plus the mutation observer that applies it.

    Usage:
        autolog = AutoLogger(ledger)
        autolog.attach()          # registers on ledger.store
    """

    def __init__(
        self,
        ledger: "LedgerService",
        rules: Optional[Iterable[MutationRule]] = None,
    ):
        self._ledger = ledger
        self._rules: dict[EntityType, list[MutationRule]] = {}
        for rule in DEFAULT_RULES if rules is None else rules:
            self.register(rule)

    def register(self, rule: MutationRule) -> None:
        self._rules.setdefault(rule.entity_type, []).append(rule)

    def rules_for(self, entity_type: EntityType) -> list[MutationRule]:
        return list(self._rules.get(entity_type, []))

    def attach(self, store: Optional["LedgerStore"] = None) -> None:
        (store or self._ledger.store).add_observer(self.on_mutation)

    def detach(self, store: Optional["LedgerStore"] = None) -> None:
        (store or self._ledger.store).remove_observer(self.on_mutation)

    def on_mutation(
        self,
        tx: "TransactionContext",
        mutation: WatchedMutation,
    ) -> list[LedgerEntry]:
        """Observer callback. Runs synchronously inside the mutating transaction."""
        if tx.dedup.consume():
            get_metrics().record_dedup_skip()
            logger.debug(
                "Mutation logged explicitly, fallback skipped",
                entity_type=mutation.entity_type.value,
                record_id=str(mutation.record_id),
            )
            return []

        written = []
        for rule in self._rules.get(mutation.entity_type, []):
            if not rule.matches(mutation):
                continue
            draft = rule.build_draft(mutation)
            entry = self._ledger.append(tx, draft, fallback=True)
            written.append(entry)
            logger.info(
                "Fallback entry written",
                seq=entry.seq,
                event_name=entry.event_name,
                entity_type=mutation.entity_type.value,
                record_id=str(mutation.record_id),
            )
        return written
