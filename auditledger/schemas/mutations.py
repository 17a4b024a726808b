"""
Watched domain mutations.

A WatchedMutation describes one insert or update of a job, control,
evidence or export record, as seen by the auto-logger inside the
transaction that performed it.
"""

from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    JOB = "job"
    CONTROL = "control"
    EVIDENCE = "evidence"
    EXPORT = "export"


class MutationOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class WatchedMutation(BaseModel):
    entity_type: EntityType
    operation: MutationOperation
    organization_id: UUID
    record_id: UUID
    old: Optional[dict[str, Any]] = None
    new: dict[str, Any] = Field(default_factory=dict)

    def changed(self, field: str) -> bool:
        """True on update when the field's value differs from before."""
        if self.operation != MutationOperation.UPDATE or self.old is None:
            return False
        return self.old.get(field) != self.new.get(field)

    def became(self, field: str, value: Any) -> bool:
        """True on update when the field transitioned into value."""
        return self.changed(field) and self.new.get(field) == value
