"""
Read-side query shapes: filters, time ranges and keyset pages.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from .entries import Category, LedgerEntry, Outcome, Severity


DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class TimeRange(str, Enum):
    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"
    ALL = "all"


_RANGE_DELTAS = {
    TimeRange.LAST_24H: timedelta(hours=24),
    TimeRange.LAST_7D: timedelta(days=7),
    TimeRange.LAST_30D: timedelta(days=30),
}


class EntryFilters(BaseModel):
    """
    Filters for listing one organization's entries.

    An explicit start/end takes precedence over time_range.
    """
    category: Optional[Category] = None
    severity: Optional[Severity] = None
    outcome: Optional[Outcome] = None
    target_type: Optional[str] = None
    target_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None
    event_name: Optional[str] = None
    time_range: TimeRange = TimeRange.ALL
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_window(self) -> "EntryFilters":
        for value in (self.start, self.end):
            if value is not None and value.tzinfo is None:
                raise ValueError("start/end must be timezone-aware")
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def window(self, now: Optional[datetime] = None) -> tuple[Optional[datetime], Optional[datetime]]:
        """Resolve the filter to an absolute (start, end) pair."""
        if self.start is not None or self.end is not None:
            return self.start, self.end
        delta = _RANGE_DELTAS.get(self.time_range)
        if delta is None:
            return None, None
        now = now or datetime.now(timezone.utc)
        return now - delta, None

    def matches(self, entry: LedgerEntry, now: Optional[datetime] = None) -> bool:
        if self.category and entry.category != self.category:
            return False
        if self.severity and entry.severity != self.severity:
            return False
        if self.outcome and entry.outcome != self.outcome:
            return False
        if self.target_type and entry.target_type != self.target_type:
            return False
        if self.target_id and entry.target_id != self.target_id:
            return False
        if self.actor_id and entry.actor_id != self.actor_id:
            return False
        if self.event_name and entry.event_name != self.event_name:
            return False
        start, end = self.window(now)
        if start is not None and entry.created_at < start:
            return False
        if end is not None and entry.created_at > end:
            return False
        return True


class PageRequest(BaseModel):
    """Keyset page on seq. cursor is the seq of the last entry already seen."""
    limit: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    cursor: Optional[int] = None
    order: SortOrder = SortOrder.DESC


class EntryPage(BaseModel):
    entries: list[LedgerEntry]
    next_cursor: Optional[int] = None
    has_more: bool = False
