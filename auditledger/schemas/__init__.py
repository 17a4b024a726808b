# Canonical schemas for the audit ledger.
# These define the contract every stored entry must obey.

from .entries import (
    Category,
    Severity,
    Outcome,
    EntryDraft,
    LedgerEntry,
    LedgerRoot,
)
from .queries import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    EntryFilters,
    EntryPage,
    PageRequest,
    SortOrder,
    TimeRange,
)
from .mutations import EntityType, MutationOperation, WatchedMutation

__all__ = [
    # Entries
    "Category",
    "Severity",
    "Outcome",
    "EntryDraft",
    "LedgerEntry",
    "LedgerRoot",
    # Queries
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "EntryFilters",
    "EntryPage",
    "PageRequest",
    "SortOrder",
    "TimeRange",
    # Mutations
    "EntityType",
    "MutationOperation",
    "WatchedMutation",
]
