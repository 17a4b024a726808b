"""Shared fixtures: everything runs against the in-memory store."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from auditledger.core import (
    AutoLogger,
    ChainVerifier,
    LedgerConfig,
    LedgerService,
    RootAnchorService,
)
from auditledger.db import InMemoryLedgerStore
from auditledger.schemas import Category, EntryDraft, LedgerEntry, Outcome, Severity


@pytest.fixture
def store():
    return InMemoryLedgerStore(lock_timeout_ms=5000)


@pytest.fixture
def ledger(store):
    return LedgerService(store=store, config=LedgerConfig())


@pytest.fixture
def autologger(ledger):
    autolog = AutoLogger(ledger)
    autolog.attach()
    yield autolog
    autolog.detach()


@pytest.fixture
def verifier(store):
    return ChainVerifier(store)


@pytest.fixture
def anchors(store):
    return RootAnchorService(store)


@pytest.fixture
def org_a():
    return uuid4()


@pytest.fixture
def org_b():
    return uuid4()


@pytest.fixture
def actor():
    return uuid4()


@pytest.fixture
def make_draft():
    def _make(organization_id, event_name="job.created", **fields):
        fields.setdefault("target_type", event_name.split(".")[0])
        fields.setdefault("target_id", uuid4())
        return EntryDraft(organization_id=organization_id, event_name=event_name, **fields)
    return _make


@pytest.fixture
def append(ledger, make_draft):
    """Append one entry in its own committed transaction."""
    def _append(organization_id, event_name="job.created", **fields):
        return ledger.record(make_draft(organization_id, event_name, **fields))
    return _append


@pytest.fixture
def make_legacy():
    """A pre-chain row: no seq, no prev_hash, no hash."""
    def _make(organization_id, event_name="job.created", created_at=None, **fields):
        return LedgerEntry(
            organization_id=organization_id,
            event_name=event_name,
            target_type=fields.pop("target_type", "job"),
            category=fields.pop("category", Category.OPERATIONS),
            severity=fields.pop("severity", Severity.INFO),
            outcome=fields.pop("outcome", Outcome.ALLOWED),
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        )
    return _make
