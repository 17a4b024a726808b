"""HTTP surface, exercised through FastAPI's TestClient."""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from auditledger.db import InMemoryLedgerStore
from auditledger.main import app
from auditledger.shared import reset_for_tests


@pytest.fixture
def api_store():
    store = InMemoryLedgerStore(lock_timeout_ms=100)
    reset_for_tests(store)
    yield store
    reset_for_tests()


@pytest.fixture
def client(api_store):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def org_id():
    return str(uuid4())


def post_entry(client, org_id, event_name="job.created", **body):
    body.setdefault("target_type", event_name.split(".")[0])
    return client.post(
        f"/organizations/{org_id}/ledger",
        json={"event_name": event_name, **body},
        headers={"X-Actor-Id": str(uuid4()), "X-Actor-Role": "owner"},
    )


class TestAppendEndpoint:

    def test_append_returns_entry(self, client, org_id):
        response = post_entry(client, org_id, metadata={"client_name": "Acme"})
        assert response.status_code == 201

        data = response.json()
        assert data["seq"] == 1
        assert data["prev_hash"] is None
        assert len(data["hash"]) == 64
        assert data["actor_role"] == "owner"
        assert data["category"] == "operations"

    def test_empty_event_name_rejected(self, client, org_id):
        assert post_entry(client, org_id, event_name="", target_type="job").status_code == 422

    def test_float_metadata_rejected(self, client, api_store, org_id):
        response = post_entry(client, org_id, metadata={"score": 0.5})
        assert response.status_code == 422
        assert api_store.entry_count() == 0

    def test_busy_chain_returns_423(self, client, api_store, org_id):
        with api_store.transaction() as tx:
            tx.lock_chain(UUID(org_id))
            response = post_entry(client, org_id)
        assert response.status_code == 423

    def test_no_mutation_routes(self, client, org_id):
        post_entry(client, org_id)
        assert client.delete(f"/organizations/{org_id}/ledger").status_code == 405
        assert client.put(f"/organizations/{org_id}/ledger", json={}).status_code == 405


class TestListEndpoint:

    def test_cursor_pagination(self, client, org_id):
        for i in range(5):
            post_entry(client, org_id, f"job.step_{i}")

        first = client.get(f"/organizations/{org_id}/ledger", params={"limit": 3}).json()
        assert len(first["entries"]) == 3
        assert first["has_more"] is True

        second = client.get(
            f"/organizations/{org_id}/ledger",
            params={"limit": 3, "cursor": first["next_cursor"]},
        ).json()
        assert len(second["entries"]) == 2
        assert second["has_more"] is False

    def test_filters(self, client, org_id):
        post_entry(client, org_id, "job.created")
        post_entry(client, org_id, "policy.violation", target_type="policy")

        response = client.get(f"/organizations/{org_id}/ledger", params={"severity": "critical"})
        assert [e["event_name"] for e in response.json()["entries"]] == ["policy.violation"]

    def test_start_after_end_rejected(self, client, org_id):
        now = datetime.now(timezone.utc)
        response = client.get(
            f"/organizations/{org_id}/ledger",
            params={"start": now.isoformat(), "end": (now - timedelta(hours=1)).isoformat()},
        )
        assert response.status_code == 422
        assert "start must not be after end" in response.json()["detail"][0]["msg"]

    def test_naive_window_rejected(self, client, org_id):
        response = client.get(
            f"/organizations/{org_id}/ledger",
            params={"start": "2026-01-01T00:00:00"},
        )
        assert response.status_code == 422
        assert "timezone-aware" in response.json()["detail"][0]["msg"]

    def test_limit_bounds(self, client, org_id):
        assert client.get(f"/organizations/{org_id}/ledger", params={"limit": 0}).status_code == 422
        assert client.get(f"/organizations/{org_id}/ledger", params={"limit": 1001}).status_code == 422


class TestVerificationEndpoints:

    def test_verify(self, client, org_id):
        for _ in range(3):
            post_entry(client, org_id)

        data = client.get(f"/organizations/{org_id}/ledger/verify").json()
        assert data["ok"] is True
        assert data["entries_checked"] == 3
        assert data["broken_at_seq"] is None

    def test_verify_reports_tamper(self, client, api_store, org_id):
        entry_id = post_entry(client, org_id).json()["id"]
        post_entry(client, org_id)

        stored = next(e for e in api_store._entries.values() if str(e.id) == entry_id)
        api_store._entries[stored.id] = stored.model_copy(update={"metadata": {"forged": True}})

        data = client.get(f"/organizations/{org_id}/ledger/verify").json()
        assert data["ok"] is False
        assert data["broken_at_seq"] == 1

    def test_checkpoint_and_roots(self, client, org_id):
        post_entry(client, org_id)
        post_entry(client, org_id)

        created = client.post("/ledger/roots").json()
        assert created["created"] is True
        assert created["root"]["first_seq"] == 1
        assert created["root"]["last_seq"] == 2

        assert client.post("/ledger/roots").json() == {"created": False, "root": None}

        roots = client.get("/ledger/roots").json()
        assert len(roots) == 1
        assert roots[0]["hash_method"] == "merkle-sha256-v1"

    def test_proof(self, client, org_id):
        entry = post_entry(client, org_id).json()
        assert client.get(f"/ledger/entries/{entry['seq']}/proof").status_code == 404

        client.post("/ledger/roots")
        response = client.get(f"/ledger/entries/{entry['seq']}/proof")
        assert response.status_code == 200
        assert response.json()["verified"] is True
        assert response.json()["entry_hash"] == entry["hash"]

    def test_unknown_seq_proof(self, client):
        assert client.get("/ledger/entries/999/proof").status_code == 404

    def test_export(self, client, org_id):
        post_entry(client, org_id)
        bundle = client.get(f"/organizations/{org_id}/ledger/export").json()
        assert bundle["_meta"]["organization_id"] == org_id
        assert len(bundle["entries"]) == 1


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_health_detailed(self, client, org_id):
        post_entry(client, org_id)
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert response.json()["checks"]["chain_integrity"]["status"] == "healthy"

    def test_health_detailed_broken_chain(self, client, api_store, org_id):
        post_entry(client, org_id)
        stored = next(iter(api_store._entries.values()))
        api_store._entries[stored.id] = stored.model_copy(update={"event_name": "job.forged"})

        assert client.get("/health/detailed").status_code == 503

    def test_metrics(self, client, org_id):
        post_entry(client, org_id)
        assert client.get("/metrics").status_code == 200

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
