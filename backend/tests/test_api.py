"""Tests for API endpoints."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import seed_running_session, xero_record
from ledgersync.entities import ALL_ENTITY_TYPES, EntityType
from ledgersync.exceptions import ApiClientError

API = "/api/v1/sync"


class TestRootEndpoint:
    """Tests for root endpoint."""

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client):
        """Test root endpoint returns API info."""
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "ledgersync API"
        assert "version" in data
        assert "docs" in data


class TestHealthEndpoints:
    """Tests for health and probe endpoints."""

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_readiness(self, client):
        with patch("ledgersync.routers.health.check_db_ready", AsyncMock()):
            response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    @pytest.mark.asyncio
    async def test_readiness_failure(self, client):
        failing = AsyncMock(side_effect=RuntimeError("connection refused"))
        with patch("ledgersync.routers.health.check_db_ready", failing):
            response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    @pytest.mark.asyncio
    async def test_health_before_any_sync(self, client):
        """Test health endpoint returns status."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sync_health"] == "error"
        assert data["entities_tracked"] == len(ALL_ENTITY_TYPES)
        assert data["running_sessions"] == 0
        assert data["last_successful_sync"] is None

    @pytest.mark.asyncio
    async def test_health_after_full_sync(self, client, orchestrator):
        await orchestrator.trigger_full_sync(initiated_by="test")

        response = await client.get("/health")

        data = response.json()
        assert data["sync_health"] == "healthy"
        assert data["entities_tracked"] == len(ALL_ENTITY_TYPES)
        assert data["last_successful_sync"] is not None


class TestTriggerEndpoints:
    """Tests for sync trigger endpoints."""

    @pytest.mark.asyncio
    async def test_entity_sync_wait(self, client, fake_client):
        fake_client.queue(
            EntityType.CONTACTS,
            [xero_record(EntityType.CONTACTS, "c-1", datetime(2024, 1, 1, tzinfo=UTC))],
        )

        response = await client.post(
            f"{API}/entities",
            params={"wait": "true"},
            json={"entity_types": ["invoices", "contacts"], "initiated_by": "alice"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["target_entities"] == ["contacts", "invoices"]
        assert data["total_records_processed"] == 1
        assert [e["entity_type"] for e in data["entities"]] == ["contacts", "invoices"]
        assert data["entities"][0]["records_inserted"] == 1

    @pytest.mark.asyncio
    async def test_entity_sync_reports_failures(self, client, fake_client):
        fake_client.queue(EntityType.ITEMS, ApiClientError("HTTP 401", status_code=401))

        response = await client.post(
            f"{API}/entities",
            params={"wait": "true"},
            json={"entity_types": ["accounts", "items"]},
        )

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "error"
        assert data["message"] == f"1 of 2 entities failed, see log {data['session_id']}"

    @pytest.mark.asyncio
    async def test_invalid_entity_type(self, client):
        response = await client.post(
            f"{API}/entities", json={"entity_types": ["contacts", "widgets"]}
        )

        assert response.status_code == 400
        assert response.json()["invalid"] == ["widgets"]

    @pytest.mark.asyncio
    async def test_empty_entity_list(self, client):
        response = await client.post(f"{API}/entities", json={"entity_types": []})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_conflict_when_session_running(self, client, session_maker):
        await seed_running_session(session_maker, "held-session", datetime.now(UTC))

        response = await client.post(f"{API}/full", json={"initiated_by": "alice"})

        assert response.status_code == 409
        assert response.json()["session_id"] == "held-session"

    @pytest.mark.asyncio
    async def test_background_full_sync(self, client, orchestrator):
        response = await client.post(f"{API}/full", json={"initiated_by": "alice"})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "running"
        assert data["target_entities"] == [str(e) for e in ALL_ENTITY_TYPES]

        await asyncio.gather(*list(orchestrator._tasks))

        detail = await client.get(f"{API}/sessions/{data['session_id']}")
        assert detail.status_code == 200
        body = detail.json()
        assert body["session"]["status"] == "completed"
        assert body["session"]["initiated_by"] == "alice"
        assert len(body["logs"]) == len(ALL_ENTITY_TYPES)
        assert body["progress"]["percent_complete"] == 100


class TestSessionEndpoints:
    """Tests for session inspection and cancellation."""

    @pytest.mark.asyncio
    async def test_list_sessions(self, client, orchestrator):
        await orchestrator.trigger_entity_sync(["accounts"], initiated_by="alice")
        await orchestrator.trigger_entity_sync(["contacts"], initiated_by="bob")

        response = await client.get(f"{API}/sessions", params={"limit": 1})

        assert response.status_code == 200
        sessions = response.json()["sessions"]
        assert len(sessions) == 1
        assert sessions[0]["initiated_by"] == "bob"

    @pytest.mark.asyncio
    async def test_session_not_found(self, client):
        response = await client.get(f"{API}/sessions/missing")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_not_found(self, client):
        response = await client.post(f"{API}/sessions/missing/cancel")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_orphaned_session(self, client, session_maker):
        await seed_running_session(session_maker, "orphan", datetime.now(UTC))

        response = await client.post(f"{API}/sessions/orphan/cancel", params={"actor": "ops"})

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"


class TestCheckpointEndpoints:
    """Tests for checkpoint status and reset."""

    @pytest.mark.asyncio
    async def test_status(self, client, orchestrator):
        await orchestrator.trigger_entity_sync(["accounts"], initiated_by="alice")

        response = await client.get(f"{API}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["overall"] == "error"
        checkpoints = {c["entity_type"]: c for c in data["checkpoints"]}
        assert checkpoints["accounts"]["status"] == "completed"
        attention = {e["entity_type"]: e["status"] for e in data["entities_needing_attention"]}
        assert "accounts" not in attention
        assert data["total_entities"] == len(ALL_ENTITY_TYPES)
        assert attention["invoices"] == "never_synced"
        assert len(attention) == len(ALL_ENTITY_TYPES) - 1

    @pytest.mark.asyncio
    async def test_reset_checkpoint(self, client, set_cursor):
        await set_cursor(EntityType.INVOICES, datetime(2024, 2, 1, tzinfo=UTC))

        response = await client.delete(f"{API}/checkpoints/invoices", params={"actor": "ops"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "idle"
        assert data["cursor"].startswith("1970-01-01")

    @pytest.mark.asyncio
    async def test_reset_unknown_entity(self, client):
        response = await client.delete(f"{API}/checkpoints/widgets")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_reset_while_running(self, client, checkpoint_store):
        await checkpoint_store.claim(EntityType.CONTACTS, timedelta(minutes=30))

        response = await client.delete(f"{API}/checkpoints/contacts")

        assert response.status_code == 409
