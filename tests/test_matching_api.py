"""Tests for the matching operational endpoints."""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.api.matching import get_enqueue_service, get_maintenance_scheduler, get_task_queue
from app.main import app
from app.matching_engine.config import matching_config
from app.matching_engine.exceptions import MaintenanceAlreadyRunningError
from app.matching_engine.maintenance import SchedulerState


BASE = "/api/v1/matching"


@pytest.fixture
def queue():
    mock = AsyncMock()
    mock.get_queue_stats = AsyncMock(return_value={
        "pending": 4, "running": 1, "done": 10, "failed": 2, "avg_wait_ms": 1500,
    })
    app.dependency_overrides[get_task_queue] = lambda: mock
    return mock


@pytest.fixture
def enqueue_service():
    mock = AsyncMock()
    app.dependency_overrides[get_enqueue_service] = lambda: mock
    return mock


@pytest.fixture
def scheduler():
    mock = MagicMock()
    mock.state = SchedulerState()
    mock.trigger_manual_maintenance = AsyncMock()
    app.dependency_overrides[get_maintenance_scheduler] = lambda: mock
    return mock


def _report(**overrides) -> dict:
    started = datetime(2026, 5, 1, 3, 0, tzinfo=timezone.utc)
    report = {
        "run_id": "manual-1777604400000-0a1b2c3d",
        "trigger": "manual",
        "status": "ok",
        "started_at": started,
        "completed_at": started,
        "duration_ms": 0,
        "failed_steps": [],
        "steps": {"sweep": {"status": "ok", "duration_ms": 3, "result": {"enqueued": 2}}},
    }
    report.update(overrides)
    return report


# ===========================================================================
# HEALTH
# ===========================================================================


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["instance_id"] == matching_config.instance_id


# ===========================================================================
# QUEUE
# ===========================================================================


class TestQueueStats:

    @pytest.mark.asyncio
    async def test_returns_counts(self, client, queue, mock_db):
        resp = await client.get(f"{BASE}/queue")

        assert resp.status_code == 200
        assert resp.json() == {"pending": 4, "running": 1, "done": 10, "failed": 2, "avg_wait_ms": 1500}
        queue.get_queue_stats.assert_awaited_once_with(session=mock_db)


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_single_intent(self, client, enqueue_service):
        intent_id = uuid.uuid4()
        enqueue_service.enqueue = AsyncMock(return_value=True)

        resp = await client.post(f"{BASE}/enqueue/{intent_id}")

        assert resp.status_code == 200
        assert resp.json() == {"intent_id": str(intent_id), "enqueued": True}
        enqueue_service.enqueue.assert_awaited_once_with(intent_id)

    @pytest.mark.asyncio
    async def test_invalid_id(self, client, enqueue_service):
        resp = await client.post(f"{BASE}/enqueue/not-a-uuid")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_batch(self, client, enqueue_service):
        ids = [uuid.uuid4(), uuid.uuid4()]
        enqueue_service.enqueue_many = AsyncMock(return_value={"enqueued": 1, "skipped": 1, "errors": 0})

        resp = await client.post(f"{BASE}/enqueue", json={"intent_ids": [str(i) for i in ids]})

        assert resp.status_code == 200
        assert resp.json() == {"enqueued": 1, "skipped": 1, "errors": 0}
        enqueue_service.enqueue_many.assert_awaited_once_with(ids)

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, client, enqueue_service):
        resp = await client.post(f"{BASE}/enqueue", json={"intent_ids": []})
        assert resp.status_code == 422


# ===========================================================================
# MAINTENANCE
# ===========================================================================


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_status(self, client, scheduler):
        scheduler.state.runs_completed = 3
        scheduler.state.last_run_id = "maint-1-abc"

        resp = await client.get(f"{BASE}/maintenance/status")

        assert resp.status_code == 200
        body = resp.json()
        assert body["is_running"] is False
        assert body["runs_completed"] == 3
        assert body["last_run_id"] == "maint-1-abc"

    @pytest.mark.asyncio
    async def test_trigger_returns_report(self, client, scheduler):
        scheduler.trigger_manual_maintenance = AsyncMock(return_value=_report())

        resp = await client.post(f"{BASE}/maintenance/trigger")

        assert resp.status_code == 200
        body = resp.json()
        assert body["trigger"] == "manual"
        assert body["status"] == "ok"
        assert body["steps"]["sweep"]["result"] == {"enqueued": 2}

    @pytest.mark.asyncio
    async def test_trigger_conflict_while_running(self, client, scheduler):
        scheduler.trigger_manual_maintenance = AsyncMock(
            side_effect=MaintenanceAlreadyRunningError("maint-1-abc"),
        )

        resp = await client.post(f"{BASE}/maintenance/trigger")

        assert resp.status_code == 409
        assert "maint-1-abc" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_trigger_conflict_on_lost_race(self, client, scheduler):
        scheduler.trigger_manual_maintenance = AsyncMock(return_value=None)

        resp = await client.post(f"{BASE}/maintenance/trigger")

        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_trigger_skipped_by_other_instance(self, client, scheduler):
        scheduler.trigger_manual_maintenance = AsyncMock(
            return_value={"run_id": "manual-1-abc", "trigger": "manual", "skipped": True},
        )

        resp = await client.post(f"{BASE}/maintenance/trigger")

        assert resp.status_code == 200
        assert resp.json()["skipped"] is True
