"""Tests for WorkerPool — task processing, failure handling and lifecycle."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.models.matching_task import MatchingTask, TaskStatus
from app.matching_engine.worker_pool import WorkerPool


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def mock_queue():
    queue = AsyncMock()
    queue.claim_batch = AsyncMock(return_value=[])
    queue.mark_done = AsyncMock(return_value=True)
    queue.handle_failure = AsyncMock(return_value=TaskStatus.PENDING)
    return queue


@pytest.fixture
def mock_standard():
    matcher = AsyncMock()
    matcher.run_for_intent = AsyncMock(return_value=0)
    return matcher


@pytest.fixture
def mock_triangle():
    matcher = AsyncMock()
    matcher.run_for_intent = AsyncMock(return_value=0)
    return matcher


@pytest.fixture
def mock_outbox():
    outbox = AsyncMock()
    outbox.flush_for_run = AsyncMock(return_value={"claimed": 0})
    return outbox


@pytest.fixture
def pool(mock_queue, mock_standard, mock_triangle, mock_outbox, mock_session_factory, config):
    return WorkerPool(
        task_queue=mock_queue,
        standard_matcher=mock_standard,
        triangle_matcher=mock_triangle,
        outbox=mock_outbox,
        session_factory=mock_session_factory,
        config=config,
    )


def _claimed_task() -> MatchingTask:
    return MatchingTask(
        intent_id=uuid.uuid4(),
        status=TaskStatus.RUNNING,
        run_id=str(uuid.uuid4()),
        locked_by="test-host-1-worker-0",
    )


# ===========================================================================
# PROCESS TASK
# ===========================================================================


class TestProcessTask:

    @pytest.mark.asyncio
    async def test_runs_both_algorithms_then_marks_done(
        self, pool, mock_queue, mock_standard, mock_triangle, mock_db,
    ):
        task = _claimed_task()
        mock_standard.run_for_intent = AsyncMock(return_value=1)
        mock_triangle.run_for_intent = AsyncMock(return_value=2)
        mock_db.scalar = AsyncMock(return_value=2)  # credits left after standard

        report = await pool.process_task(task, "w0")

        mock_standard.run_for_intent.assert_awaited_once_with(task.intent_id, task.run_id)
        mock_triangle.run_for_intent.assert_awaited_once_with(
            task.intent_id, task.run_id, pool.config.max_triangles_per_seeker,
        )
        mock_queue.mark_done.assert_awaited_once_with(task)
        mock_queue.handle_failure.assert_not_awaited()
        assert report["status"] == "done"
        assert report["standard_matches"] == 1
        assert report["triangle_matches"] == 2

    @pytest.mark.asyncio
    async def test_triangle_skipped_without_credits(self, pool, mock_triangle, mock_db):
        mock_db.scalar = AsyncMock(return_value=0)

        await pool.process_task(_claimed_task(), "w0")

        mock_triangle.run_for_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_triangle_disabled(
        self, mock_queue, mock_standard, mock_triangle, mock_outbox,
        mock_session_factory, mock_db, make_config,
    ):
        pool = WorkerPool(
            task_queue=mock_queue,
            standard_matcher=mock_standard,
            triangle_matcher=mock_triangle,
            outbox=mock_outbox,
            session_factory=mock_session_factory,
            config=make_config(triangle_enabled=False),
        )
        mock_db.scalar = AsyncMock(return_value=5)

        await pool.process_task(_claimed_task(), "w0")

        mock_triangle.run_for_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_intent_locked_before_matching(self, pool, mock_db, mock_standard):
        calls = []
        mock_db.execute = AsyncMock(side_effect=lambda stmt: calls.append(str(stmt)) or MagicMock())
        mock_standard.run_for_intent = AsyncMock(side_effect=lambda *a: calls.append("standard") or 0)

        await pool.process_task(_claimed_task(), "w0")

        assert calls[0].startswith("UPDATE intents SET matching_processing_until")
        assert calls[1] == "standard"

    @pytest.mark.asyncio
    async def test_failure_unlocks_intent_then_records_failure(
        self, pool, mock_queue, mock_standard, mock_db,
    ):
        task = _claimed_task()
        error = RuntimeError("db timeout")
        mock_standard.run_for_intent = AsyncMock(side_effect=error)

        report = await pool.process_task(task, "w0")

        mock_queue.mark_done.assert_not_awaited()
        mock_queue.handle_failure.assert_awaited_once_with(task, error)
        # lock + unlock
        assert mock_db.execute.await_count == 2
        unlock = str(mock_db.execute.call_args_list[1].args[0])
        assert "matching_processing_by" in unlock
        assert report["status"] == "PENDING"
        assert report["error"] == "db timeout"

    @pytest.mark.asyncio
    async def test_unlock_failure_does_not_hide_task_failure(
        self, pool, mock_queue, mock_standard, mock_db,
    ):
        mock_standard.run_for_intent = AsyncMock(side_effect=RuntimeError("boom"))
        mock_db.execute = AsyncMock(side_effect=[MagicMock(), ConnectionError("gone")])

        await pool.process_task(_claimed_task(), "w0")

        mock_queue.handle_failure.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_task_reported(self, pool, mock_queue, mock_standard):
        mock_standard.run_for_intent = AsyncMock(side_effect=RuntimeError("boom"))
        mock_queue.handle_failure = AsyncMock(return_value=None)

        report = await pool.process_task(_claimed_task(), "w0")

        assert report["status"] == "lost"


# ===========================================================================
# OUTBOX FLUSH
# ===========================================================================


class TestOutboxFlush:

    @pytest.mark.asyncio
    async def test_flush_scheduled_when_matches_created(self, pool, mock_standard, mock_outbox, mock_db):
        task = _claimed_task()
        mock_standard.run_for_intent = AsyncMock(return_value=1)
        mock_db.scalar = AsyncMock(return_value=0)

        await pool.process_task(task, "w0")
        await asyncio.gather(*pool._background)

        mock_outbox.flush_for_run.assert_awaited_once_with(task.run_id)

    @pytest.mark.asyncio
    async def test_no_flush_without_matches(self, pool, mock_outbox, mock_db):
        mock_db.scalar = AsyncMock(return_value=0)

        await pool.process_task(_claimed_task(), "w0")

        assert not pool._background
        mock_outbox.flush_for_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flush_error_is_contained(self, pool, mock_outbox):
        mock_outbox.flush_for_run = AsyncMock(side_effect=RuntimeError("smtp down"))
        await pool._flush("run-1")


# ===========================================================================
# LIFECYCLE
# ===========================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_spawns_configured_workers(self, pool):
        with patch("app.matching_engine.worker_pool.EMPTY_QUEUE_SLEEP_SECONDS", 0):
            await pool.start()
            status = pool.get_status()
            await pool.shutdown()

        assert status["worker_count"] == 2
        assert status["instance_id"] == "test-host-1"
        assert pool.get_status()["is_shutting_down"] is True

    @pytest.mark.asyncio
    async def test_worker_processes_claimed_batch(self, pool, mock_queue):
        tasks = [_claimed_task(), _claimed_task()]
        processed = []

        async def claim(worker_id):
            pool._shutting_down = True
            return tasks

        async def process(task, worker_id):
            processed.append((task, worker_id))

        mock_queue.claim_batch = AsyncMock(side_effect=claim)
        with patch.object(pool, "process_task", side_effect=process):
            await pool._worker_loop("w0")

        # Claimed work is finished even when shutdown arrives mid-batch
        assert [t for t, _ in processed] == tasks

    @pytest.mark.asyncio
    async def test_loop_survives_claim_errors(self, pool, mock_queue):
        calls = 0

        async def claim(worker_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("db restarting")
            pool._shutting_down = True
            return []

        mock_queue.claim_batch = AsyncMock(side_effect=claim)
        with patch("app.matching_engine.worker_pool.LOOP_ERROR_SLEEP_SECONDS", 0), \
                patch("app.matching_engine.worker_pool.EMPTY_QUEUE_SLEEP_SECONDS", 0):
            await pool._worker_loop("w0")

        assert calls == 2
