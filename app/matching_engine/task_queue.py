"""
Task queue store — the ``matching_tasks`` table and its claim protocol.

Claiming is one transaction: ``SELECT ... FOR UPDATE SKIP LOCKED`` on the
oldest due PENDING rows, then flipping them to RUNNING with the worker
id, a fresh run id and a lock timestamp.  Concurrent claimants in any
process on any machine therefore always receive disjoint rows.

Completion writes (done / failure) are fenced on ``(id, run_id,
RUNNING)``: if maintenance released a task and another worker
re-claimed it, the original worker's late write is a no-op.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, update

from app.matching_engine.config import MAX_ERROR_LENGTH, MatchingConfig
from app.models.intent import Intent
from app.models.matching_task import MatchingTask, TaskStatus

logger = logging.getLogger(__name__)

STALE_RELEASE_MESSAGE = "Released by maintenance cron: lock TTL exceeded"


def truncate_error(error) -> str:
    text = str(error) or error.__class__.__name__
    return text[:MAX_ERROR_LENGTH]


class TaskQueue:
    """Claim, complete and fail matching tasks."""

    def __init__(self, session_factory=None, config: MatchingConfig | None = None):
        self._session_factory = session_factory
        self._config = config

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from app.database import async_session
        return async_session

    @property
    def config(self) -> MatchingConfig:
        if self._config is not None:
            return self._config
        from app.matching_engine.config import matching_config
        return matching_config

    # ── Claim ────────────────────────────────────────────────────────────

    async def claim_batch(self, worker_id: str, batch_size: int | None = None) -> list[MatchingTask]:
        """
        Claim up to *batch_size* due PENDING tasks for *worker_id*.

        An empty list means the queue has nothing due.
        """
        limit = batch_size or self.config.claim_batch_size
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(MatchingTask)
                    .where(
                        MatchingTask.status == TaskStatus.PENDING,
                        MatchingTask.available_at <= now,
                    )
                    .order_by(MatchingTask.created_at.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                tasks = list(result.scalars().all())

                for task in tasks:
                    task.transition_to(TaskStatus.RUNNING)
                    task.locked_at = now
                    task.locked_by = worker_id
                    task.run_id = str(uuid.uuid4())
                    task.updated_at = now

        if tasks:
            logger.debug("Worker %s claimed %d task(s)", worker_id, len(tasks))
        return tasks

    # ── Completion ───────────────────────────────────────────────────────

    async def mark_done(self, task: MatchingTask) -> bool:
        """
        Mark *task* DONE and release its intent's processing lock.

        Both writes share one transaction.  Returns False when the task
        is no longer owned by this run.
        """
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MatchingTask)
                    .where(
                        MatchingTask.id == task.id,
                        MatchingTask.run_id == task.run_id,
                        MatchingTask.status == TaskStatus.RUNNING,
                    )
                    .values(
                        status=TaskStatus.DONE,
                        locked_at=None,
                        locked_by=None,
                        last_error=None,
                        updated_at=now,
                    )
                )
                await session.execute(
                    update(Intent)
                    .where(Intent.id == task.intent_id)
                    .values(
                        matching_processing_until=None,
                        matching_processing_by=None,
                        last_matching_processed_at=now,
                    )
                )

        if not result.rowcount:
            logger.warning(
                "Task %s was no longer owned by run %s when marking done",
                task.id, task.run_id,
            )
            return False
        return True

    async def handle_failure(self, task: MatchingTask, error) -> TaskStatus | None:
        """
        Record a failed attempt; retry with backoff or give up.

        Returns the resulting status (PENDING or FAILED), or None when
        the task is no longer owned by this run.
        """
        now = datetime.now(timezone.utc)
        attempts = (task.attempts or 0) + 1
        message = truncate_error(error)

        if attempts >= task.max_attempts:
            new_status = TaskStatus.FAILED
            available_at = now
        else:
            new_status = TaskStatus.PENDING
            available_at = now + self.config.retry_delay(attempts)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MatchingTask)
                    .where(
                        MatchingTask.id == task.id,
                        MatchingTask.run_id == task.run_id,
                        MatchingTask.status == TaskStatus.RUNNING,
                    )
                    .values(
                        status=new_status,
                        attempts=attempts,
                        last_error=message,
                        available_at=available_at,
                        locked_at=None,
                        locked_by=None,
                        updated_at=now,
                    )
                )

        if not result.rowcount:
            logger.warning(
                "Task %s was no longer owned by run %s when recording failure",
                task.id, task.run_id,
            )
            return None

        if new_status == TaskStatus.FAILED:
            logger.error(
                "Task %s for intent %s FAILED after %d attempts: %s",
                task.id, task.intent_id, attempts, message,
            )
        else:
            logger.warning(
                "Task %s for intent %s failed (attempt %d/%d), retry at %s: %s",
                task.id, task.intent_id, attempts, task.max_attempts,
                available_at.isoformat(), message,
            )
        return new_status

    # ── Maintenance ──────────────────────────────────────────────────────

    async def release_stale_tasks(self, lock_ttl: timedelta | None = None) -> int:
        """
        Return RUNNING tasks whose lock exceeded the TTL to PENDING.

        The worker died or lost its connection, so this is not counted
        as an attempt.
        """
        ttl = lock_ttl or self.config.lock_ttl
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MatchingTask)
                    .where(
                        MatchingTask.status == TaskStatus.RUNNING,
                        MatchingTask.locked_at < now - ttl,
                    )
                    .values(
                        status=TaskStatus.PENDING,
                        locked_at=None,
                        locked_by=None,
                        available_at=now,
                        last_error=STALE_RELEASE_MESSAGE,
                        updated_at=now,
                    )
                )
        released = result.rowcount or 0
        if released:
            logger.warning("Released %d stale RUNNING task(s)", released)
        return released

    async def delete_finished_tasks(self, retention: timedelta | None = None) -> int:
        """Delete DONE / FAILED tasks last updated before the retention window."""
        window = retention or timedelta(hours=self.config.task_retention_hours)
        cutoff = datetime.now(timezone.utc) - window
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(MatchingTask).where(
                        MatchingTask.status.in_([TaskStatus.DONE, TaskStatus.FAILED]),
                        MatchingTask.updated_at < cutoff,
                    )
                )
        return result.rowcount or 0

    # ── Stats ────────────────────────────────────────────────────────────

    async def get_queue_stats(self, session=None) -> dict:
        """Counts per status plus the average wait of due PENDING tasks."""
        if session is None:
            async with self.session_factory() as own_session:
                return await self._collect_stats(own_session)
        return await self._collect_stats(session)

    @staticmethod
    async def _collect_stats(session) -> dict:
        counts_result = await session.execute(
            select(MatchingTask.status, func.count(MatchingTask.id))
            .group_by(MatchingTask.status)
        )
        counts = {status: count for status, count in counts_result.all()}

        now = datetime.now(timezone.utc)
        avg_wait = await session.scalar(
            select(func.avg(func.extract("epoch", now - MatchingTask.available_at)))
            .where(
                MatchingTask.status == TaskStatus.PENDING,
                MatchingTask.available_at <= now,
            )
        )
        return {
            "pending": counts.get(TaskStatus.PENDING, 0),
            "running": counts.get(TaskStatus.RUNNING, 0),
            "done": counts.get(TaskStatus.DONE, 0),
            "failed": counts.get(TaskStatus.FAILED, 0),
            "avg_wait_ms": int(float(avg_wait) * 1000) if avg_wait is not None else 0,
        }


task_queue = TaskQueue()
