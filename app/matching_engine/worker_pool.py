"""
Worker pool — N independent claim/process loops per process.

Each loop claims a batch from the task queue and processes its tasks
one after the other.  Processing a task:

1. lock the intent (``matching_processing_until``) so refunds wait
2. run the standard matcher
3. run the triangle matcher if enabled and the intent still has credit
4. mark the task DONE and clear the intent lock (one transaction)
5. if anything matched, flush the outbox for this run in the background

Any exception unlocks the intent first, then goes through the queue's
retry handler.  Shutdown is cooperative: loops stop claiming and the
pool waits for in-flight tasks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone

from sqlalchemy import select, update

from app.matching_engine.config import (
    EMPTY_QUEUE_SLEEP_SECONDS,
    LOOP_ERROR_SLEEP_SECONDS,
    MatchingConfig,
)
from app.models.intent import Intent
from app.models.matching_task import MatchingTask

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs the matching workers of one process."""

    def __init__(
        self,
        task_queue=None,
        standard_matcher=None,
        triangle_matcher=None,
        outbox=None,
        session_factory=None,
        config: MatchingConfig | None = None,
    ):
        self._task_queue = task_queue
        self._standard_matcher = standard_matcher
        self._triangle_matcher = triangle_matcher
        self._outbox = outbox
        self._session_factory = session_factory
        self._config = config

        self._shutting_down = False
        self._workers: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()

    # ── Collaborators (module singletons unless injected) ────────────────

    @property
    def task_queue(self):
        if self._task_queue is not None:
            return self._task_queue
        from app.matching_engine.task_queue import task_queue
        return task_queue

    @property
    def standard_matcher(self):
        if self._standard_matcher is not None:
            return self._standard_matcher
        from app.matching_engine.standard_matcher import standard_matcher
        return standard_matcher

    @property
    def triangle_matcher(self):
        if self._triangle_matcher is not None:
            return self._triangle_matcher
        from app.matching_engine.triangle_matcher import triangle_matcher
        return triangle_matcher

    @property
    def outbox(self):
        if self._outbox is not None:
            return self._outbox
        from app.matching_engine.outbox import outbox_sender
        return outbox_sender

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

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn ``worker_concurrency`` loops."""
        self._shutting_down = False
        instance_id = self.config.instance_id
        for i in range(self.config.worker_concurrency):
            worker_id = f"{instance_id}-worker-{i}"
            self._workers.append(
                asyncio.create_task(self._worker_loop(worker_id), name=worker_id)
            )
        logger.info(
            "Worker pool started: instance=%s workers=%d",
            instance_id, len(self._workers),
        )

    async def shutdown(self) -> None:
        """Stop claiming and wait for in-flight tasks and outbox flushes."""
        self._shutting_down = True
        logger.info("Worker pool shutting down, waiting for %d worker(s)", len(self._workers))
        await asyncio.gather(*self._workers, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool stopped")

    def get_status(self) -> dict:
        return {
            "instance_id": self.config.instance_id,
            "worker_count": len(self._workers),
            "is_shutting_down": self._shutting_down,
        }

    # ── Loop ─────────────────────────────────────────────────────────────

    async def _worker_loop(self, worker_id: str) -> None:
        logger.info("Worker %s started", worker_id)
        while not self._shutting_down:
            try:
                tasks = await self.task_queue.claim_batch(worker_id)
                if not tasks:
                    await asyncio.sleep(EMPTY_QUEUE_SLEEP_SECONDS)
                    continue
                # Claimed tasks are RUNNING, finish the batch even when shutting down
                for task in tasks:
                    await self.process_task(task, worker_id)
            except Exception:
                logger.exception("Worker %s loop error", worker_id)
                await asyncio.sleep(LOOP_ERROR_SLEEP_SECONDS)
        logger.info("Worker %s stopped", worker_id)

    # ── One task ─────────────────────────────────────────────────────────

    async def process_task(self, task: MatchingTask, worker_id: str) -> dict:
        """
        Run both algorithms for the task's intent.

        Returns a small report; failures are recorded on the task, not raised.
        """
        run_id = task.run_id
        intent_id = task.intent_id
        started = time.monotonic()
        standard = 0
        triangles = 0

        try:
            await self._lock_intent(intent_id, worker_id)

            standard = await self.standard_matcher.run_for_intent(intent_id, run_id)

            if self.config.triangle_enabled and await self._has_credits(intent_id):
                triangles = await self.triangle_matcher.run_for_intent(
                    intent_id, run_id, self.config.max_triangles_per_seeker,
                )

            await self.task_queue.mark_done(task)
        except Exception as exc:
            logger.warning("Task %s (intent %s) raised: %s", task.id, intent_id, exc)
            await self._unlock_intent_quietly(intent_id, worker_id)
            status = await self.task_queue.handle_failure(task, exc)
            return {
                "task_id": task.id,
                "run_id": run_id,
                "status": status.value if status else "lost",
                "error": str(exc),
            }

        if standard or triangles:
            self._schedule_flush(run_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Task %s done: intent=%s standard=%d triangle=%d (%dms, run=%s)",
            task.id, intent_id, standard, triangles, duration_ms, run_id,
        )
        return {
            "task_id": task.id,
            "run_id": run_id,
            "status": "done",
            "standard_matches": standard,
            "triangle_matches": triangles,
            "duration_ms": duration_ms,
        }

    # ── Intent lock ──────────────────────────────────────────────────────

    async def _lock_intent(self, intent_id, worker_id: str) -> None:
        until = datetime.now(timezone.utc) + self.config.lock_ttl
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Intent)
                    .where(Intent.id == intent_id)
                    .values(matching_processing_until=until, matching_processing_by=worker_id)
                )

    async def _unlock_intent(self, intent_id, worker_id: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Intent)
                    .where(
                        Intent.id == intent_id,
                        Intent.matching_processing_by == worker_id,
                    )
                    .values(matching_processing_until=None, matching_processing_by=None)
                )

    async def _unlock_intent_quietly(self, intent_id, worker_id: str) -> None:
        try:
            await self._unlock_intent(intent_id, worker_id)
        except Exception:
            # Lock expires on its own; maintenance clears it
            logger.warning("Could not unlock intent %s after failure", intent_id)

    async def _has_credits(self, intent_id) -> bool:
        async with self.session_factory() as session:
            remaining = await session.scalar(
                select(Intent.total_matches_remaining).where(
                    Intent.id == intent_id, Intent.is_in_flow.is_(True),
                )
            )
        return (remaining or 0) > 0

    # ── Outbox ───────────────────────────────────────────────────────────

    def _schedule_flush(self, run_id: str) -> None:
        task = asyncio.create_task(self._flush(run_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _flush(self, run_id: str) -> None:
        try:
            await self.outbox.flush_for_run(run_id)
        except Exception as exc:
            logger.warning("Outbox flush for run %s failed, sender loop will retry: %s", run_id, exc)
