"""
Maintenance scheduler — keeps the matching queue healthy.

One run executes independent steps, each under a hard timeout so a hung
query cannot wedge maintenance:

1. release RUNNING tasks whose lock exceeded the TTL (attempts unchanged)
2. release expired intent processing locks
3. sweep eligible intents onto the queue
4. delete DONE / FAILED tasks past the retention window
5. repair intents with a missing home / search link
6. purge compatibility edges touching ineligible intents
7. purge processed outbox rows past their retention window

A failed or timed-out step is logged and the next one still runs.

Reentrancy inside a process is guarded by ``SchedulerState``; across
processes and machines a non-blocking redis lock makes sure only one
instance runs at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from app.matching_engine.config import MAINTENANCE_LOCK_KEY, MatchingConfig
from app.matching_engine.exceptions import MaintenanceAlreadyRunningError
from app.matching_engine.reporter import build_maintenance_report, summarize_steps

logger = logging.getLogger(__name__)

# Extra seconds the cross-instance lock outlives the worst-case run
LOCK_MARGIN_SECONDS = 30


@dataclass
class SchedulerState:
    """In-process view of the scheduler, readable by tests and the API."""

    is_running: bool = False
    current_run_id: str | None = None
    last_run_id: str | None = None
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_report: dict | None = None
    runs_completed: int = 0
    runs_skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "current_run_id": self.current_run_id,
            "last_run_id": self.last_run_id,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_status": (self.last_report or {}).get("status"),
            "runs_completed": self.runs_completed,
            "runs_skipped": self.runs_skipped,
        }


def make_run_id(prefix: str = "maint") -> str:
    """``{prefix}-{epoch_ms}-{8 hex}``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class MaintenanceScheduler:
    """Runs the periodic queue maintenance."""

    def __init__(
        self,
        task_queue=None,
        enqueue_service=None,
        standard_matcher=None,
        triangle_matcher=None,
        outbox=None,
        redis_client=None,
        config: MatchingConfig | None = None,
    ):
        self._task_queue = task_queue
        self._enqueue_service = enqueue_service
        self._standard_matcher = standard_matcher
        self._triangle_matcher = triangle_matcher
        self._outbox = outbox
        self._redis = redis_client
        self._config = config
        self.state = SchedulerState()

    # ── Collaborators (module singletons unless injected) ────────────────

    @property
    def task_queue(self):
        if self._task_queue is not None:
            return self._task_queue
        from app.matching_engine.task_queue import task_queue
        return task_queue

    @property
    def enqueue_service(self):
        if self._enqueue_service is not None:
            return self._enqueue_service
        from app.matching_engine.enqueue import enqueue_service
        return enqueue_service

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
    def redis(self):
        if self._redis is not None:
            return self._redis
        from app.redis_client import redis
        return redis

    @property
    def config(self) -> MatchingConfig:
        if self._config is not None:
            return self._config
        from app.matching_engine.config import matching_config
        return matching_config

    def _steps(self) -> list[tuple[str, object]]:
        return [
            ("release_stale_tasks", self.task_queue.release_stale_tasks),
            ("release_stale_intent_locks", self.enqueue_service.release_stale_intent_locks),
            ("sweep", self.enqueue_service.sweep),
            ("delete_finished_tasks", self.task_queue.delete_finished_tasks),
            ("repair_intent_links", self.standard_matcher.repair_missing_intent_links),
            ("cleanup_stale_edges", self.triangle_matcher.cleanup_stale_edges),
            ("cleanup_outbox", self.outbox.cleanup_processed),
        ]

    # ── Public entry points ──────────────────────────────────────────────

    async def run_maintenance(self, trigger: str = "cron") -> dict | None:
        """
        Run every maintenance step once.

        Returns the run report, ``{"skipped": True, ...}`` when another
        instance holds the lock, or None when a run is already in
        progress in this process.
        """
        if self.state.is_running:
            self.state.runs_skipped += 1
            logger.info(
                "Maintenance skipped, run %s still in progress", self.state.current_run_id,
            )
            return None

        run_id = make_run_id("manual" if trigger == "manual" else "maint")
        started_at = datetime.now(timezone.utc)
        self.state.is_running = True
        self.state.current_run_id = run_id
        self.state.last_started_at = started_at

        try:
            lock = await self._acquire_lock()
            if lock is False:
                self.state.runs_skipped += 1
                logger.info("Maintenance %s skipped, another instance holds the lock", run_id)
                return {"run_id": run_id, "trigger": trigger, "skipped": True}

            try:
                steps = {}
                for name, step in self._steps():
                    steps[name] = await self._run_step(run_id, name, step)
            finally:
                if lock is not None:
                    await self._release_lock(lock)

            report = build_maintenance_report(
                run_id=run_id,
                trigger=trigger,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                steps=steps,
            )
            self.state.last_report = report
            self.state.last_run_id = run_id
            self.state.runs_completed += 1
            log = logger.info if report["status"] == "ok" else logger.warning
            log(
                "Maintenance %s finished in %dms: %s",
                run_id, report["duration_ms"], summarize_steps(report),
            )
            return report
        finally:
            self.state.is_running = False
            self.state.current_run_id = None
            self.state.last_finished_at = datetime.now(timezone.utc)

    async def trigger_manual_maintenance(self) -> dict | None:
        """
        Run maintenance now, for operational diagnosis.

        Raises:
            MaintenanceAlreadyRunningError: a run is already in progress.
        """
        if self.state.is_running:
            raise MaintenanceAlreadyRunningError(self.state.current_run_id)
        return await self.run_maintenance(trigger="manual")

    # ── Steps ────────────────────────────────────────────────────────────

    async def _run_step(self, run_id: str, name: str, step) -> dict:
        timeout = self.config.step_timeout_seconds
        started = time.monotonic()
        logger.info("maintenance step_start run_id=%s step=%s", run_id, name)

        try:
            result = await asyncio.wait_for(step(), timeout=timeout)
        except asyncio.TimeoutError:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                "maintenance step_timeout run_id=%s step=%s timeout=%.1fs",
                run_id, name, timeout,
            )
            return {"status": "timeout", "duration_ms": duration_ms}
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.exception(
                "maintenance step_error run_id=%s step=%s duration_ms=%d",
                run_id, name, duration_ms,
            )
            return {"status": "error", "error": str(exc), "duration_ms": duration_ms}

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "maintenance step_end run_id=%s step=%s duration_ms=%d result=%s",
            run_id, name, duration_ms, result,
        )
        return {"status": "ok", "result": result, "duration_ms": duration_ms}

    # ── Cross-instance lock ──────────────────────────────────────────────

    async def _acquire_lock(self):
        """
        Take the redis maintenance lock without blocking.

        Returns the lock, False if another instance holds it, or None when
        redis is unreachable (the run then proceeds unguarded; every step
        is idempotent).
        """
        timeout = len(self._steps()) * self.config.step_timeout_seconds + LOCK_MARGIN_SECONDS
        try:
            lock = self.redis.lock(MAINTENANCE_LOCK_KEY, timeout=timeout, blocking=False)
            acquired = await lock.acquire()
        except Exception as exc:
            logger.warning("Maintenance lock unavailable, running unguarded: %s", exc)
            return None
        return lock if acquired else False

    async def _release_lock(self, lock) -> None:
        try:
            await lock.release()
        except Exception:
            # Lock may have already expired
            logger.warning("Maintenance lock release failed (may have auto-expired)")


maintenance_scheduler = MaintenanceScheduler()
