"""
Enqueue service — puts intents on the matching queue.

``enqueue`` is idempotent per intent: it inserts a PENDING task, leaves
a PENDING / RUNNING one alone, and resets a DONE / FAILED one with a
fresh attempt budget.  Event-driven callers (credit purchase, profile
update) use it directly; the periodic ``sweep`` is the safety net that
picks up eligible intents whose enqueue event was lost.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from app.matching_engine.config import MatchingConfig
from app.models.intent import Intent
from app.models.matching_task import MatchingTask, TaskStatus, TaskType

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)


class EnqueueService:
    """Inserts and resets matching tasks."""

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

    # ── Single intent ────────────────────────────────────────────────────

    async def enqueue(self, intent_id) -> bool:
        """
        Queue *intent_id* for matching.

        Returns True when a task was inserted or reset, False when the
        intent is unknown, not eligible, or already queued.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    intent = await session.get(Intent, intent_id)
                    if intent is None:
                        logger.debug("Enqueue skipped: intent %s not found", intent_id)
                        return False
                    if not intent.is_eligible or intent.is_processing_locked(now):
                        logger.debug("Enqueue skipped: intent %s not eligible", intent_id)
                        return False

                    task = await session.scalar(
                        select(MatchingTask)
                        .where(
                            MatchingTask.intent_id == intent_id,
                            MatchingTask.type == TaskType.MATCHING,
                        )
                        .with_for_update()
                    )
                    if task is not None and task.status in _ACTIVE_STATUSES:
                        return False

                    if task is not None:
                        task.reset_for_requeue(now)
                        task.max_attempts = self.config.max_attempts
                        task.updated_at = now
                    else:
                        session.add(MatchingTask(
                            intent_id=intent_id,
                            type=TaskType.MATCHING,
                            status=TaskStatus.PENDING,
                            max_attempts=self.config.max_attempts,
                            available_at=now,
                        ))

                    intent.last_matching_enqueued_at = now
                    await session.flush()
        except IntegrityError:
            # Another process inserted the task between our read and insert
            logger.debug("Enqueue race for intent %s, task already exists", intent_id)
            return False

        logger.debug("Enqueued intent %s", intent_id)
        return True

    async def enqueue_many(self, intent_ids) -> dict:
        """Enqueue each id; returns ``{"enqueued", "skipped", "errors"}`` counts."""
        stats = {"enqueued": 0, "skipped": 0, "errors": 0}
        for intent_id in intent_ids:
            try:
                if await self.enqueue(intent_id):
                    stats["enqueued"] += 1
                else:
                    stats["skipped"] += 1
            except Exception as exc:
                logger.warning("Enqueue failed for intent %s: %s", intent_id, exc)
                stats["errors"] += 1
        return stats

    # ── Sweep ────────────────────────────────────────────────────────────

    async def sweep(self) -> dict:
        """
        Enqueue eligible intents not enqueued within the cooldown interval.

        Least recently processed first, up to the sweep limit.
        """
        now = datetime.now(timezone.utc)
        cutoff = now - self.config.enqueue_interval

        async with self.session_factory() as session:
            result = await session.execute(
                select(Intent.id)
                .where(
                    Intent.is_in_flow.is_(True),
                    Intent.total_matches_remaining > 0,
                    or_(
                        Intent.matching_processing_until.is_(None),
                        Intent.matching_processing_until <= now,
                    ),
                    or_(
                        Intent.last_matching_enqueued_at.is_(None),
                        Intent.last_matching_enqueued_at < cutoff,
                    ),
                )
                .order_by(Intent.last_matching_processed_at.asc().nulls_first())
                .limit(self.config.sweep_limit)
            )
            intent_ids = list(result.scalars().all())

        stats = await self.enqueue_many(intent_ids)
        if intent_ids:
            logger.info(
                "Sweep selected %d intent(s): %d enqueued, %d skipped, %d errors",
                len(intent_ids), stats["enqueued"], stats["skipped"], stats["errors"],
            )
        return {"selected": len(intent_ids), **stats}

    # ── Intent locks ─────────────────────────────────────────────────────

    async def release_stale_intent_locks(self) -> int:
        """Clear intent processing locks whose expiry has passed."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Intent)
                    .where(
                        Intent.matching_processing_until.is_not(None),
                        Intent.matching_processing_until < now,
                    )
                    .values(matching_processing_until=None, matching_processing_by=None)
                )
        released = result.rowcount or 0
        if released:
            logger.info("Released %d expired intent processing lock(s)", released)
        return released


enqueue_service = EnqueueService()
