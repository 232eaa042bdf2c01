"""
Notification outbox — writer and sender.

Writer: ``write_outbox_entry`` runs inside a match transaction and
upserts one row per (run, user, intent), incrementing the match count
and appending the match uid.  If the match rolls back, so does the row.

Sender: ``OutboxSender`` claims due rows with ``FOR UPDATE SKIP LOCKED``
and leases them by pushing ``available_at`` forward in the same
transaction, so the email is sent with no database lock held.  Claimed
rows are grouped per user into one "new matches" email and marked
processed only once the send succeeded.  Failures back off; rows that
exhaust their attempts are parked far in the future, never deleted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from app.matching_engine.config import (
    MAX_ERROR_LENGTH,
    OUTBOX_LEASE_SECONDS,
    OUTBOX_PARK_DAYS,
    MatchingConfig,
)
from app.models.intent import Intent
from app.models.notification_outbox import MatchNotificationOutbox
from app.models.user import User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ── Writer ─────────────────────────────────────────────────────────────────

async def write_outbox_entry(
    session: "AsyncSession",
    *,
    run_id: str,
    user_id,
    intent_id,
    match_type: str,
    match_uid: str,
    max_attempts: int = 5,
) -> None:
    """Stage one match for notification; must run in the match transaction."""
    table = MatchNotificationOutbox.__table__
    stmt = pg_insert(table).values(
        run_id=run_id,
        user_id=user_id,
        intent_id=intent_id,
        match_count_delta=1,
        match_type=match_type,
        match_uids=[match_uid],
        attempts=0,
        max_attempts=max_attempts,
        available_at=datetime.now(timezone.utc),
        created_at=datetime.now(timezone.utc),
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_outbox_run_user_intent",
        set_={
            "match_count_delta": table.c.match_count_delta + stmt.excluded.match_count_delta,
            "match_uids": func.array_cat(table.c.match_uids, stmt.excluded.match_uids),
        },
    )
    await session.execute(stmt)


# ── Sender ─────────────────────────────────────────────────────────────────

class OutboxSender:
    """Claims, aggregates and sends match notifications."""

    def __init__(self, session_factory=None, notifier=None, config: MatchingConfig | None = None):
        self._session_factory = session_factory
        self._notifier = notifier
        self._config = config
        self._stop_event = asyncio.Event()

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from app.database import async_session
        return async_session

    @property
    def notifier(self):
        if self._notifier is not None:
            return self._notifier
        from app.services.notification_service import notification_service
        return notification_service

    @property
    def config(self) -> MatchingConfig:
        if self._config is not None:
            return self._config
        from app.matching_engine.config import matching_config
        return matching_config

    # ── Claim ────────────────────────────────────────────────────────────

    async def _claim(self, run_id: str | None = None) -> list[MatchNotificationOutbox]:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                query = (
                    select(MatchNotificationOutbox)
                    .where(
                        MatchNotificationOutbox.processed_at.is_(None),
                        MatchNotificationOutbox.available_at <= now,
                    )
                    .order_by(MatchNotificationOutbox.created_at.asc())
                    .limit(self.config.outbox_batch_size)
                    .with_for_update(skip_locked=True)
                )
                if run_id is not None:
                    query = query.where(MatchNotificationOutbox.run_id == run_id)

                result = await session.execute(query)
                rows = list(result.scalars().all())

                lease_until = now + timedelta(seconds=OUTBOX_LEASE_SECONDS)
                for row in rows:
                    row.available_at = lease_until
        return rows

    # ── Batch processing ─────────────────────────────────────────────────

    async def process_batch(self, run_id: str | None = None) -> dict:
        """
        Claim one batch of due rows and send one email per user.

        Returns ``{"claimed", "sent", "failed", "skipped"}`` counts
        (sent / failed / skipped count users, claimed counts rows).
        """
        rows = await self._claim(run_id)
        stats = {"claimed": len(rows), "sent": 0, "failed": 0, "skipped": 0}
        if not rows:
            return stats

        by_user: dict = defaultdict(list)
        for row in rows:
            by_user[row.user_id].append(row)

        recipients = await self._load_recipients(list(by_user.keys()))

        for user_id, user_rows in by_user.items():
            recipient = recipients.get(user_id)
            if recipient is None or not recipient["email"]:
                logger.warning(
                    "Outbox: user %s has no email, marking %d row(s) processed",
                    user_id, len(user_rows),
                )
                await self._mark_processed(user_rows)
                stats["skipped"] += 1
                continue

            total = sum(r.match_count_delta for r in user_rows)
            try:
                await self.notifier.send_matches_found(
                    recipient["email"],
                    recipient["name"],
                    total,
                    recipient["remaining_credits"],
                )
            except Exception as exc:
                logger.warning("Outbox: send to user %s failed: %s", user_id, exc)
                await self._mark_failed(user_rows, exc)
                stats["failed"] += 1
                continue

            await self._mark_processed(user_rows)
            stats["sent"] += 1
            logger.info(
                "Outbox: notified user %s of %d new match(es) (%d row(s))",
                user_id, total, len(user_rows),
            )

        return stats

    async def flush_for_run(self, run_id: str) -> dict:
        """Send the notifications staged by one worker run right away."""
        return await self.process_batch(run_id=run_id)

    async def _load_recipients(self, user_ids: list) -> dict:
        async with self.session_factory() as session:
            users = await session.execute(
                select(User.id, User.email, User.first_name).where(User.id.in_(user_ids))
            )
            credits = await session.execute(
                select(Intent.user_id, func.coalesce(func.sum(Intent.total_matches_remaining), 0))
                .where(Intent.user_id.in_(user_ids), Intent.is_in_flow.is_(True))
                .group_by(Intent.user_id)
            )
            remaining = {uid: int(total) for uid, total in credits.all()}

        return {
            uid: {
                "email": email,
                "name": first_name or "",
                "remaining_credits": remaining.get(uid, 0),
            }
            for uid, email, first_name in users.all()
        }

    async def _mark_processed(self, rows: list[MatchNotificationOutbox]) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(MatchNotificationOutbox)
                    .where(MatchNotificationOutbox.id.in_([r.id for r in rows]))
                    .values(processed_at=now, last_error=None)
                )

    async def _mark_failed(self, rows: list[MatchNotificationOutbox], exc: Exception) -> None:
        now = datetime.now(timezone.utc)
        error = str(exc)[:MAX_ERROR_LENGTH]
        async with self.session_factory() as session:
            async with session.begin():
                for row in rows:
                    attempts = row.attempts + 1
                    if attempts >= row.max_attempts:
                        available_at = now + timedelta(days=OUTBOX_PARK_DAYS)
                        logger.error(
                            "Outbox row %s parked after %d attempts (run=%s user=%s): %s",
                            row.id, attempts, row.run_id, row.user_id, error,
                        )
                    else:
                        available_at = now + self.config.retry_delay(attempts)
                    await session.execute(
                        update(MatchNotificationOutbox)
                        .where(MatchNotificationOutbox.id == row.id)
                        .values(attempts=attempts, last_error=error, available_at=available_at)
                    )

    # ── Housekeeping ─────────────────────────────────────────────────────

    async def cleanup_processed(self, older_than_days: int | None = None) -> int:
        """Delete rows processed more than *older_than_days* ago."""
        days = older_than_days if older_than_days is not None else self.config.outbox_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(MatchNotificationOutbox).where(
                        MatchNotificationOutbox.processed_at.is_not(None),
                        MatchNotificationOutbox.processed_at < cutoff,
                    )
                )
        return result.rowcount or 0

    # ── Loop ─────────────────────────────────────────────────────────────

    async def run_forever(self) -> None:
        """Send continuously until ``stop()`` is called."""
        interval = self.config.outbox_interval_seconds
        logger.info("Outbox sender started (interval=%ss)", interval)
        while not self._stop_event.is_set():
            try:
                stats = await self.process_batch()
            except Exception:
                logger.exception("Outbox sender iteration failed")
                stats = {"claimed": 0}

            # A full batch means more rows are probably due
            if stats["claimed"] >= self.config.outbox_batch_size:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox sender stopped")

    def stop(self) -> None:
        self._stop_event.set()


outbox_sender = OutboxSender()
