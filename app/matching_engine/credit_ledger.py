"""
Credit ledger — FIFO consumption of match credits.

Every match debits exactly one credit per participant, in two places:
the oldest payment with remaining capacity (``matches_used += 1``) and
the intent's counters.  Both writes run inside the caller's match
transaction; any failure raises and rolls the whole match back.

Also holds the guards that keep refunds and purchases from racing the
matching engine.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from app.matching_engine.exceptions import (
    InsufficientCreditsError,
    InsufficientPaymentCreditsError,
    MatchingInProgressError,
    RefundCooldownActiveError,
)
from app.models.intent import Intent
from app.models.payment import DRAWABLE_STATUSES, Payment

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ── Consumption ────────────────────────────────────────────────────────────

async def consume_payment_credit(session: "AsyncSession", user_id, intent_id) -> Payment:
    """
    Draw one credit from the oldest payment with remaining capacity.

    Payments are read in ``created_at`` order under a row lock so two
    concurrent matches for the same user cannot draw the same slot.

    Raises:
        InsufficientPaymentCreditsError: no drawable payment has capacity.
    """
    result = await session.execute(
        select(Payment)
        .where(
            Payment.user_id == user_id,
            Payment.intent_id == intent_id,
            Payment.status.in_(DRAWABLE_STATUSES),
        )
        .order_by(Payment.created_at.asc())
        .with_for_update()
    )
    payments = result.scalars().all()

    for payment in payments:
        if payment.remaining_credits > 0:
            payment.matches_used = (payment.matches_used or 0) + 1
            await session.flush()
            logger.debug(
                "Consumed credit from payment %s (user=%s, %d/%d used)",
                payment.id, user_id, payment.matches_used, payment.matches_initial,
            )
            return payment

    raise InsufficientPaymentCreditsError(user_id, intent_id)


async def decrement_intent_credits(session: "AsyncSession", intent_id) -> int:
    """
    Debit one credit from the intent's counters.

    Leaves the flow when the balance reaches zero.  The guarded UPDATE
    refuses to go below zero.

    Returns the remaining balance.

    Raises:
        InsufficientCreditsError: the intent had no credit left.
    """
    result = await session.execute(
        update(Intent)
        .where(Intent.id == intent_id, Intent.total_matches_remaining > 0)
        .values(
            total_matches_remaining=Intent.total_matches_remaining - 1,
            total_matches_used=Intent.total_matches_used + 1,
            is_in_flow=(Intent.total_matches_remaining - 1) > 0,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(Intent.total_matches_remaining)
        .execution_options(synchronize_session=False)
    )
    remaining = result.scalar_one_or_none()
    if remaining is None:
        raise InsufficientCreditsError(f"Intent {intent_id} has no remaining credits")
    if remaining == 0:
        logger.info("Intent %s used its last credit and left the flow", intent_id)
    return remaining


# ── Refund / purchase guards ───────────────────────────────────────────────

def assert_refund_allowed(intent: Intent, now: datetime | None = None) -> None:
    """Refuse a refund while a worker holds the intent's processing lock."""
    now = now or datetime.now(timezone.utc)
    if intent.is_processing_locked(now):
        raise MatchingInProgressError(
            "Matching is in progress for this intent, retry in a few minutes",
            until=intent.matching_processing_until,
        )


def assert_purchase_allowed(intent: Intent, now: datetime | None = None) -> None:
    """Refuse a credit purchase during the post-refund cooldown."""
    now = now or datetime.now(timezone.utc)
    until = intent.refund_cooldown_until
    if until is not None and until > now:
        raise RefundCooldownActiveError(
            f"Purchases are blocked until {until.isoformat()} after a refund",
            until=until,
        )


def start_refund_cooldown(
    intent: Intent,
    cooldown_days: int | None = None,
    now: datetime | None = None,
) -> None:
    """
    Record a refund on the intent and open the repurchase cooldown.

    *cooldown_days* defaults to the configured ``refund_cooldown_days``.
    """
    if cooldown_days is None:
        from app.matching_engine.config import matching_config
        cooldown_days = matching_config.refund_cooldown_days
    now = now or datetime.now(timezone.utc)
    intent.last_refund_at = now
    intent.refund_cooldown_until = now + timedelta(days=cooldown_days)
