"""Tests for FIFO credit consumption and the refund / purchase guards."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.matching_engine.credit_ledger import (
    assert_purchase_allowed,
    assert_refund_allowed,
    consume_payment_credit,
    decrement_intent_credits,
    start_refund_cooldown,
)
from app.matching_engine.exceptions import (
    InsufficientCreditsError,
    InsufficientPaymentCreditsError,
    MatchingInProgressError,
    RefundCooldownActiveError,
)
from app.models import Payment, PaymentStatus


def _payment(initial, used=0, refunded=0, **overrides) -> Payment:
    defaults = {
        "user_id": uuid.uuid4(),
        "intent_id": uuid.uuid4(),
        "matches_initial": initial,
        "matches_used": used,
        "matches_refunded": refunded,
        "status": PaymentStatus.SUCCEEDED,
    }
    defaults.update(overrides)
    return Payment(**defaults)


# ===========================================================================
# PAYMENT CREDITS (FIFO)
# ===========================================================================


class TestConsumePaymentCredit:

    @pytest.mark.asyncio
    async def test_draws_from_oldest_payment_with_capacity(self, mock_db, make_result):
        exhausted = _payment(3, used=2, refunded=1)
        oldest_open = _payment(5, used=1)
        newer = _payment(5)
        mock_db.execute = AsyncMock(return_value=make_result(scalars=[exhausted, oldest_open, newer]))

        payment = await consume_payment_credit(mock_db, uuid.uuid4(), uuid.uuid4())

        assert payment is oldest_open
        assert oldest_open.matches_used == 2
        assert newer.matches_used == 0
        assert exhausted.matches_used == 2
        mock_db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_capacity_raises(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalars=[_payment(1, used=1)]))
        user_id, intent_id = uuid.uuid4(), uuid.uuid4()

        with pytest.raises(InsufficientPaymentCreditsError) as exc_info:
            await consume_payment_credit(mock_db, user_id, intent_id)

        assert exc_info.value.user_id == user_id
        assert exc_info.value.intent_id == intent_id

    @pytest.mark.asyncio
    async def test_no_payment_raises(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalars=[]))
        with pytest.raises(InsufficientPaymentCreditsError):
            await consume_payment_credit(mock_db, uuid.uuid4(), uuid.uuid4())

    @pytest.mark.asyncio
    async def test_query_locks_rows_in_creation_order(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalars=[_payment(1)]))

        await consume_payment_credit(mock_db, uuid.uuid4(), uuid.uuid4())

        stmt = mock_db.execute.call_args.args[0]
        sql = str(stmt)
        assert "FOR UPDATE" in sql
        assert "ORDER BY payments.created_at ASC" in sql


class TestRemainingCredits:

    def test_remaining_credits(self):
        assert _payment(5, used=2, refunded=1).remaining_credits == 2


# ===========================================================================
# INTENT COUNTERS
# ===========================================================================


class TestDecrementIntentCredits:

    @pytest.mark.asyncio
    async def test_returns_remaining_balance(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalar=2))
        assert await decrement_intent_credits(mock_db, uuid.uuid4()) == 2

    @pytest.mark.asyncio
    async def test_last_credit_returns_zero(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalar=0))
        assert await decrement_intent_credits(mock_db, uuid.uuid4()) == 0

    @pytest.mark.asyncio
    async def test_no_credit_raises(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalar=None))
        with pytest.raises(InsufficientCreditsError):
            await decrement_intent_credits(mock_db, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_update_is_guarded(self, mock_db, make_result):
        mock_db.execute = AsyncMock(return_value=make_result(scalar=1))

        await decrement_intent_credits(mock_db, uuid.uuid4())

        sql = str(mock_db.execute.call_args.args[0])
        assert "intents.total_matches_remaining >" in sql
        assert "RETURNING" in sql


# ===========================================================================
# GUARDS
# ===========================================================================


class TestRefundGuard:

    def test_refund_blocked_while_processing(self, make_intent, now):
        intent = make_intent(matching_processing_until=now + timedelta(minutes=5))
        with pytest.raises(MatchingInProgressError) as exc_info:
            assert_refund_allowed(intent, now)
        assert exc_info.value.code == "MATCHING_IN_PROGRESS"
        assert exc_info.value.until == intent.matching_processing_until

    def test_refund_allowed_when_lock_expired(self, make_intent, now):
        intent = make_intent(matching_processing_until=now - timedelta(seconds=1))
        assert_refund_allowed(intent, now)

    def test_refund_allowed_without_lock(self, make_intent, now):
        assert_refund_allowed(make_intent(), now)


class TestPurchaseGuard:

    def test_purchase_blocked_during_cooldown(self, make_intent, now):
        intent = make_intent()
        start_refund_cooldown(intent, cooldown_days=14, now=now)

        assert intent.last_refund_at == now
        assert intent.refund_cooldown_until == now + timedelta(days=14)
        with pytest.raises(RefundCooldownActiveError) as exc_info:
            assert_purchase_allowed(intent, now + timedelta(days=13))
        assert exc_info.value.code == "REFUND_COOLDOWN_ACTIVE"

    def test_cooldown_defaults_to_configured_days(self, make_intent, make_config, now):
        intent = make_intent()
        with patch("app.matching_engine.config.matching_config", make_config(refund_cooldown_days=3)):
            start_refund_cooldown(intent, now=now)

        assert intent.refund_cooldown_until == now + timedelta(days=3)

    def test_purchase_allowed_after_cooldown(self, make_intent):
        past = datetime(2026, 1, 1, tzinfo=timezone.utc)
        intent = make_intent(refund_cooldown_until=past)
        assert_purchase_allowed(intent, past + timedelta(seconds=1))
