"""
Payment model — a purchase of match credits.

Each successful payment grants ``matches_initial`` credits.  Credits are
drawn oldest-payment-first; a payment has capacity while
``matches_initial - matches_used - matches_refunded > 0``.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Enum as SAEnum,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


# Statuses whose credits can still be consumed by the matcher
DRAWABLE_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "matches_used + matches_refunded <= matches_initial",
            name="ck_payments_credit_capacity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True,
    )
    intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False, index=True,
    )

    pack_id: Mapped[str | None] = mapped_column(String(50))
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2), default=Decimal("0"),
    )
    currency: Mapped[str] = mapped_column(String(3), default="EUR")

    matches_initial: Mapped[int] = mapped_column(Integer, nullable=False)
    matches_used: Mapped[int] = mapped_column(Integer, default=0)
    matches_refunded: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, name="paymentstatus"),
        default=PaymentStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def remaining_credits(self) -> int:
        return self.matches_initial - (self.matches_used or 0) - (self.matches_refunded or 0)

    def __repr__(self) -> str:
        return (
            f"<Payment {self.id} {self.status.value if self.status else 'N/A'} "
            f"{self.matches_used}/{self.matches_initial} used>"
        )


@event.listens_for(Payment, "init")
def _set_payment_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "matches_used" not in kwargs:
        target.matches_used = 0
    if "matches_refunded" not in kwargs:
        target.matches_refunded = 0
    if "status" not in kwargs:
        target.status = PaymentStatus.PENDING
    if "currency" not in kwargs:
        target.currency = "EUR"
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
