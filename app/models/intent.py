"""
Intent model — a user's active matching context.

Links the offered home, the search criteria and the credit balance.
Invariant: ``total_matches_remaining >= 0`` and ``is_in_flow`` is False
as soon as the balance reaches zero.  Intents are never hard-deleted.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Intent(Base):
    __tablename__ = "intents"
    __table_args__ = (
        CheckConstraint(
            "total_matches_remaining >= 0", name="ck_intents_remaining_non_negative",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False,
    )
    home_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("homes.id"),
    )
    search_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("searches.id"),
    )

    # Flow flags
    is_in_flow: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    is_actively_searching: Mapped[bool] = mapped_column(Boolean, default=True)

    # Credits
    total_matches_purchased: Mapped[int] = mapped_column(Integer, default=0)
    total_matches_used: Mapped[int] = mapped_column(Integer, default=0)
    total_matches_remaining: Mapped[int] = mapped_column(Integer, default=0)

    # Soft processing lock (blocks refunds while a worker runs the algorithms)
    matching_processing_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
    )
    matching_processing_by: Mapped[str | None] = mapped_column(String(255))

    last_matching_enqueued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
    )
    last_matching_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
    )

    # Refund → repurchase cooldown
    refund_cooldown_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
    )
    last_refund_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    user = relationship("User")
    home = relationship("Home")
    search = relationship("Search")

    # ------------------------------------------------------------------
    # Eligibility helpers
    # ------------------------------------------------------------------

    @property
    def has_credits(self) -> bool:
        return (self.total_matches_remaining or 0) > 0

    @property
    def is_eligible(self) -> bool:
        """In flow with at least one credit."""
        return bool(self.is_in_flow) and self.has_credits

    def is_processing_locked(self, now: datetime | None = None) -> bool:
        if self.matching_processing_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.matching_processing_until > now

    def __repr__(self) -> str:
        return (
            f"<Intent {self.id} user={self.user_id} "
            f"remaining={self.total_matches_remaining} in_flow={self.is_in_flow}>"
        )


@event.listens_for(Intent, "init")
def _set_intent_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "is_in_flow" not in kwargs:
        target.is_in_flow = False
    if "is_actively_searching" not in kwargs:
        target.is_actively_searching = True
    for name in ("total_matches_purchased", "total_matches_used", "total_matches_remaining"):
        if name not in kwargs:
            setattr(target, name, 0)
    now = datetime.now(timezone.utc)
    if "created_at" not in kwargs:
        target.created_at = now
    if "updated_at" not in kwargs:
        target.updated_at = now
