"""
Match notification outbox — transactional staging for "new matches" emails.

Rows are written in the same transaction as the matches they announce,
one row per (run, user, intent), and are only marked processed after
the email went out.  Rows that exhaust their attempts are parked, never
deleted.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class MatchNotificationOutbox(Base):
    __tablename__ = "match_notification_outbox"
    __table_args__ = (
        UniqueConstraint("run_id", "user_id", "intent_id", name="uq_outbox_run_user_intent"),
        Index("ix_outbox_pending", "processed_at", "available_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False,
    )
    intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False,
    )

    match_count_delta: Mapped[int] = mapped_column(Integer, default=0)
    match_type: Mapped[str | None] = mapped_column(String(20))
    match_uids: Mapped[list[str]] = mapped_column(ARRAY(String(64)), default=list)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    last_error: Mapped[str | None] = mapped_column(Text)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<Outbox run={self.run_id} user={self.user_id} "
            f"delta={self.match_count_delta} processed={self.processed_at is not None}>"
        )


@event.listens_for(MatchNotificationOutbox, "init")
def _set_outbox_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "match_count_delta" not in kwargs:
        target.match_count_delta = 0
    if "match_uids" not in kwargs:
        target.match_uids = []
    if "attempts" not in kwargs:
        target.attempts = 0
    if "max_attempts" not in kwargs:
        target.max_attempts = 5
    now = datetime.now(timezone.utc)
    if "available_at" not in kwargs:
        target.available_at = now
    if "created_at" not in kwargs:
        target.created_at = now
