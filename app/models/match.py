"""
Match record model — the durable result of the matching engine.

A match points a seeker intent at a target home.  Every row created in
the same exchange transaction shares a ``group_id``: two rows for a
STANDARD (reciprocal) match, three for a TRIANGLE.  No two rows may
point the same seeker at the same home.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Enum as SAEnum,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

SNAPSHOT_VERSION = 1


class MatchType(str, enum.Enum):
    STANDARD = "STANDARD"
    TRIANGLE = "TRIANGLE"


class MatchStatus(str, enum.Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ARCHIVED = "ARCHIVED"


def _new_uid() -> str:
    return uuid.uuid4().hex


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint(
            "seeker_intent_id", "target_home_id", name="uq_matches_seeker_target_home",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    uid: Mapped[str] = mapped_column(String(32), unique=True, default=_new_uid)
    group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True,
    )

    seeker_intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False, index=True,
    )
    target_intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False,
    )
    target_home_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("homes.id"), nullable=False,
    )

    type: Mapped[MatchType] = mapped_column(
        SAEnum(MatchType, name="matchtype"), nullable=False,
    )
    status: Mapped[MatchStatus] = mapped_column(
        SAEnum(MatchStatus, name="matchstatus"),
        default=MatchStatus.NEW,
    )

    snapshot: Mapped[dict | None] = mapped_column(JSONB)
    snapshot_version: Mapped[int] = mapped_column(Integer, default=SNAPSHOT_VERSION)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    seeker_intent = relationship("Intent", foreign_keys=[seeker_intent_id])
    target_intent = relationship("Intent", foreign_keys=[target_intent_id])
    target_home = relationship("Home")

    def __repr__(self) -> str:
        return (
            f"<Match {self.uid} group={self.group_id} "
            f"({self.type.value if self.type else 'N/A'})>"
        )


@event.listens_for(Match, "init")
def _set_match_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "uid" not in kwargs:
        target.uid = _new_uid()
    if "status" not in kwargs:
        target.status = MatchStatus.NEW
    if "snapshot_version" not in kwargs:
        target.snapshot_version = SNAPSHOT_VERSION
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
