"""
Compatibility edge model — "from_intent's search accepts to_intent's home".

A cache used only by the triangle engine.  Edges are refreshed lazily
per seeker, purged when they touch an ineligible intent, and always
re-verified before a triangle is committed.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class IntentEdge(Base):
    __tablename__ = "intent_edges"
    __table_args__ = (
        UniqueConstraint("from_intent_id", "to_intent_id", name="uq_intent_edges_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    from_intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False, index=True,
    )
    to_intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False, index=True,
    )
    score: Mapped[float] = mapped_column(Float, default=0.0)

    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<IntentEdge {self.from_intent_id} -> {self.to_intent_id} score={self.score}>"


@event.listens_for(IntentEdge, "init")
def _set_edge_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "score" not in kwargs:
        target.score = 0.0
    now = datetime.now(timezone.utc)
    if "computed_at" not in kwargs:
        target.computed_at = now
    if "updated_at" not in kwargs:
        target.updated_at = now
