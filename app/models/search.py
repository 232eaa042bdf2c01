"""
Search criteria models — what a user accepts in exchange for their home.

A Search carries numeric bounds (null means unbounded), the list of
accepted dwelling types (empty means any), a validity date window and
one or more geographic zones (center + radius in metres).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Search(Base):
    __tablename__ = "searches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False,
    )

    min_rent: Mapped[int | None] = mapped_column(Integer)
    max_rent: Mapped[int | None] = mapped_column(Integer)
    min_room_surface: Mapped[int | None] = mapped_column(Integer)
    max_room_surface: Mapped[int | None] = mapped_column(Integer)
    min_room_nb: Mapped[int | None] = mapped_column(Integer)
    max_room_nb: Mapped[int | None] = mapped_column(Integer)
    home_types: Mapped[list] = mapped_column(JSONB, default=list)

    search_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    search_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    zones = relationship(
        "SearchZone", back_populates="search",
        cascade="all, delete-orphan", lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Search {self.id} rent={self.min_rent}-{self.max_rent} "
            f"zones={len(self.zones or [])}>"
        )


class SearchZone(Base):
    __tablename__ = "search_zones"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    search_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("searches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    label: Mapped[str | None] = mapped_column(String(255))
    lat: Mapped[float | None] = mapped_column(Float)
    lng: Mapped[float | None] = mapped_column(Float)
    radius: Mapped[float | None] = mapped_column(Float)  # metres

    search = relationship("Search", back_populates="zones")

    def __repr__(self) -> str:
        return f"<SearchZone {self.label} ({self.lat},{self.lng}) r={self.radius}>"


@event.listens_for(Search, "init")
def _set_search_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "home_types" not in kwargs:
        target.home_types = []
    now = datetime.now(timezone.utc)
    if "created_at" not in kwargs:
        target.created_at = now
    if "updated_at" not in kwargs:
        target.updated_at = now


@event.listens_for(SearchZone, "init")
def _set_zone_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
