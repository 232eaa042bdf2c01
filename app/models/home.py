"""
Home model — the dwelling a user offers in an exchange.

Location is stored as plain latitude/longitude; zone containment is
evaluated with a haversine distance in the matching engine.
"""

import enum
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
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class HomeType(str, enum.Enum):
    CHAMBRE = "CHAMBRE"
    STUDIO = "STUDIO"
    T1 = "T1"
    T1_BIS = "T1_BIS"
    T2 = "T2"
    T3 = "T3"
    T4 = "T4"
    T5 = "T5"
    T6_PLUS = "T6_PLUS"


class Home(Base):
    __tablename__ = "homes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    # One offered dwelling per user
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False,
    )

    address_formatted: Mapped[str | None] = mapped_column(String(500))
    lat: Mapped[float | None] = mapped_column(Float)
    lng: Mapped[float | None] = mapped_column(Float)

    home_type: Mapped[str | None] = mapped_column(String(20))
    nb_rooms: Mapped[int | None] = mapped_column(Integer)
    surface: Mapped[int | None] = mapped_column(Integer)   # square metres
    rent: Mapped[int | None] = mapped_column(Integer)      # monthly, whole euros

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User")

    def snapshot(self) -> dict:
        """Immutable copy of the dwelling stored on a Match row."""
        return {
            "home_id": str(self.id),
            "address": self.address_formatted,
            "lat": self.lat,
            "lng": self.lng,
            "home_type": self.home_type,
            "nb_rooms": self.nb_rooms,
            "surface": self.surface,
            "rent": self.rent,
        }

    def __repr__(self) -> str:
        return f"<Home {self.id} {self.home_type} rent={self.rent}>"


@event.listens_for(Home, "init")
def _set_home_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    now = datetime.now(timezone.utc)
    if "created_at" not in kwargs:
        target.created_at = now
    if "updated_at" not in kwargs:
        target.updated_at = now
