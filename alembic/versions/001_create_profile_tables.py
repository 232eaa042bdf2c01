"""create users, homes, searches and search_zones tables

Revision ID: 001
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )

    op.create_table(
        "homes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", UUID(as_uuid=True),
            sa.ForeignKey("users.id"), unique=True, nullable=False,
        ),
        sa.Column("address_formatted", sa.String(500), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("home_type", sa.String(20), nullable=True),
        sa.Column("nb_rooms", sa.Integer(), nullable=True),
        sa.Column("surface", sa.Integer(), nullable=True),
        sa.Column("rent", sa.Integer(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )
    op.create_index("ix_homes_rent", "homes", ["rent"])

    op.create_table(
        "searches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", UUID(as_uuid=True),
            sa.ForeignKey("users.id"), unique=True, nullable=False,
        ),
        sa.Column("min_rent", sa.Integer(), nullable=True),
        sa.Column("max_rent", sa.Integer(), nullable=True),
        sa.Column("min_room_surface", sa.Integer(), nullable=True),
        sa.Column("max_room_surface", sa.Integer(), nullable=True),
        sa.Column("min_room_nb", sa.Integer(), nullable=True),
        sa.Column("max_room_nb", sa.Integer(), nullable=True),
        sa.Column("home_types", JSONB(), server_default="[]", nullable=False),
        sa.Column("search_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("search_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )

    op.create_table(
        "search_zones",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "search_id", UUID(as_uuid=True),
            sa.ForeignKey("searches.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("radius", sa.Float(), nullable=True),
    )
    op.create_index("ix_search_zones_search_id", "search_zones", ["search_id"])


def downgrade() -> None:
    op.drop_table("search_zones")
    op.drop_table("searches")
    op.drop_table("homes")
    op.drop_table("users")
