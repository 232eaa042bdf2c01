"""create matches table

Revision ID: 003
Revises: 002
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    matchtype = sa.Enum("STANDARD", "TRIANGLE", name="matchtype")
    matchtype.create(op.get_bind(), checkfirst=True)

    matchstatus = sa.Enum("NEW", "IN_PROGRESS", "ARCHIVED", name="matchstatus")
    matchstatus.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "matches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("uid", sa.String(32), unique=True, nullable=False),
        sa.Column("group_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "seeker_intent_id", UUID(as_uuid=True),
            sa.ForeignKey("intents.id"), nullable=False,
        ),
        sa.Column(
            "target_intent_id", UUID(as_uuid=True),
            sa.ForeignKey("intents.id"), nullable=False,
        ),
        sa.Column(
            "target_home_id", UUID(as_uuid=True),
            sa.ForeignKey("homes.id"), nullable=False,
        ),
        sa.Column("type", matchtype, nullable=False),
        sa.Column("status", matchstatus, server_default="NEW", nullable=False),
        sa.Column("snapshot", JSONB(), nullable=True),
        sa.Column("snapshot_version", sa.Integer(), server_default="1", nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint(
            "seeker_intent_id", "target_home_id", name="uq_matches_seeker_target_home",
        ),
    )
    op.create_index("ix_matches_group_id", "matches", ["group_id"])
    op.create_index("ix_matches_seeker_intent_id", "matches", ["seeker_intent_id"])


def downgrade() -> None:
    op.drop_table("matches")
    sa.Enum(name="matchstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="matchtype").drop(op.get_bind(), checkfirst=True)
