"""create matching_tasks, intent_edges and match_notification_outbox tables

Revision ID: 004
Revises: 003
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID

revision = "004"
down_revision = "003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    tasktype = sa.Enum("MATCHING", name="matchingtasktype")
    tasktype.create(op.get_bind(), checkfirst=True)

    taskstatus = sa.Enum("PENDING", "RUNNING", "DONE", "FAILED", name="matchingtaskstatus")
    taskstatus.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "matching_tasks",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("intent_id", UUID(as_uuid=True), sa.ForeignKey("intents.id"), nullable=False),
        sa.Column("type", tasktype, server_default="MATCHING", nullable=False),
        sa.Column("status", taskstatus, server_default="PENDING", nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="5", nullable=False),
        sa.Column(
            "available_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("run_id", sa.String(64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint("intent_id", "type", name="uq_matching_tasks_intent_type"),
    )
    op.create_index(
        "ix_matching_tasks_claim", "matching_tasks",
        ["status", "available_at", "created_at"],
    )

    op.create_table(
        "intent_edges",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "from_intent_id", UUID(as_uuid=True),
            sa.ForeignKey("intents.id"), nullable=False,
        ),
        sa.Column(
            "to_intent_id", UUID(as_uuid=True),
            sa.ForeignKey("intents.id"), nullable=False,
        ),
        sa.Column("score", sa.Float(), server_default="0", nullable=False),
        sa.Column(
            "computed_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint("from_intent_id", "to_intent_id", name="uq_intent_edges_pair"),
    )
    op.create_index("ix_intent_edges_from_intent_id", "intent_edges", ["from_intent_id"])
    op.create_index("ix_intent_edges_to_intent_id", "intent_edges", ["to_intent_id"])

    op.create_table(
        "match_notification_outbox",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("intent_id", UUID(as_uuid=True), sa.ForeignKey("intents.id"), nullable=False),
        sa.Column("match_count_delta", sa.Integer(), server_default="0", nullable=False),
        sa.Column("match_type", sa.String(20), nullable=True),
        sa.Column(
            "match_uids", ARRAY(sa.String(64)),
            server_default="{}", nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="5", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "available_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint(
            "run_id", "user_id", "intent_id", name="uq_outbox_run_user_intent",
        ),
    )
    op.create_index("ix_match_notification_outbox_run_id", "match_notification_outbox", ["run_id"])
    op.create_index(
        "ix_outbox_pending", "match_notification_outbox",
        ["processed_at", "available_at"],
    )


def downgrade() -> None:
    op.drop_table("match_notification_outbox")
    op.drop_table("intent_edges")
    op.drop_table("matching_tasks")
    sa.Enum(name="matchingtaskstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="matchingtasktype").drop(op.get_bind(), checkfirst=True)
