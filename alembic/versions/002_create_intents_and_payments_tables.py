"""create intents and payments tables

Revision ID: 002
Revises: 001
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    paymentstatus = sa.Enum(
        "PENDING", "SUCCEEDED", "FAILED", "PARTIALLY_REFUNDED", "REFUNDED",
        name="paymentstatus",
    )
    paymentstatus.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "intents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", UUID(as_uuid=True),
            sa.ForeignKey("users.id"), unique=True, nullable=False,
        ),
        sa.Column("home_id", UUID(as_uuid=True), sa.ForeignKey("homes.id"), nullable=True),
        sa.Column("search_id", UUID(as_uuid=True), sa.ForeignKey("searches.id"), nullable=True),
        sa.Column("is_in_flow", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("is_actively_searching", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("total_matches_purchased", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_matches_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_matches_remaining", sa.Integer(), server_default="0", nullable=False),
        sa.Column("matching_processing_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("matching_processing_by", sa.String(255), nullable=True),
        sa.Column("last_matching_enqueued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_matching_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refund_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.CheckConstraint(
            "total_matches_remaining >= 0", name="ck_intents_remaining_non_negative",
        ),
    )
    op.create_index("ix_intents_is_in_flow", "intents", ["is_in_flow"])

    op.create_table(
        "payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("intent_id", UUID(as_uuid=True), sa.ForeignKey("intents.id"), nullable=False),
        sa.Column("pack_id", sa.String(50), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), server_default="0", nullable=False),
        sa.Column("currency", sa.String(3), server_default="EUR", nullable=False),
        sa.Column("matches_initial", sa.Integer(), nullable=False),
        sa.Column("matches_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("matches_refunded", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", paymentstatus, server_default="PENDING", nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "matches_used + matches_refunded <= matches_initial",
            name="ck_payments_credit_capacity",
        ),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_intent_id", "payments", ["intent_id"])


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("intents")
    sa.Enum(name="paymentstatus").drop(op.get_bind(), checkfirst=True)
