"""initial telegram delivery schema

Revision ID: 0001_delivery
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_delivery"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "telegram_deliveries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("student_id", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=False),
        sa.Column("chat_id", sa.String(), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("parse_mode", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("source_type", sa.String(), nullable=True),
        sa.Column("source_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("telegram_message_id", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"]),
        sa.ForeignKeyConstraint(["parent_id"], ["parents.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", "parent_id", name="uq_delivery_key_parent"),
    )
    op.create_index("ix_telegram_deliveries_student_id", "telegram_deliveries", ["student_id"])
    op.create_index("ix_telegram_deliveries_parent_id", "telegram_deliveries", ["parent_id"])
    op.create_index("ix_telegram_deliveries_idempotency_key", "telegram_deliveries", ["idempotency_key"])
    op.create_index("ix_telegram_deliveries_status", "telegram_deliveries", ["status"])
    # Sweep hot path: due rows by status ordered by (next_retry_at, created_at).
    op.create_index(
        "ix_telegram_deliveries_status_next_retry",
        "telegram_deliveries",
        ["status", "next_retry_at", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_telegram_deliveries_status_next_retry", table_name="telegram_deliveries")
    op.drop_index("ix_telegram_deliveries_status", table_name="telegram_deliveries")
    op.drop_index("ix_telegram_deliveries_idempotency_key", table_name="telegram_deliveries")
    op.drop_index("ix_telegram_deliveries_parent_id", table_name="telegram_deliveries")
    op.drop_index("ix_telegram_deliveries_student_id", table_name="telegram_deliveries")
    op.drop_table("telegram_deliveries")
