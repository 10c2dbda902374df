"""Create idempotency keys, send attempts and deduplication log tables."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    """Check if a table exists."""

    return table_name in inspector.get_table_names()


def upgrade() -> None:
    """Create delivery tables if they are missing."""

    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _has_table(inspector, "notification_idempotency_keys"):
        op.create_table(
            "notification_idempotency_keys",
            sa.Column("key", sa.String(length=255), primary_key=True),
            sa.Column("holder_id", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "idx_idempotency_keys_expires_at",
            "notification_idempotency_keys",
            ["expires_at"],
        )

    if not _has_table(inspector, "notification_send_attempts"):
        op.create_table(
            "notification_send_attempts",
            sa.Column("attempt_id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("idempotency_key", sa.String(length=255), nullable=False),
            sa.Column("recipient", sa.Text(), nullable=False),
            sa.Column("subject", sa.Text(), nullable=False),
            sa.Column(
                "notification_type",
                sa.String(length=100),
                nullable=False,
                server_default=sa.text("''"),
            ),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column(
                "attempt_count",
                sa.Integer(),
                nullable=False,
                server_default=sa.text("1"),
            ),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("NOW()"),
            ),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("NOW()"),
            ),
            sa.CheckConstraint(
                "status IN ('queued', 'sent', 'failed')",
                name="ck_send_attempts_status",
            ),
            sa.CheckConstraint("attempt_count >= 1", name="ck_send_attempts_count"),
        )
        op.create_index(
            "idx_send_attempts_key",
            "notification_send_attempts",
            ["idempotency_key"],
        )
        op.create_index(
            "idx_send_attempts_updated_at",
            "notification_send_attempts",
            ["updated_at"],
        )

    if not _has_table(inspector, "notification_dedup_log"):
        op.create_table(
            "notification_dedup_log",
            sa.Column("entry_id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("content_hash", sa.String(length=255), nullable=False),
            sa.Column("recipient", sa.Text(), nullable=False),
            sa.Column("subject", sa.Text(), nullable=False),
            sa.Column(
                "notification_type",
                sa.String(length=100),
                nullable=False,
                server_default=sa.text("''"),
            ),
            sa.Column("first_sent_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column(
                "attempt_count",
                sa.Integer(),
                nullable=False,
                server_default=sa.text("1"),
            ),
            sa.UniqueConstraint(
                "content_hash",
                "first_sent_at",
                name="uq_dedup_log_episode",
            ),
        )
        op.create_index(
            "idx_dedup_log_last_attempted_at",
            "notification_dedup_log",
            ["last_attempted_at"],
        )


def downgrade() -> None:
    """Drop delivery tables."""

    op.drop_index("idx_dedup_log_last_attempted_at", table_name="notification_dedup_log")
    op.drop_table("notification_dedup_log")
    op.drop_index("idx_send_attempts_updated_at", table_name="notification_send_attempts")
    op.drop_index("idx_send_attempts_key", table_name="notification_send_attempts")
    op.drop_table("notification_send_attempts")
    op.drop_index(
        "idx_idempotency_keys_expires_at", table_name="notification_idempotency_keys"
    )
    op.drop_table("notification_idempotency_keys")
