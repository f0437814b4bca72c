"""Initial schema: mailboxes, credentials, dispatch logs, jobs.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "mailbox_watches",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email_address", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "history_cursor",
            sa.BigInteger(),
            nullable=True,
            comment="Gmail historyId reconciled up to; only moves forward",
        ),
        sa.Column("watch_channel_id", sa.Text(), nullable=True),
        sa.Column("watch_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("watch_last_renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("watch_last_error", sa.Text(), nullable=True),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_mailbox_watches_enabled", "mailbox_watches", ["is_enabled"])

    op.create_table(
        "mailbox_credentials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "mailbox_id",
            sa.Uuid(),
            sa.ForeignKey("mailbox_watches.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_scopes", sa.JSON(), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidation_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "dispatch_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "mailbox_id",
            sa.Uuid(),
            sa.ForeignKey("mailbox_watches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("thread_id", sa.String(255), nullable=False),
        sa.Column("gmail_message_id", sa.String(255), nullable=True, unique=True),
        sa.Column("source_message_id", sa.String(255), nullable=True),
        sa.Column("parent_log_id", sa.Uuid(), nullable=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True, unique=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default="reply"),
        sa.Column("action", sa.String(30), nullable=False, server_default="REPLY_SENT"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("recipient_email", sa.String(320), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("triage_label", sa.String(50), nullable=True),
        sa.Column("follow_up_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("follow_up_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("receipt_state", sa.String(20), nullable=False, server_default="monitoring"),
        sa.Column("receipt_checks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_dispatch_logs_thread", "dispatch_logs", ["mailbox_id", "thread_id"])
    op.create_index(
        "idx_dispatch_logs_follow_up",
        "dispatch_logs",
        ["follow_up_required", "follow_up_sent", "sent_at"],
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("lock_key", sa.String(100), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_jobs_pending", "jobs", ["status", "run_at"])
    op.create_index("idx_jobs_lock_key", "jobs", ["lock_key", "status"])


def downgrade() -> None:
    op.drop_index("idx_jobs_lock_key", table_name="jobs")
    op.drop_index("idx_jobs_pending", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("idx_dispatch_logs_follow_up", table_name="dispatch_logs")
    op.drop_index("idx_dispatch_logs_thread", table_name="dispatch_logs")
    op.drop_table("dispatch_logs")
    op.drop_table("mailbox_credentials")
    op.drop_index("idx_mailbox_watches_enabled", table_name="mailbox_watches")
    op.drop_table("mailbox_watches")
