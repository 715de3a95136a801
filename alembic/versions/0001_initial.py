"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "import_ledgers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("operator_id", sa.String(length=128), nullable=False),
        sa.Column("operator_name", sa.String(length=256), nullable=False),
        sa.Column("source_filename", sa.String(length=512), nullable=False),
        sa.Column("parent_ledger_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("total_rows", sa.Integer(), nullable=False),
        sa.Column("successful_rows", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_rows", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("skipped_rows", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sms_sent_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sms_failed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("email_sent_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("email_failed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("resolved_rows", sa.JSON(), nullable=True),
        sa.Column("retained_rows", sa.JSON(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["parent_ledger_id"], ["import_ledgers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "member_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("member_id", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=False),
        sa.Column("phone_number", sa.Text(), nullable=False),
        sa.Column("phone_lookup", sa.String(length=64), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("email_lookup", sa.String(length=64), nullable=True),
        sa.Column("temp_secret_hash", sa.String(length=256), nullable=True),
        sa.Column("temp_secret_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("temp_secret_consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("permanent_secret_hash", sa.String(length=256), nullable=True),
        sa.Column("last_rotation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "activation_status",
            sa.String(length=32),
            server_default=sa.text("'pending_activation'"),
            nullable=False,
        ),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_id", sa.Uuid(), nullable=True),
        sa.Column("sms_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sms_retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sms_last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sms_last_error", sa.Text(), nullable=True),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("email_last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["import_id"], ["import_ledgers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone_lookup"),
        sa.UniqueConstraint("email_lookup"),
    )

    op.create_table(
        "audit_events",
        sa.Column("audit_event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), server_default=sa.text("'system'"), nullable=False),
        sa.Column("member_id", sa.String(length=64), nullable=True),
        sa.Column("import_id", sa.String(length=64), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("immutable", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.PrimaryKeyConstraint("audit_event_id"),
    )

    op.create_index("ix_member_accounts_member_id", "member_accounts", ["member_id"], unique=True)
    op.create_index("ix_member_accounts_activation_status", "member_accounts", ["activation_status"])
    op.create_index("ix_member_accounts_import_id", "member_accounts", ["import_id"])
    op.create_index("ix_member_accounts_temp_secret_expires_at", "member_accounts", ["temp_secret_expires_at"])
    op.create_index("ix_audit_events_member_id", "audit_events", ["member_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_member_id", table_name="audit_events")
    op.drop_index("ix_member_accounts_temp_secret_expires_at", table_name="member_accounts")
    op.drop_index("ix_member_accounts_import_id", table_name="member_accounts")
    op.drop_index("ix_member_accounts_activation_status", table_name="member_accounts")
    op.drop_index("ix_member_accounts_member_id", table_name="member_accounts")

    op.drop_table("audit_events")
    op.drop_table("member_accounts")
    op.drop_table("import_ledgers")
