from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text, func, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from onboarding.db.base import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, including on backends that drop tzinfo (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ImportLedger(Base):
    """One row per uploaded file: counters, ordered errors, channel totals.

    ``retained_rows`` keeps the original row data of rows that have not yet
    produced an account, keyed by row number, so an interrupted batch can be
    recovered.  ``resolved_rows`` lists every row number already folded into
    the counters.
    """

    __tablename__ = "import_ledgers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    operator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    operator_name: Mapped[str] = mapped_column(String(256), nullable=False)
    source_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    parent_ledger_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("import_ledgers.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    failed_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    skipped_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    sms_sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    sms_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    email_sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    email_failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    resolved_rows: Mapped[list | None] = mapped_column(JSON, nullable=True)
    retained_rows: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    members: Mapped[list[MemberAccount]] = relationship(back_populates="ledger")


class MemberAccount(Base):
    """One durable account per onboarded member.

    ``phone_number`` and ``email`` hold codec-encoded values; uniqueness and
    lookups go through the ``*_lookup`` blind-index columns.
    """

    __tablename__ = "member_accounts"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone_number: Mapped[str] = mapped_column(Text, nullable=False)
    phone_lookup: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_lookup: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)

    temp_secret_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    temp_secret_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    temp_secret_consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    permanent_secret_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_rotation_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    activation_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="pending_activation",
        server_default=sql_text("'pending_activation'"),
        index=True,
    )
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    import_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("import_ledgers.id", ondelete="SET NULL"), nullable=True, index=True
    )

    sms_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sms_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    sms_last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sms_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    email_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    email_last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    email_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    ledger: Mapped[ImportLedger | None] = relationship(back_populates="members")


class AuditEvent(Base):
    """Append-only audit log.

    Records every import, delivery, retry and resend event.  Rows are
    immutable by default (``immutable=True``).
    """

    __tablename__ = "audit_events"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128), nullable=False, default="system", server_default=sql_text("'system'"),
    )
    member_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    import_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(),
    )
    immutable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=sql_text("true"),
    )
