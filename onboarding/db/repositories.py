from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import asc, desc, func, or_, select, update
from sqlalchemy.orm import Session

from onboarding.core.security import SecurityService
from onboarding.db import models
from onboarding.normalization.email_normalizer import normalize_email

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)


@dataclass(slots=True)
class Contact:
    """Decoded contact fields of one account."""

    phone_number: str
    email: str | None


_SORTABLE_COLUMNS = {
    "created_at": models.MemberAccount.created_at,
    "member_id": models.MemberAccount.member_id,
    "full_name": models.MemberAccount.full_name,
    "activation_status": models.MemberAccount.activation_status,
}


class MemberAccountRepository(BaseRepository[models.MemberAccount]):
    """Member accounts with codec-encoded contact fields.

    Callers hand in plaintext E.164 phones and normalized emails; the
    repository stores ``security.encode(value)`` plus a blind index and
    never returns ciphertext from :meth:`contact_for`.
    """

    model = models.MemberAccount

    def __init__(self, db: Session, security: SecurityService):
        super().__init__(db)
        self.security = security

    # ------------------------------------------------------------------
    # Lookup keys
    # ------------------------------------------------------------------

    def phone_key(self, phone_e164: str) -> str:
        return self.security.blind_index(phone_e164)

    def email_key(self, email: str | None) -> str | None:
        if not email:
            return None
        canonical = normalize_email(email) or email.strip().lower()
        return self.security.blind_index(canonical)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_account(
        self,
        *,
        member_id: str,
        full_name: str,
        phone_number: str,
        email: str | None,
        **kwargs,
    ) -> models.MemberAccount:
        return self.create(
            member_id=member_id,
            full_name=full_name,
            phone_number=self.security.encode(phone_number),
            phone_lookup=self.phone_key(phone_number),
            email=self.security.encode(email),
            email_lookup=self.email_key(email),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def contact_for(self, account: models.MemberAccount) -> Contact:
        return Contact(
            phone_number=self.security.decode(account.phone_number),
            email=self.security.decode(account.email),
        )

    def get_by_member_id(self, member_id: str) -> models.MemberAccount | None:
        stmt = select(models.MemberAccount).where(models.MemberAccount.member_id == member_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_update(self, member_id: str) -> models.MemberAccount | None:
        """Row-locked read for retry and resend.  SQLite ignores the lock."""
        stmt = (
            select(models.MemberAccount)
            .where(models.MemberAccount.member_id == member_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_phone(self, phone_e164: str) -> models.MemberAccount | None:
        stmt = select(models.MemberAccount).where(
            models.MemberAccount.phone_lookup == self.phone_key(phone_e164)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_email(self, email: str) -> models.MemberAccount | None:
        key = self.email_key(email)
        if key is None:
            return None
        stmt = select(models.MemberAccount).where(models.MemberAccount.email_lookup == key)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_import(self, import_id: UUID) -> list[models.MemberAccount]:
        stmt = (
            select(models.MemberAccount)
            .where(models.MemberAccount.import_id == import_id)
            .order_by(models.MemberAccount.created_at, models.MemberAccount.member_id)
        )
        return self.db.execute(stmt).scalars().all()

    def search(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        import_id: UUID | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[models.MemberAccount], int]:
        """Filtered, sorted page of accounts plus the total match count.

        ``search`` matches member id or name (case-insensitive substring).
        Contact fields are not searchable since they may be encrypted.
        """
        if sort_by not in _SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort field: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort order: {sort_order}")

        conditions = []
        if status:
            conditions.append(models.MemberAccount.activation_status == status)
        if import_id is not None:
            conditions.append(models.MemberAccount.import_id == import_id)
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(models.MemberAccount.member_id).like(pattern),
                    func.lower(models.MemberAccount.full_name).like(pattern),
                )
            )

        count_stmt = select(func.count()).select_from(models.MemberAccount).where(*conditions)
        total = self.db.execute(count_stmt).scalar_one()

        column = _SORTABLE_COLUMNS[sort_by]
        ordering = asc(column) if sort_order == "asc" else desc(column)
        stmt = (
            select(models.MemberAccount)
            .where(*conditions)
            .order_by(ordering, models.MemberAccount.member_id)
            .offset(offset)
            .limit(limit)
        )
        return self.db.execute(stmt).scalars().all(), total


_LEDGER_COUNTERS = frozenset(
    {
        "successful_rows",
        "failed_rows",
        "skipped_rows",
        "sms_sent_count",
        "sms_failed_count",
        "email_sent_count",
        "email_failed_count",
    }
)


class ImportLedgerRepository(BaseRepository[models.ImportLedger]):
    """Ledgers plus the retained row data of rows not yet provisioned.

    Retained rows hold uploaded contact details, so each one is stored as
    a codec-encoded JSON document keyed by row number.
    """

    model = models.ImportLedger

    def __init__(self, db: Session, security: SecurityService | None = None):
        super().__init__(db)
        self.security = security

    def encode_row(self, row: dict[str, str]) -> str:
        payload = json.dumps(row, sort_keys=True)
        return self.security.encode(payload) if self.security else payload

    def decode_row(self, token: str) -> dict[str, str]:
        payload = self.security.decode(token) if self.security else token
        return json.loads(payload)

    def retained_rows_for(self, ledger: models.ImportLedger) -> dict[int, dict[str, str]]:
        stored = ledger.retained_rows or {}
        ordered = sorted(stored.items(), key=lambda kv: int(kv[0]))
        return {int(number): self.decode_row(token) for number, token in ordered}

    def increment(self, ledger_id: UUID, counter: str, amount: int = 1) -> None:
        """Atomic ``counter = counter + amount`` executed in the database."""
        if counter not in _LEDGER_COUNTERS:
            raise ValueError(f"Unknown ledger counter: {counter}")
        column = getattr(models.ImportLedger, counter)
        stmt = (
            update(models.ImportLedger)
            .where(models.ImportLedger.id == ledger_id)
            .values({counter: column + amount})
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def history(self, *, limit: int = 20, offset: int = 0) -> tuple[list[models.ImportLedger], int]:
        total = self.db.execute(select(func.count()).select_from(models.ImportLedger)).scalar_one()
        stmt = (
            select(models.ImportLedger)
            .order_by(desc(models.ImportLedger.created_at), desc(models.ImportLedger.id))
            .offset(offset)
            .limit(limit)
        )
        return self.db.execute(stmt).scalars().all(), total

    def children_of(self, ledger_id: UUID) -> list[models.ImportLedger]:
        stmt = select(models.ImportLedger).where(models.ImportLedger.parent_ledger_id == ledger_id)
        return self.db.execute(stmt).scalars().all()
