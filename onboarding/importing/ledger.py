"""Import ledger writer.

Every row of an upload resolves to exactly one :class:`RowResult`, and
every result is folded into the ledger through :class:`LedgerWriter`, the
single guarded accumulator for row counters and the error list.

Invariants kept here:

* a row number contributes at most one increment, to exactly one of
  successful / failed / skipped (repeat results are ignored);
* errors are appended in the order results arrive;
* the original data of a row stays retained until the row produced an
  account or was skipped, so an interrupted batch can be recovered;
* ``completed`` is only reached when successful + failed + skipped equals
  ``total_rows``.

Channel counters are not written here; the dispatcher increments them
with atomic SQL updates, also long after the ledger completed.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from uuid import UUID

from sqlalchemy.orm import Session

from onboarding.core.errors import ErrorCode
from onboarding.db.models import ImportLedger
from onboarding.db.repositories import ImportLedgerRepository
from onboarding.importing.validator import RowValidationError

logger = logging.getLogger(__name__)


class RowOutcome(StrEnum):
    SUCCESSFUL = "successful"
    FAILED = "failed"
    SKIPPED = "skipped"


class LedgerStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_ROW_COUNTERS = {
    RowOutcome.SUCCESSFUL: "successful_rows",
    RowOutcome.FAILED: "failed_rows",
    RowOutcome.SKIPPED: "skipped_rows",
}


@dataclass(slots=True)
class RowResult:
    row_number: int
    outcome: RowOutcome
    member_id: str | None = None
    errors: list[RowValidationError] = field(default_factory=list)

    @classmethod
    def successful(cls, row_number: int, member_id: str) -> RowResult:
        return cls(row_number=row_number, outcome=RowOutcome.SUCCESSFUL, member_id=member_id)

    @classmethod
    def skipped(cls, row_number: int, errors: list[RowValidationError]) -> RowResult:
        member_id = next((e.member_id for e in errors if e.member_id), None)
        return cls(row_number=row_number, outcome=RowOutcome.SKIPPED, member_id=member_id, errors=errors)

    @classmethod
    def failed(cls, row_number: int, errors: list[RowValidationError], member_id: str | None = None) -> RowResult:
        return cls(row_number=row_number, outcome=RowOutcome.FAILED, member_id=member_id, errors=errors)


def ledger_statistics(ledger: ImportLedger) -> dict[str, int]:
    return {
        "total": ledger.total_rows,
        "successful": ledger.successful_rows,
        "failed": ledger.failed_rows,
        "skipped": ledger.skipped_rows,
        "sms_sent": ledger.sms_sent_count,
        "sms_failed": ledger.sms_failed_count,
        "email_sent": ledger.email_sent_count,
        "email_failed": ledger.email_failed_count,
    }


class LedgerWriter:
    """Single serialization point for one ledger's row outcomes."""

    def __init__(self, db: Session, ledger: ImportLedger, ledgers: ImportLedgerRepository) -> None:
        self.db = db
        self.ledger = ledger
        self.ledgers = ledgers
        self._lock = threading.Lock()
        self._resolved: set[int] = set(ledger.resolved_rows or [])

    @classmethod
    def open(
        cls,
        db: Session,
        ledgers: ImportLedgerRepository,
        *,
        operator_id: str,
        operator_name: str,
        source_filename: str,
        rows: dict[int, dict[str, str]],
        parent_ledger_id: UUID | None = None,
    ) -> LedgerWriter:
        """Create a ``pending`` ledger retaining every row of the upload."""
        ledger = ledgers.create(
            operator_id=operator_id,
            operator_name=operator_name,
            source_filename=source_filename,
            parent_ledger_id=parent_ledger_id,
            status=LedgerStatus.PENDING.value,
            total_rows=len(rows),
            successful_rows=0,
            failed_rows=0,
            skipped_rows=0,
            sms_sent_count=0,
            sms_failed_count=0,
            email_sent_count=0,
            email_failed_count=0,
            errors=[],
            resolved_rows=[],
            retained_rows={str(number): ledgers.encode_row(row) for number, row in rows.items()},
        )
        logger.info("Opened import ledger %s with %d rows", ledger.id, len(rows))
        return cls(db, ledger, ledgers)

    @property
    def ledger_id(self) -> UUID:
        return self.ledger.id

    @property
    def resolved_rows(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._resolved)

    def record(self, result: RowResult) -> bool:
        """Fold *result* into the ledger.  Returns ``False`` for a repeat row."""
        with self._lock:
            if self.ledger.status != LedgerStatus.PENDING:
                raise ValueError(f"Ledger {self.ledger.id} is {self.ledger.status}; no more rows accepted")
            if result.row_number in self._resolved:
                logger.debug("Ledger %s: row %d already resolved", self.ledger.id, result.row_number)
                return False

            retained = dict(self.ledger.retained_rows or {})
            key = str(result.row_number)
            if key not in retained:
                raise ValueError(f"Row {result.row_number} is not part of ledger {self.ledger.id}")

            self._resolved.add(result.row_number)
            self.ledger.resolved_rows = sorted(self._resolved)
            if result.errors:
                self.ledger.errors = [*(self.ledger.errors or []), *(e.to_dict() for e in result.errors)]
            if result.outcome is not RowOutcome.FAILED:
                retained.pop(key)
                self.ledger.retained_rows = retained
            self.db.flush()
            self.ledgers.increment(self.ledger.id, _ROW_COUNTERS[result.outcome])
            return True

    def record_many(self, results: list[RowResult]) -> int:
        return sum(1 for result in results if self.record(result))

    def statistics(self) -> dict[str, int]:
        with self._lock:
            self.db.flush()
            self.db.refresh(self.ledger)
            return ledger_statistics(self.ledger)

    def finalize(self) -> ImportLedger:
        """Mark the ledger ``completed``; every row must be resolved."""
        with self._lock:
            self.db.flush()
            self.db.refresh(self.ledger)
            ledger = self.ledger
            unresolved = ledger.total_rows - len(self._resolved)
            if unresolved:
                raise ValueError(f"Ledger {ledger.id} still has {unresolved} unresolved rows")
            counted = ledger.successful_rows + ledger.failed_rows + ledger.skipped_rows
            if counted != ledger.total_rows:
                raise RuntimeError(
                    f"Ledger {ledger.id} counts {counted} rows but expected {ledger.total_rows}"
                )

            ledger.status = LedgerStatus.COMPLETED.value
            ledger.completed_at = datetime.now(timezone.utc)
            if ledger.failed_rows or ledger.skipped_rows:
                ledger.error_summary = (
                    f"{ledger.failed_rows} failed and {ledger.skipped_rows} skipped of {ledger.total_rows} rows"
                )
            self.db.flush()
            logger.info(
                "Import ledger %s completed: successful=%d failed=%d skipped=%d",
                ledger.id, ledger.successful_rows, ledger.failed_rows, ledger.skipped_rows,
            )
            return ledger

    def abort(self, reason: str, *, code: ErrorCode = ErrorCode.OPERATION_INTERRUPTED) -> ImportLedger:
        """Mark the ledger ``failed``; unresolved rows stay retained."""
        with self._lock:
            ledger = self.ledger
            ledger.status = LedgerStatus.FAILED.value
            ledger.completed_at = datetime.now(timezone.utc)
            ledger.error_summary = f"{code}: {reason}"
            self.db.flush()
            logger.warning(
                "Import ledger %s aborted (%s) with %d of %d rows resolved",
                ledger.id, code, len(self._resolved), ledger.total_rows,
            )
            return ledger
