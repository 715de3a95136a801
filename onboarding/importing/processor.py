"""Batch orchestration: validate → dedupe → issue → provision → notify.

Flow for one upload
-------------------
1. Validate every row (pure) and run both duplicate passes.
2. Open the ledger, retaining every row, and fold all validation and
   duplicate skips into it.
3. Issue credentials for the remaining rows on a bounded worker pool;
   plaintexts are unique within the batch.
4. Provision rows one by one on the calling thread and commit each row
   together with its ledger entry.  A unique-constraint violation becomes
   a skipped duplicate; any other store failure on a row marks it failed.
5. Hand each provisioned account's messages to the worker pool as soon as
   it is committed; outcomes are recorded back on the calling thread.
6. Finalize the ledger.

The session is only touched from the calling thread.  A message that
cannot be composed is recorded as that channel's delivery failure.  Any
error that escapes a row, the store going away included, aborts the
batch, and so does cancellation.  The ledger is then marked ``failed``;
resolved rows keep their entries and unresolved rows stay retained for
the recovery service.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_BULK_IMPORT
from onboarding.core.errors import BatchAbortedError, ErrorCode, OnboardingError, RowErrorKind
from onboarding.credentials.manager import CredentialManager, IssuedCredential
from onboarding.db.models import MemberAccount
from onboarding.db.repositories import Contact, ImportLedgerRepository, MemberAccountRepository
from onboarding.importing.duplicates import DuplicateDetector, find_in_file_duplicates, store_duplicate_error
from onboarding.importing.ledger import LedgerWriter, RowResult, ledger_statistics
from onboarding.importing.validator import MemberRow, RowValidationError, validate_rows
from onboarding.normalization.phone_normalizer import DEFAULT_REGION
from onboarding.notification.channels import Channel, DeliveryOutcome, OutboundMessage
from onboarding.notification.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchResult:
    ledger_id: UUID
    status: str
    statistics: dict[str, int]
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ledgerId": str(self.ledger_id),
            "status": self.status,
            "statistics": self.statistics,
            "errors": self.errors,
        }


def _failure(row: MemberRow, code: ErrorCode, message: str) -> RowValidationError:
    return RowValidationError(
        row_number=row.row_number,
        field="row",
        value=None,
        reason=message,
        code=code,
        kind=RowErrorKind.PROVISIONING,
        member_id=row.member_id,
    )


class BatchProcessor:
    """Run one member upload through the whole pipeline."""

    def __init__(
        self,
        db: Session,
        *,
        accounts: MemberAccountRepository,
        ledgers: ImportLedgerRepository,
        credentials: CredentialManager,
        provisioner: AccountProvisioner,
        dispatcher: NotificationDispatcher,
        max_workers: int = 4,
        default_region: str = DEFAULT_REGION,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.ledgers = ledgers
        self.credentials = credentials
        self.provisioner = provisioner
        self.dispatcher = dispatcher
        self.detector = DuplicateDetector(accounts)
        self.max_workers = max_workers
        self.default_region = default_region
        self.cancel_event = cancel_event or threading.Event()

    # -- public -------------------------------------------------------------

    def process(
        self,
        rows: list[dict[str, str]],
        *,
        operator_id: str,
        operator_name: str,
        source_filename: str,
        row_numbers: list[int] | None = None,
        parent_ledger_id: UUID | None = None,
    ) -> BatchResult:
        numbers = row_numbers or list(range(1, len(rows) + 1))
        report = validate_rows(rows, row_numbers=numbers, default_region=self.default_region)
        in_file = find_in_file_duplicates(rows, row_numbers=numbers, default_region=self.default_region)
        fresh, duplicate_errors = self.detector.split(report.valid_rows, in_file)

        writer = LedgerWriter.open(
            self.db,
            self.ledgers,
            operator_id=operator_id,
            operator_name=operator_name,
            source_filename=source_filename,
            rows=dict(zip(numbers, rows)),
            parent_ledger_id=parent_ledger_id,
        )
        record_event(
            self.db,
            event_type=EVENT_BULK_IMPORT,
            actor=operator_id,
            import_id=writer.ledger_id,
            outcome="started",
            metadata={"filename": source_filename, "total_rows": len(rows)},
        )
        self.db.commit()

        errors_by_row: dict[int, list[RowValidationError]] = defaultdict(list)
        for error in [*report.errors, *duplicate_errors]:
            errors_by_row[error.row_number].append(error)

        deliveries: dict[Future, MemberAccount] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="import") as pool:
            try:
                for number in sorted(errors_by_row):
                    writer.record(RowResult.skipped(number, errors_by_row[number]))
                self.db.commit()

                issued = self._issue_credentials(pool, fresh, writer)
                self._provision_all(pool, issued, writer, deliveries)
                self._record_deliveries(deliveries)
            except SQLAlchemyError as exc:
                self.db.rollback()
                for future in deliveries:
                    future.cancel()
                logger.error("Store failure during import %s: %s", writer.ledger_id, type(exc).__name__)
                self._abort(writer, "store unavailable", ErrorCode.DATABASE_ERROR, cause=exc)
            except BatchAbortedError:
                raise
            except Exception as exc:
                self.db.rollback()
                for future in deliveries:
                    future.cancel()
                logger.error("Unexpected failure during import %s: %s", writer.ledger_id, type(exc).__name__)
                self._abort(writer, "unexpected error", ErrorCode.OPERATION_INTERRUPTED, cause=exc)

        writer.finalize()
        record_event(
            self.db,
            event_type=EVENT_BULK_IMPORT,
            actor=operator_id,
            import_id=writer.ledger_id,
            outcome="completed",
            metadata=writer.statistics(),
        )
        self.db.commit()
        return self._result(writer)

    # -- steps --------------------------------------------------------------

    def _issue_credentials(
        self,
        pool: ThreadPoolExecutor,
        rows: list[MemberRow],
        writer: LedgerWriter,
    ) -> list[tuple[MemberRow, IssuedCredential]]:
        batch = self.credentials.batch()
        futures = {row.row_number: pool.submit(batch.issue, row.member_id) for row in rows}
        issued: list[tuple[MemberRow, IssuedCredential]] = []
        for row in rows:
            try:
                issued.append((row, futures[row.row_number].result()))
            except OnboardingError as exc:
                logger.warning("Credential issuance failed for member %s", row.member_id)
                writer.record(RowResult.failed(row.row_number, [_failure(row, exc.code, str(exc))], row.member_id))
                self.db.commit()
        return issued

    def _provision_all(
        self,
        pool: ThreadPoolExecutor,
        issued: list[tuple[MemberRow, IssuedCredential]],
        writer: LedgerWriter,
        deliveries: dict[Future, MemberAccount],
    ) -> None:
        for row, credential in issued:
            if self.cancel_event.is_set():
                self._record_deliveries(deliveries)
                self._abort(writer, "batch cancelled", ErrorCode.OPERATION_INTERRUPTED)

            account = self._provision_row(row, credential, writer)
            if account is None:
                continue
            contact = Contact(phone_number=row.phone_number, email=row.email)
            for channel in self.dispatcher.channels_for(contact):
                try:
                    message: OutboundMessage = self.dispatcher.compose(channel, account, contact, credential.plaintext)
                except Exception as exc:
                    logger.warning("Could not compose %s for member %s: %s", channel, row.member_id, type(exc).__name__)
                    self.dispatcher.record(account, self._undeliverable(channel, exc))
                    self.db.commit()
                    continue
                deliveries[pool.submit(self.dispatcher.deliver, message)] = account

    def _provision_row(
        self,
        row: MemberRow,
        credential: IssuedCredential,
        writer: LedgerWriter,
    ) -> MemberAccount | None:
        """Provision and commit one row.  ``None`` when the row did not produce an account."""
        try:
            account = self.provisioner.provision(row, credential, import_id=writer.ledger_id)
            writer.record(RowResult.successful(row.row_number, row.member_id))
            self.db.commit()
            return account
        except IntegrityError:
            self.db.rollback()
            field_name = self.detector.colliding_field(row) or "member_id"
            logger.info("Member %s collided on %s at insert; skipping", row.member_id, field_name)
            result = RowResult.skipped(row.row_number, [store_duplicate_error(row, field_name)])
        except DataError as exc:
            self.db.rollback()
            logger.warning("Member %s could not be stored: %s", row.member_id, type(exc).__name__)
            result = RowResult.failed(
                row.row_number,
                [_failure(row, ErrorCode.ACCOUNT_CREATION_FAILED, "account could not be stored")],
                row.member_id,
            )
        except OnboardingError as exc:
            self.db.rollback()
            result = RowResult.failed(row.row_number, [_failure(row, exc.code, str(exc))], row.member_id)

        writer.record(result)
        self.db.commit()
        return None

    def _undeliverable(self, channel: Channel, exc: Exception) -> DeliveryOutcome:
        return DeliveryOutcome(
            channel=channel,
            ok=False,
            attempted_at=self.dispatcher.clock(),
            error=f"{channel} message could not be composed: {type(exc).__name__}",
        )

    def _record_deliveries(self, deliveries: dict[Future, MemberAccount]) -> None:
        for future in as_completed(deliveries):
            outcome: DeliveryOutcome = future.result()
            self.dispatcher.record(deliveries[future], outcome)
            self.db.commit()
        deliveries.clear()

    def _abort(
        self,
        writer: LedgerWriter,
        reason: str,
        code: ErrorCode,
        cause: BaseException | None = None,
    ) -> None:
        writer.abort(reason, code=code)
        self.db.commit()
        raise BatchAbortedError(
            f"Import {writer.ledger_id} aborted: {reason}", ledger_id=writer.ledger_id, code=code
        ) from cause

    def _result(self, writer: LedgerWriter) -> BatchResult:
        ledger = writer.ledger
        return BatchResult(
            ledger_id=ledger.id,
            status=ledger.status,
            statistics=ledger_statistics(ledger),
            errors=list(ledger.errors or []),
        )
