"""Recovery service.

Reconstructs, for one ledger, which rows produced durable accounts and
which must be reprocessed:

provisioned
    accounts linked to the ledger, plus retained rows whose identity now
    exists anyway (created by another upload or a racing registration),
    flagged ``already_existed``.
outstanding
    retained rows that still have no account and have not been handed to
    a child ledger.

``reprocess`` runs the outstanding rows through the pipeline again into a
new child ledger, so the original ledger's counters are never touched
twice.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from onboarding.accounts.masking import mask_member_id
from onboarding.accounts.status import FAILED_STATUSES, ActivationStatus
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_IMPORT_RECOVERY
from onboarding.db.models import ImportLedger
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository
from onboarding.importing.ledger import LedgerStatus
from onboarding.importing.processor import BatchProcessor, BatchResult
from onboarding.importing.validator import validate_row
from onboarding.normalization.phone_normalizer import DEFAULT_REGION

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProvisionedEntry:
    member_id: str
    activation_status: str
    row_number: int | None = None
    already_existed: bool = False

    def to_dict(self) -> dict:
        return {
            "memberId": mask_member_id(self.member_id),
            "activationStatus": self.activation_status,
            "row": self.row_number,
            "alreadyExisted": self.already_existed,
        }


@dataclass(slots=True)
class OutstandingEntry:
    row_number: int
    member_id: str | None
    reason: str
    data: dict[str, str] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        return {
            "row": self.row_number,
            "memberId": mask_member_id(self.member_id),
            "reason": self.reason,
        }


@dataclass(slots=True)
class RecoveryReport:
    ledger_id: UUID
    ledger_status: str
    provisioned: list[ProvisionedEntry]
    outstanding: list[OutstandingEntry]
    reprocessed_rows: list[int] = field(default_factory=list)
    failed_delivery_members: list[str] = field(default_factory=list)

    @property
    def recoverable(self) -> bool:
        return bool(self.outstanding or self.failed_delivery_members)

    def to_dict(self) -> dict:
        return {
            "ledgerId": str(self.ledger_id),
            "status": self.ledger_status,
            "provisioned": [p.to_dict() for p in self.provisioned],
            "outstanding": [o.to_dict() for o in self.outstanding],
            "reprocessedRows": self.reprocessed_rows,
            "failedDeliveryCount": len(self.failed_delivery_members),
            "canRecover": self.recoverable,
        }


class RecoveryService:
    def __init__(
        self,
        db: Session,
        *,
        accounts: MemberAccountRepository,
        ledgers: ImportLedgerRepository,
        processor_factory: Callable[[], BatchProcessor] | None = None,
        default_region: str = DEFAULT_REGION,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.ledgers = ledgers
        self.processor_factory = processor_factory
        self.default_region = default_region

    def _get_ledger(self, ledger_id: UUID) -> ImportLedger:
        ledger = self.ledgers.get(ledger_id)
        if ledger is None:
            raise KeyError(f"Import ledger {ledger_id} not found")
        return ledger

    def _handed_off(self, ledger: ImportLedger) -> set[int]:
        rows: set[int] = set()
        for child in self.ledgers.children_of(ledger.id):
            rows.update(child.resolved_rows or [])
            rows.update(int(n) for n in (child.retained_rows or {}))
        return rows

    def recover(self, ledger_id: UUID) -> RecoveryReport:
        """Read-only split of the ledger's rows into provisioned and outstanding."""
        ledger = self._get_ledger(ledger_id)
        linked = self.accounts.list_for_import(ledger.id)
        provisioned = [
            ProvisionedEntry(member_id=a.member_id, activation_status=a.activation_status) for a in linked
        ]
        linked_ids = {a.member_id for a in linked}
        failed_rows = set(ledger.resolved_rows or [])
        handed_off = self._handed_off(ledger)

        outstanding: list[OutstandingEntry] = []
        for number, data in self.ledgers.retained_rows_for(ledger).items():
            if number in handed_off:
                continue
            member_row, _errors = validate_row(data, number, default_region=self.default_region)
            if member_row is not None:
                if member_row.member_id in linked_ids:
                    continue
                existing = (
                    self.accounts.get_by_member_id(member_row.member_id)
                    or self.accounts.get_by_phone(member_row.phone_number)
                    or (self.accounts.get_by_email(member_row.email) if member_row.email else None)
                )
                if existing is not None:
                    provisioned.append(
                        ProvisionedEntry(
                            member_id=existing.member_id,
                            activation_status=existing.activation_status,
                            row_number=number,
                            already_existed=True,
                        )
                    )
                    continue
            reason = "failed" if number in failed_rows else "unresolved"
            outstanding.append(
                OutstandingEntry(
                    row_number=number,
                    member_id=(data.get("member_id") or "").strip() or None,
                    reason=reason,
                    data=data,
                )
            )

        failed_delivery = [
            a.member_id for a in linked if ActivationStatus(a.activation_status) in FAILED_STATUSES
        ]
        return RecoveryReport(
            ledger_id=ledger.id,
            ledger_status=ledger.status,
            provisioned=provisioned,
            outstanding=outstanding,
            reprocessed_rows=sorted(handed_off),
            failed_delivery_members=failed_delivery,
        )

    def can_recover(self, ledger_id: UUID) -> bool:
        """True when the ledger exists and has outstanding rows or failed deliveries."""
        try:
            report = self.recover(ledger_id)
        except KeyError:
            return False
        return report.recoverable

    def reprocess(self, ledger_id: UUID, *, operator_id: str, operator_name: str) -> BatchResult:
        """Run the outstanding rows of *ledger_id* into a new child ledger."""
        if self.processor_factory is None:
            raise RuntimeError("RecoveryService was built without a processor factory")

        ledger = self._get_ledger(ledger_id)
        if ledger.status == LedgerStatus.PENDING:
            raise ValueError(f"Import ledger {ledger_id} is still being processed")

        report = self.recover(ledger_id)
        if not report.outstanding:
            raise ValueError(f"Import ledger {ledger_id} has no outstanding rows")

        record_event(
            self.db,
            event_type=EVENT_IMPORT_RECOVERY,
            actor=operator_id,
            import_id=ledger.id,
            outcome="reprocess_started",
            metadata={"rows": [o.row_number for o in report.outstanding]},
        )
        self.db.commit()

        logger.info("Reprocessing %d rows of import %s", len(report.outstanding), ledger.id)
        result = self.processor_factory().process(
            [o.data for o in report.outstanding],
            row_numbers=[o.row_number for o in report.outstanding],
            operator_id=operator_id,
            operator_name=operator_name,
            source_filename=ledger.source_filename,
            parent_ledger_id=ledger.id,
        )
        return result
