"""Tests for onboarding/importing/recovery.py."""
from __future__ import annotations

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from onboarding.core.errors import BatchAbortedError
from onboarding.importing.ledger import LedgerStatus, LedgerWriter


def _row(n: int, **overrides) -> dict[str, str]:
    row = {
        "member_id": f"M{n:03d}",
        "name": f"Member {n}",
        "phone_number": f"+6391712345{n:02d}",
        "email": f"member{n}@example.com",
    }
    row.update(overrides)
    return row


def _aborted_import(services, monkeypatch, rows, fail_from: int):
    """Run *rows* through the pipeline with the store failing from row *fail_from* on."""
    original = services.provisioner.provision

    def flaky(row, credential, *, import_id):
        if row.row_number >= fail_from:
            raise OperationalError("INSERT INTO member_accounts", {}, Exception("connection lost"))
        return original(row, credential, import_id=import_id)

    monkeypatch.setattr(services.provisioner, "provision", flaky)
    with pytest.raises(BatchAbortedError) as exc_info:
        services.processor.process(rows, operator_id="op-1", operator_name="Operator", source_filename="m.csv")
    monkeypatch.undo()
    return exc_info.value.ledger_id


class TestRecover:
    def test_splits_provisioned_and_outstanding(self, services, monkeypatch):
        ledger_id = _aborted_import(services, monkeypatch, [_row(1), _row(2), _row(3)], fail_from=2)

        report = services.recovery.recover(ledger_id)

        assert report.ledger_status == LedgerStatus.FAILED
        assert [p.member_id for p in report.provisioned] == ["M001"]
        assert [(o.row_number, o.reason) for o in report.outstanding] == [(2, "unresolved"), (3, "unresolved")]
        assert report.recoverable is True
        payload = report.to_dict()
        assert payload["outstanding"][0]["memberId"] == "M002"
        assert "phone_number" not in payload["outstanding"][0]

    def test_identity_created_elsewhere_counts_as_provisioned(self, services, monkeypatch):
        ledger_id = _aborted_import(services, monkeypatch, [_row(1), _row(2)], fail_from=2)
        services.processor.process([_row(2)], operator_id="op-2", operator_name="Other", source_filename="b.csv")

        report = services.recovery.recover(ledger_id)

        existed = [p for p in report.provisioned if p.already_existed]
        assert [(p.member_id, p.row_number) for p in existed] == [("M002", 2)]
        assert report.outstanding == []

    def test_completed_import_without_failures_is_not_recoverable(self, services):
        result = services.processor.process(
            [_row(1)], operator_id="op-1", operator_name="Operator", source_filename="m.csv"
        )
        assert services.recovery.can_recover(result.ledger_id) is False

    def test_failed_deliveries_make_import_recoverable(self, services):
        services.sms.always_fail = True
        result = services.processor.process(
            [_row(1)], operator_id="op-1", operator_name="Operator", source_filename="m.csv"
        )
        report = services.recovery.recover(result.ledger_id)
        assert report.outstanding == []
        assert report.failed_delivery_members == ["M001"]
        assert services.recovery.can_recover(result.ledger_id) is True

    def test_unknown_ledger(self, services):
        with pytest.raises(KeyError):
            services.recovery.recover(uuid.uuid4())
        assert services.recovery.can_recover(uuid.uuid4()) is False


class TestReprocess:
    def test_outstanding_rows_go_to_child_ledger(self, services, monkeypatch):
        ledger_id = _aborted_import(services, monkeypatch, [_row(1), _row(2), _row(3)], fail_from=2)

        result = services.recovery.reprocess(ledger_id, operator_id="op-1", operator_name="Operator")

        assert result.status == LedgerStatus.COMPLETED
        assert result.statistics["total"] == 2
        assert result.statistics["successful"] == 2
        child = services.ledgers.get(result.ledger_id)
        assert child.parent_ledger_id == ledger_id
        assert sorted(child.resolved_rows) == [2, 3]

        parent = services.ledgers.get(ledger_id)
        services.db.refresh(parent)
        assert parent.successful_rows == 1
        assert parent.status == LedgerStatus.FAILED

        report = services.recovery.recover(ledger_id)
        assert report.outstanding == []
        assert report.reprocessed_rows == [2, 3]

    def test_nothing_to_reprocess(self, services):
        result = services.processor.process(
            [_row(1)], operator_id="op-1", operator_name="Operator", source_filename="m.csv"
        )
        with pytest.raises(ValueError, match="no outstanding rows"):
            services.recovery.reprocess(result.ledger_id, operator_id="op-1", operator_name="Operator")

    def test_pending_ledger_cannot_be_reprocessed(self, services):
        writer = LedgerWriter.open(
            services.db,
            services.ledgers,
            operator_id="op-1",
            operator_name="Operator",
            source_filename="m.csv",
            rows={1: _row(1)},
        )
        services.db.commit()
        with pytest.raises(ValueError, match="still being processed"):
            services.recovery.reprocess(writer.ledger_id, operator_id="op-1", operator_name="Operator")

    def test_unknown_ledger(self, services):
        with pytest.raises(KeyError):
            services.recovery.reprocess(uuid.uuid4(), operator_id="op-1", operator_name="Operator")
