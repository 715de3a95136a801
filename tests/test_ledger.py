"""Tests for onboarding/importing/ledger.py."""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from onboarding.core.errors import ErrorCode
from onboarding.importing.ledger import LedgerStatus, LedgerWriter, RowResult
from onboarding.importing.validator import RowValidationError

ROWS = {
    1: {"member_id": "M001", "name": "Alice", "phone_number": "+639171234501"},
    2: {"member_id": "M002", "name": "Bob", "phone_number": "+639171234502"},
    3: {"member_id": "M003", "name": "Cy", "phone_number": "bad"},
}


def _open(services, rows=None) -> LedgerWriter:
    writer = LedgerWriter.open(
        services.db,
        services.ledgers,
        operator_id="op-1",
        operator_name="Operator",
        source_filename="members.csv",
        rows=rows or ROWS,
    )
    services.db.commit()
    return writer


def _error(row_number: int) -> RowValidationError:
    return RowValidationError(row_number=row_number, field="phone_number", value="bad", reason="invalid")


class TestLedgerWriter:
    def test_open_retains_every_row(self, services):
        writer = _open(services)
        ledger = writer.ledger

        assert ledger.status == LedgerStatus.PENDING
        assert ledger.total_rows == 3
        assert services.ledgers.retained_rows_for(ledger) == ROWS

    def test_counters_partition_rows(self, services):
        writer = _open(services)
        writer.record(RowResult.successful(1, "M001"))
        writer.record(RowResult.failed(2, [_error(2)], "M002"))
        writer.record(RowResult.skipped(3, [_error(3)]))

        ledger = writer.finalize()
        services.db.commit()

        assert ledger.status == LedgerStatus.COMPLETED
        assert (ledger.successful_rows, ledger.failed_rows, ledger.skipped_rows) == (1, 1, 1)
        assert ledger.completed_at is not None
        assert ledger.error_summary == "1 failed and 1 skipped of 3 rows"

    def test_repeat_row_is_ignored(self, services):
        writer = _open(services)
        assert writer.record(RowResult.successful(1, "M001")) is True
        assert writer.record(RowResult.successful(1, "M001")) is False
        assert writer.record(RowResult.skipped(1, [_error(1)])) is False

        assert writer.statistics()["successful"] == 1
        assert writer.statistics()["skipped"] == 0

    def test_errors_kept_in_arrival_order(self, services):
        writer = _open(services)
        writer.record(RowResult.skipped(3, [_error(3)]))
        writer.record(RowResult.skipped(1, [_error(1)]))
        assert [e["row"] for e in writer.ledger.errors] == [3, 1]

    def test_failed_rows_stay_retained(self, services):
        writer = _open(services)
        writer.record(RowResult.successful(1, "M001"))
        writer.record(RowResult.failed(2, [_error(2)], "M002"))
        writer.record(RowResult.skipped(3, [_error(3)]))
        services.db.commit()

        assert list(services.ledgers.retained_rows_for(writer.ledger)) == [2]

    def test_unknown_row_rejected(self, services):
        writer = _open(services)
        with pytest.raises(ValueError):
            writer.record(RowResult.successful(9, "M009"))

    def test_finalize_requires_every_row(self, services):
        writer = _open(services)
        writer.record(RowResult.successful(1, "M001"))
        with pytest.raises(ValueError, match="unresolved"):
            writer.finalize()
        assert writer.ledger.status == LedgerStatus.PENDING

    def test_abort_marks_failed_and_keeps_unresolved_rows(self, services):
        writer = _open(services)
        writer.record(RowResult.successful(1, "M001"))
        ledger = writer.abort("store unavailable", code=ErrorCode.DATABASE_ERROR)
        services.db.commit()

        assert ledger.status == LedgerStatus.FAILED
        assert ledger.error_summary == "DATABASE_ERROR: store unavailable"
        assert sorted(services.ledgers.retained_rows_for(ledger)) == [2, 3]

    def test_no_rows_accepted_after_finalize(self, services):
        writer = _open(services, rows={1: ROWS[1]})
        writer.record(RowResult.successful(1, "M001"))
        writer.finalize()
        with pytest.raises(ValueError):
            writer.record(RowResult.successful(1, "M001"))

    def test_reopened_writer_remembers_resolved_rows(self, services):
        writer = _open(services)
        writer.record(RowResult.successful(1, "M001"))
        services.db.commit()

        again = LedgerWriter(services.db, writer.ledger, services.ledgers)
        assert again.resolved_rows == frozenset({1})
        assert again.record(RowResult.successful(1, "M001")) is False


# ===========================================================================
# Concurrent recording
# ===========================================================================


def _outcome(n: int) -> RowResult:
    if n % 3 == 0:
        return RowResult.skipped(n, [_error(n)])
    if n % 5 == 0:
        return RowResult.failed(n, [_error(n)], f"M{n:03d}")
    return RowResult.successful(n, f"M{n:03d}")


class TestConcurrentRecording:
    def test_parallel_results_are_counted_once(self, services):
        rows = {
            n: {"member_id": f"M{n:03d}", "name": f"Member {n}", "phone_number": f"+6391712345{n:02d}"}
            for n in range(1, 41)
        }
        writer = _open(services, rows=rows)

        def record_all() -> int:
            return sum(1 for n in rows if writer.record(_outcome(n)))

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(record_all) for _ in range(4)]
            accepted = sum(f.result() for f in futures)

        ledger = writer.finalize()
        services.db.commit()

        assert accepted == 40
        assert (ledger.successful_rows, ledger.failed_rows, ledger.skipped_rows) == (21, 6, 13)
        assert len(ledger.errors) == 19
        assert sorted(services.ledgers.retained_rows_for(ledger)) == [5, 10, 20, 25, 35, 40]

    def test_parallel_channel_increments_are_not_lost(self, services):
        writer = _open(services)
        lock = threading.Lock()

        def bump() -> None:
            for _ in range(25):
                with lock:
                    services.ledgers.increment(writer.ledger_id, "sms_sent_count")

        with ThreadPoolExecutor(max_workers=4) as pool:
            for future in [pool.submit(bump) for _ in range(4)]:
                future.result()
        services.db.commit()
        services.db.refresh(writer.ledger)

        assert writer.ledger.sms_sent_count == 100
