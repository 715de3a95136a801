import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from onboarding.core.security import build_security_service
from onboarding.db.models import ImportLedger, MemberAccount
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository


def _create(accounts: MemberAccountRepository, member_id: str, phone: str, email: str | None = None, **kwargs):
    return accounts.create_account(
        member_id=member_id,
        full_name=kwargs.pop("full_name", f"Member {member_id}"),
        phone_number=phone,
        email=email,
        **kwargs,
    )


def test_contact_fields_are_encrypted_at_rest_with_a_key(db_session):
    security = build_security_service("test-salt", Fernet.generate_key().decode())
    accounts = MemberAccountRepository(db_session, security)

    account = _create(accounts, "M001", "+639171234567", "alice@example.com")
    db_session.commit()

    stored = db_session.execute(select(MemberAccount.phone_number, MemberAccount.email)).one()
    assert stored.phone_number != "+639171234567"
    assert stored.email != "alice@example.com"

    contact = accounts.contact_for(account)
    assert contact.phone_number == "+639171234567"
    assert contact.email == "alice@example.com"


def test_lookups_use_blind_index(db_session):
    security = build_security_service("test-salt", Fernet.generate_key().decode())
    accounts = MemberAccountRepository(db_session, security)
    _create(accounts, "M001", "+639171234567", "J.Doe@gmail.com")
    db_session.commit()

    assert accounts.get_by_phone("+639171234567").member_id == "M001"
    assert accounts.get_by_email("jdoe@gmail.com").member_id == "M001"
    assert accounts.get_by_email("other@gmail.com") is None
    assert accounts.get_by_member_id("M001") is not None
    assert accounts.get_for_update("M001") is not None
    assert accounts.get_for_update("M999") is None


def test_blind_index_depends_on_tenant_salt():
    assert build_security_service("a").blind_index("+639171234567") != build_security_service("b").blind_index(
        "+639171234567"
    )


def test_search_filters_sorts_and_paginates(db_session):
    accounts = MemberAccountRepository(db_session, build_security_service("test-salt"))
    _create(accounts, "M003", "+639171234503", full_name="Carla Cruz")
    _create(accounts, "M001", "+639171234501", full_name="Alice Reyes")
    _create(accounts, "M002", "+639171234502", full_name="Bob Santos", activation_status="sms_failed")
    db_session.commit()

    rows, total = accounts.search(sort_by="member_id", sort_order="asc", limit=2)
    assert total == 3
    assert [a.member_id for a in rows] == ["M001", "M002"]

    rows, total = accounts.search(sort_by="member_id", sort_order="asc", limit=2, offset=2)
    assert [a.member_id for a in rows] == ["M003"]

    rows, total = accounts.search(status="sms_failed")
    assert total == 1 and rows[0].member_id == "M002"

    rows, total = accounts.search(search="reyes")
    assert [a.member_id for a in rows] == ["M001"]


def test_search_rejects_unknown_sort(db_session):
    accounts = MemberAccountRepository(db_session, build_security_service("test-salt"))
    with pytest.raises(ValueError):
        accounts.search(sort_by="phone_number")
    with pytest.raises(ValueError):
        accounts.search(sort_order="sideways")


def test_ledger_counters_increment_atomically(db_session):
    ledgers = ImportLedgerRepository(db_session)
    ledger = ledgers.create(
        operator_id="op-1",
        operator_name="Operator",
        source_filename="members.csv",
        total_rows=2,
    )
    db_session.commit()

    ledgers.increment(ledger.id, "sms_sent_count")
    ledgers.increment(ledger.id, "sms_sent_count", 2)
    db_session.commit()
    db_session.refresh(ledger)

    assert ledger.sms_sent_count == 3
    assert ledger.email_sent_count == 0


def test_ledger_rejects_unknown_counter(db_session):
    ledgers = ImportLedgerRepository(db_session)
    ledger = ledgers.create(operator_id="op-1", operator_name="Operator", source_filename="m.csv", total_rows=0)
    with pytest.raises(ValueError):
        ledgers.increment(ledger.id, "total_rows")


def test_retained_rows_are_encoded(db_session):
    security = build_security_service("test-salt", Fernet.generate_key().decode())
    ledgers = ImportLedgerRepository(db_session, security)
    row = {"member_id": "M001", "name": "Alice", "phone_number": "+639171234567"}
    ledger = ledgers.create(
        operator_id="op-1",
        operator_name="Operator",
        source_filename="members.csv",
        total_rows=1,
        retained_rows={"1": ledgers.encode_row(row)},
    )
    db_session.commit()

    stored = db_session.execute(select(ImportLedger.retained_rows)).scalar_one()
    assert "+639171234567" not in stored["1"]
    assert ledgers.retained_rows_for(ledger) == {1: row}


def test_history_and_children(db_session):
    ledgers = ImportLedgerRepository(db_session)
    parent = ledgers.create(operator_id="op", operator_name="Op", source_filename="a.csv", total_rows=1)
    child = ledgers.create(
        operator_id="op", operator_name="Op", source_filename="a.csv", total_rows=1, parent_ledger_id=parent.id
    )
    db_session.commit()

    rows, total = ledgers.history(limit=10)
    assert total == 2
    assert {ledger.id for ledger in rows} == {parent.id, child.id}
    assert [c.id for c in ledgers.children_of(parent.id)] == [child.id]
