"""Tests for onboarding/notification/dispatcher.py."""
from __future__ import annotations

import threading
import time

import pytest

from onboarding.accounts.status import ActivationStatus
from onboarding.audit.audit_log import get_member_history
from onboarding.core.errors import DeliveryError
from onboarding.db.repositories import Contact
from onboarding.notification.channels import Channel, OutboundMessage
from onboarding.notification.dispatcher import NotificationDispatcher


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _provisioned(services, email: str | None = "alice@example.com"):
    ledger = services.ledgers.create(
        operator_id="op-1", operator_name="Operator", source_filename="members.csv", total_rows=1
    )
    account = services.accounts.create_account(
        member_id="M001",
        full_name="Alice Reyes",
        phone_number="+639171234567",
        email=email,
        import_id=ledger.id,
    )
    services.db.commit()
    return ledger, account


class SlowProvider:
    def __init__(self) -> None:
        self.release = threading.Event()

    def send(self, message: OutboundMessage) -> str:
        self.release.wait(5)
        return "late"


class LeakyProvider:
    def send(self, message: OutboundMessage) -> str:
        raise DeliveryError(f"number {message.recipient} is not reachable")


class CountingProvider:
    def __init__(self) -> None:
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def send(self, message: OutboundMessage) -> str:
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        time.sleep(0.02)
        with self._lock:
            self.in_flight -= 1
        return "ok"


# ===========================================================================
# deliver
# ===========================================================================


class TestDeliver:
    def test_success_returns_provider_ref(self, services):
        _, account = _provisioned(services)
        contact = services.accounts.contact_for(account)
        message = services.dispatcher.compose(Channel.SMS, account, contact, "Temp#Secret1")

        outcome = services.dispatcher.deliver(message)

        assert outcome.ok is True
        assert outcome.provider_ref == "sms-1"
        assert outcome.attempted_at == services.clock.now
        assert services.sms.sent[0].recipient == "+639171234567"

    def test_provider_failure_becomes_outcome(self, services):
        _, account = _provisioned(services)
        services.sms.always_fail = True
        contact = services.accounts.contact_for(account)

        outcome = services.dispatcher.deliver(services.dispatcher.compose(Channel.SMS, account, contact, "x"))

        assert outcome.ok is False
        assert outcome.error == "sms provider unavailable"

    def test_provider_error_text_is_redacted(self, make_services):
        services = make_services(sms=LeakyProvider())
        _, account = _provisioned(services)
        contact = services.accounts.contact_for(account)

        outcome = services.dispatcher.deliver(services.dispatcher.compose(Channel.SMS, account, contact, "x"))

        assert outcome.ok is False
        assert "+639171234567" not in outcome.error
        assert "[REDACTED]" in outcome.error

    def test_slow_provider_times_out(self, make_services):
        slow = SlowProvider()
        services = make_services(sms=slow, timeout_seconds=0.05)
        _, account = _provisioned(services)
        contact = services.accounts.contact_for(account)
        try:
            outcome = services.dispatcher.deliver(services.dispatcher.compose(Channel.SMS, account, contact, "x"))
        finally:
            slow.release.set()

        assert outcome.ok is False
        assert "timed out" in outcome.error

    def test_concurrency_is_capped_per_channel(self, db_session, clock):
        provider = CountingProvider()
        dispatcher = NotificationDispatcher(
            db_session,
            sms_provider=provider,
            email_provider=provider,
            sms_max_concurrency=2,
            clock=clock,
        )
        message = OutboundMessage(channel=Channel.SMS, member_id="M001", recipient="+639171234567", body="hi")
        threads = [threading.Thread(target=dispatcher.deliver, args=(message,)) for _ in range(8)]
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        finally:
            dispatcher.close()

        assert 1 <= provider.peak <= 2

    def test_stalled_sms_provider_does_not_block_email(self, db_session, clock):
        stalled = SlowProvider()
        email = CountingProvider()
        dispatcher = NotificationDispatcher(
            db_session,
            sms_provider=stalled,
            email_provider=email,
            sms_max_concurrency=4,
            email_max_concurrency=4,
            timeout_seconds=0.1,
            clock=clock,
        )
        sms = OutboundMessage(channel=Channel.SMS, member_id="M001", recipient="+639171234567", body="hi")
        mail = OutboundMessage(channel=Channel.EMAIL, member_id="M001", recipient="a@example.com", body="hi")
        try:
            sms_outcomes = [dispatcher.deliver(sms) for _ in range(8)]
            email_outcome = dispatcher.deliver(mail)
        finally:
            stalled.release.set()
            dispatcher.close()

        assert all(not o.ok and "timed out" in o.error for o in sms_outcomes)
        assert email_outcome.ok is True
        assert email_outcome.provider_ref == "ok"

    def test_slot_is_freed_when_stalled_call_returns(self, db_session, clock):
        stalled = SlowProvider()
        dispatcher = NotificationDispatcher(
            db_session,
            sms_provider=stalled,
            email_provider=CountingProvider(),
            sms_max_concurrency=1,
            timeout_seconds=0.1,
            clock=clock,
        )
        message = OutboundMessage(channel=Channel.SMS, member_id="M001", recipient="+639171234567", body="hi")
        try:
            first = dispatcher.deliver(message)
            blocked = dispatcher.deliver(message)
            stalled.release.set()
            time.sleep(0.2)
            after = dispatcher.deliver(message)
        finally:
            stalled.release.set()
            dispatcher.close()

        assert first.ok is False
        assert blocked.ok is False
        assert after.ok is True
        assert after.provider_ref == "late"


# ===========================================================================
# record / notify
# ===========================================================================


class TestRecord:
    def test_success_stamps_sent_at_and_counts(self, services):
        ledger, account = _provisioned(services)
        contact = services.accounts.contact_for(account)

        services.dispatcher.send(account, contact, Channel.SMS, "Temp#Secret1")
        services.db.commit()
        services.db.refresh(ledger)

        assert account.sms_sent_at == services.clock.now
        assert account.sms_last_error is None
        assert ledger.sms_sent_count == 1
        assert ledger.sms_failed_count == 0
        events = get_member_history(services.db, "M001")
        assert [(e.event_type, e.channel, e.outcome) for e in events] == [("sms_sent", "sms", "sent")]

    def test_failure_sets_marker_and_status(self, services):
        ledger, account = _provisioned(services)
        services.sms.always_fail = True
        contact = services.accounts.contact_for(account)

        services.dispatcher.send(account, contact, Channel.SMS, "Temp#Secret1")
        services.db.commit()
        services.db.refresh(ledger)

        assert account.sms_sent_at is None
        assert account.sms_last_error == "sms provider unavailable"
        assert account.sms_last_retry_at == services.clock.now
        assert account.activation_status == ActivationStatus.SMS_FAILED
        assert ledger.sms_failed_count == 1
        events = get_member_history(services.db, "M001")
        assert [(e.event_type, e.outcome) for e in events] == [("notification_failed", "failed")]

    def test_email_failure_leaves_sms_fields_alone(self, services):
        ledger, account = _provisioned(services)
        services.email.always_fail = True
        contact = services.accounts.contact_for(account)

        outcomes = services.dispatcher.notify(account, contact, "Temp#Secret1")
        services.db.commit()
        services.db.refresh(ledger)

        assert outcomes[Channel.SMS].ok is True
        assert outcomes[Channel.EMAIL].ok is False
        assert account.sms_sent_at is not None
        assert account.sms_last_error is None
        assert account.email_last_error == "email provider unavailable"
        assert account.activation_status == ActivationStatus.EMAIL_FAILED
        assert (ledger.sms_sent_count, ledger.email_failed_count) == (1, 1)

    def test_later_success_clears_failure(self, services):
        _, account = _provisioned(services)
        contact = services.accounts.contact_for(account)
        services.sms.fail_next = 1

        services.dispatcher.send(account, contact, Channel.SMS, "x")
        assert account.activation_status == ActivationStatus.SMS_FAILED
        services.dispatcher.send(account, contact, Channel.SMS, "x")

        assert account.activation_status == ActivationStatus.PENDING_ACTIVATION
        assert account.sms_last_error is None

    def test_custom_event_type(self, services):
        _, account = _provisioned(services)
        contact = services.accounts.contact_for(account)
        services.dispatcher.send(account, contact, Channel.SMS, "x", actor="op-1", event_type="resend_invitation")
        services.db.commit()

        events = get_member_history(services.db, "M001")
        assert [(e.event_type, e.actor) for e in events] == [("resend_invitation", "op-1")]


class TestChannels:
    def test_email_only_when_member_has_address(self):
        assert NotificationDispatcher.channels_for(Contact("+639171234567", "a@example.com")) == [
            Channel.SMS,
            Channel.EMAIL,
        ]
        assert NotificationDispatcher.channels_for(Contact("+639171234567", None)) == [Channel.SMS]

    def test_notify_without_email_sends_sms_only(self, services):
        _, account = _provisioned(services, email=None)
        contact = services.accounts.contact_for(account)

        outcomes = services.dispatcher.notify(account, contact, "Temp#Secret1")

        assert list(outcomes) == [Channel.SMS]
        assert services.email.attempts == 0

    def test_compose_without_address_raises(self, services):
        _, account = _provisioned(services, email=None)
        contact = services.accounts.contact_for(account)
        with pytest.raises(ValueError):
            services.dispatcher.compose(Channel.EMAIL, account, contact, "x")
