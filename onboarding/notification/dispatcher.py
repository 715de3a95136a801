"""Notification dispatcher.

Two halves, split so the batch can send from worker threads while every
database write stays on the thread that owns the session:

``deliver(message)``
    Thread-safe, no database access.  Each channel has its own worker
    pool sized to its concurrency cap and a per-call timeout.  Always
    returns a :class:`DeliveryOutcome`; provider exceptions and timeouts
    become ``ok=False``.
``record(account, outcome)``
    Applies one outcome: exactly one sent-at stamp or failure marker on the
    account, one atomic ledger channel counter, one audit event.  A failure
    also stamps the channel's ``last_retry_at``, which starts the backoff
    clock for the first automatic retry.

A failure on one channel never touches the other channel's fields.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from onboarding.accounts.status import status_after_failure, status_after_success, transition
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_EMAIL_SENT, EVENT_NOTIFICATION_FAILED, EVENT_SMS_SENT
from onboarding.core.logging import redact_pii
from onboarding.db.models import MemberAccount
from onboarding.db.repositories import Contact, ImportLedgerRepository
from onboarding.notification.channels import (
    Channel,
    DeliveryOutcome,
    MessageContext,
    NotificationProvider,
    OutboundMessage,
    render_invitation,
)

logger = logging.getLogger(__name__)

_SENT_EVENTS = {Channel.SMS: EVENT_SMS_SENT, Channel.EMAIL: EVENT_EMAIL_SENT}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Deliver invitations on the SMS (mandatory) and email (optional) channels."""

    def __init__(
        self,
        db: Session,
        *,
        sms_provider: NotificationProvider,
        email_provider: NotificationProvider,
        context: MessageContext | None = None,
        ledgers: ImportLedgerRepository | None = None,
        sms_max_concurrency: int = 4,
        email_max_concurrency: int = 4,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.providers: dict[Channel, NotificationProvider] = {
            Channel.SMS: sms_provider,
            Channel.EMAIL: email_provider,
        }
        self.context = context or MessageContext()
        self.ledgers = ledgers or ImportLedgerRepository(db)
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._limits = {
            Channel.SMS: threading.BoundedSemaphore(sms_max_concurrency),
            Channel.EMAIL: threading.BoundedSemaphore(email_max_concurrency),
        }
        self._executors = {
            Channel.SMS: ThreadPoolExecutor(max_workers=sms_max_concurrency, thread_name_prefix="notify-sms"),
            Channel.EMAIL: ThreadPoolExecutor(max_workers=email_max_concurrency, thread_name_prefix="notify-email"),
        }

    def close(self) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> NotificationDispatcher:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- composing ----------------------------------------------------------

    @staticmethod
    def channels_for(contact: Contact) -> list[Channel]:
        """SMS always; email only when the member has an address."""
        return [Channel.SMS, Channel.EMAIL] if contact.email else [Channel.SMS]

    def compose(
        self,
        channel: Channel,
        account: MemberAccount,
        contact: Contact,
        plaintext: str,
    ) -> OutboundMessage:
        recipient = contact.phone_number if channel is Channel.SMS else contact.email
        if not recipient:
            raise ValueError(f"Member {account.member_id} has no {channel} address")
        return render_invitation(
            channel,
            member_id=account.member_id,
            member_name=account.full_name,
            recipient=recipient,
            temporary_secret=plaintext,
            context=self.context,
        )

    # -- sending ------------------------------------------------------------

    def deliver(self, message: OutboundMessage) -> DeliveryOutcome:
        """Send *message* once.  Never raises for provider failures.

        A channel slot is held until the provider call returns, even after
        the caller has given up on it; a stalled provider therefore only
        exhausts its own channel.
        """
        channel = message.channel
        provider = self.providers[channel]
        limit = self._limits[channel]
        deadline = time.monotonic() + self.timeout_seconds
        attempted_at = self.clock()

        if not limit.acquire(timeout=self.timeout_seconds):
            logger.warning("%s channel saturated; member %s not sent", channel, message.member_id)
            return self._timed_out(channel, attempted_at)
        try:
            future = self._executors[channel].submit(provider.send, message)
        except RuntimeError:
            limit.release()
            raise
        future.add_done_callback(lambda _done: limit.release())

        try:
            ref = future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FuturesTimeout:
            logger.warning(
                "%s send timed out for member %s after %.1fs",
                channel, message.member_id, self.timeout_seconds,
            )
            return self._timed_out(channel, attempted_at)
        except Exception as exc:
            logger.warning("%s send failed for member %s: %s", channel, message.member_id, type(exc).__name__)
            return DeliveryOutcome(
                channel=channel,
                ok=False,
                attempted_at=attempted_at,
                error=redact_pii(str(exc)) or type(exc).__name__,
            )
        return DeliveryOutcome(channel=channel, ok=True, attempted_at=attempted_at, provider_ref=ref)

    def _timed_out(self, channel: Channel, attempted_at: datetime) -> DeliveryOutcome:
        return DeliveryOutcome(
            channel=channel,
            ok=False,
            attempted_at=attempted_at,
            error=f"{channel} provider timed out after {self.timeout_seconds:g}s",
        )

    # -- bookkeeping --------------------------------------------------------

    def record(
        self,
        account: MemberAccount,
        outcome: DeliveryOutcome,
        *,
        actor: str = "system",
        event_type: str | None = None,
    ) -> None:
        """Fold *outcome* into the account, its ledger and the audit trail.

        Flushes; the caller commits.
        """
        channel = outcome.channel
        if outcome.ok:
            setattr(account, f"{channel}_sent_at", outcome.attempted_at)
            setattr(account, f"{channel}_last_error", None)
            other_failed = getattr(account, f"{channel.other}_last_error") is not None
            transition(account, status_after_success(account, channel, other_channel_failed=other_failed))
            counter = f"{channel}_sent_count"
            default_event = _SENT_EVENTS[channel]
        else:
            setattr(account, f"{channel}_last_error", outcome.error)
            setattr(account, f"{channel}_last_retry_at", outcome.attempted_at)
            transition(account, status_after_failure(account, channel))
            counter = f"{channel}_failed_count"
            default_event = EVENT_NOTIFICATION_FAILED

        self.db.flush()
        if account.import_id is not None:
            self.ledgers.increment(account.import_id, counter)

        record_event(
            self.db,
            event_type=event_type or default_event,
            actor=actor,
            member_id=account.member_id,
            import_id=account.import_id,
            channel=str(channel),
            outcome="sent" if outcome.ok else "failed",
            detail=outcome.error,
            metadata={"provider_ref": outcome.provider_ref} if outcome.provider_ref else None,
        )

    def send(
        self,
        account: MemberAccount,
        contact: Contact,
        channel: Channel,
        plaintext: str,
        *,
        actor: str = "system",
        event_type: str | None = None,
    ) -> DeliveryOutcome:
        """Compose, deliver and record one channel synchronously."""
        outcome = self.deliver(self.compose(channel, account, contact, plaintext))
        self.record(account, outcome, actor=actor, event_type=event_type)
        return outcome

    def notify(
        self,
        account: MemberAccount,
        contact: Contact,
        plaintext: str,
        *,
        actor: str = "system",
    ) -> dict[Channel, DeliveryOutcome]:
        """Send the invitation on every channel the member has."""
        return {
            channel: self.send(account, contact, channel, plaintext, actor=actor)
            for channel in self.channels_for(contact)
        }
