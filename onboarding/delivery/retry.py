"""Retry orchestration for failed invitation deliveries.

One retry acts on one (member, channel) pair:

1. the account must exist, not be activated, have an address on the
   channel and carry a failure marker for it;
2. the retry count must be below ``max_attempts``, manual retries
   included;
3. automatic retries also wait out the backoff window
   ``min(base_delay * 2**retry_count, max_delay)`` after the last failed
   delivery, the original batch delivery included;
4. a fresh temporary secret replaces the old one, the message is sent
   once, and the outcome is recorded.  Success resets the channel's retry
   count; failure increments it and stamps ``last_retry_at``.

Plaintext secrets are never stored, so a retry cannot resend the original
secret; issuing a new one keeps exactly one secret valid per account.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.orm import Session

from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.accounts.status import ActivationStatus
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_BULK_RETRY, EVENT_RETRY_FAILED, EVENT_RETRY_SUCCESS
from onboarding.credentials.manager import CredentialManager
from onboarding.db.models import MemberAccount
from onboarding.db.repositories import Contact, MemberAccountRepository
from onboarding.delivery.locks import KeyedLocks, member_locks
from onboarding.delivery.outcomes import BulkDeliveryResult, DeliveryStatus, MemberDeliveryOutcome
from onboarding.notification.channels import Channel
from onboarding.notification.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("Backoff needs 0 <= base_delay <= max_delay")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must not be negative")

    def delay(self, retry_count: int) -> float:
        """Seconds to wait before the retry following *retry_count* failures."""
        # Capped before exponentiation so large counts cannot overflow.
        if retry_count >= 64:
            return self.max_delay
        return min(self.base_delay * (2 ** retry_count), self.max_delay)


@dataclass(slots=True)
class RetryRun:
    """Every attempt made by :meth:`RetryOrchestrator.retry_until_exhausted`."""

    attempts: list[MemberDeliveryOutcome] = field(default_factory=list)
    waits: list[float] = field(default_factory=list)

    @property
    def final(self) -> MemberDeliveryOutcome | None:
        return self.attempts[-1] if self.attempts else None


def ineligibility_reason(account: MemberAccount, contact: Contact, channel: Channel) -> str | None:
    if account.activation_status == ActivationStatus.ACTIVATED:
        return "account already activated"
    if channel is Channel.EMAIL and not contact.email:
        return "member has no email address"
    if getattr(account, f"{channel}_last_error") is None:
        return f"no failed {channel} delivery to retry"
    return None


class RetryOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        accounts: MemberAccountRepository,
        credentials: CredentialManager,
        provisioner: AccountProvisioner,
        dispatcher: NotificationDispatcher,
        policy: BackoffPolicy | None = None,
        locks: KeyedLocks = member_locks,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.credentials = credentials
        self.provisioner = provisioner
        self.dispatcher = dispatcher
        self.policy = policy or BackoffPolicy()
        self.locks = locks
        self.clock = clock

    def retry(
        self,
        member_id: str,
        channel: str,
        *,
        manual: bool = False,
        actor: str = "system",
    ) -> MemberDeliveryOutcome:
        """Retry one failed delivery.  Raises ``KeyError`` for an unknown member.

        Commits before releasing the member lock.
        """
        channel = Channel(channel)
        with self.locks.hold(member_id):
            account = self.accounts.get_for_update(member_id)
            if account is None:
                raise KeyError(f"Member {member_id} not found")
            outcome = self._retry_locked(account, channel, manual=manual, actor=actor)
            self.db.commit()
            return outcome

    def _retry_locked(
        self,
        account: MemberAccount,
        channel: Channel,
        *,
        manual: bool,
        actor: str,
    ) -> MemberDeliveryOutcome:
        contact = self.accounts.contact_for(account)
        count = getattr(account, f"{channel}_retry_count") or 0

        def result(status: DeliveryStatus, message: str | None = None, **extra) -> MemberDeliveryOutcome:
            return MemberDeliveryOutcome(
                member_id=account.member_id,
                channel=str(channel),
                status=status,
                retry_count=getattr(account, f"{channel}_retry_count") or 0,
                message=message,
                **extra,
            )

        reason = ineligibility_reason(account, contact, channel)
        if reason is not None:
            return result(DeliveryStatus.INELIGIBLE, reason)

        if count >= self.policy.max_attempts:
            logger.info("Member %s %s: retry limit of %d reached", account.member_id, channel, count)
            return result(
                DeliveryStatus.MAX_RETRIES_EXCEEDED,
                f"maximum of {self.policy.max_attempts} retries reached",
            )

        now = self.clock()
        last = getattr(account, f"{channel}_last_retry_at")
        if not manual and last is not None:
            ready_at = last + timedelta(seconds=self.policy.delay(count))
            if now < ready_at:
                wait = (ready_at - now).total_seconds()
                return result(DeliveryStatus.BACKOFF_ACTIVE, f"next retry in {wait:.1f}s", wait_seconds=wait)

        credential = self.credentials.issue(account.member_id, now=now)
        self.provisioner.reissue(account, credential)
        message = self.dispatcher.compose(channel, account, contact, credential.plaintext)
        delivery = self.dispatcher.deliver(message)
        self.dispatcher.record(
            account,
            delivery,
            actor=actor,
            event_type=EVENT_RETRY_SUCCESS if delivery.ok else EVENT_RETRY_FAILED,
        )

        if delivery.ok:
            setattr(account, f"{channel}_retry_count", 0)
            setattr(account, f"{channel}_last_retry_at", None)
            status = DeliveryStatus.SUCCEEDED
        else:
            setattr(account, f"{channel}_retry_count", count + 1)
            setattr(account, f"{channel}_last_retry_at", now)
            status = DeliveryStatus.FAILED
        self.db.flush()

        logger.info(
            "%s retry of %s for member %s: %s",
            "Manual" if manual else "Automatic", channel, account.member_id, status,
        )
        return result(status, delivery.error, sent_at=delivery.attempted_at if delivery.ok else None)

    def retry_until_exhausted(
        self,
        member_id: str,
        channel: str,
        *,
        actor: str = "system",
        sleep: Callable[[float], None] = time.sleep,
    ) -> RetryRun:
        """Retry automatically, waiting out each backoff, until success or the limit."""
        run = RetryRun()
        while True:
            outcome = self.retry(member_id, channel, actor=actor)
            if outcome.status is DeliveryStatus.BACKOFF_ACTIVE:
                run.waits.append(outcome.wait_seconds or 0.0)
                sleep(outcome.wait_seconds or 0.0)
                continue
            run.attempts.append(outcome)
            if outcome.status is not DeliveryStatus.FAILED:
                return run

    def bulk_retry(
        self,
        member_ids: list[str],
        channel: str,
        *,
        actor: str = "system",
    ) -> BulkDeliveryResult:
        """Manual retry for each member in order.  Unknown members are skipped."""
        channel = Channel(channel)
        bulk = BulkDeliveryResult()
        for member_id in dict.fromkeys(member_ids):
            try:
                bulk.outcomes.append(self.retry(member_id, channel, manual=True, actor=actor))
            except KeyError:
                bulk.outcomes.append(
                    MemberDeliveryOutcome(
                        member_id=member_id,
                        channel=str(channel),
                        status=DeliveryStatus.NOT_FOUND,
                        message="member not found",
                    )
                )

        record_event(
            self.db,
            event_type=EVENT_BULK_RETRY,
            actor=actor,
            channel=str(channel),
            outcome="completed",
            metadata=bulk.totals,
        )
        self.db.commit()
        return bulk

    def retry_status(self, member_id: str) -> dict:
        """Per-channel retry bookkeeping of one member.  Raises ``KeyError``."""
        account = self.accounts.get_by_member_id(member_id)
        if account is None:
            raise KeyError(f"Member {member_id} not found")
        contact = self.accounts.contact_for(account)
        now = self.clock()

        channels = {}
        for channel in Channel:
            count = getattr(account, f"{channel}_retry_count") or 0
            last = getattr(account, f"{channel}_last_retry_at")
            next_at = None
            if last is not None and count < self.policy.max_attempts:
                next_at = last + timedelta(seconds=self.policy.delay(count))
            channels[str(channel)] = {
                "retryCount": count,
                "activationStatus": account.activation_status,
                "lastRetryAt": last.isoformat() if last else None,
                "lastError": getattr(account, f"{channel}_last_error"),
                "nextRetryAt": next_at.isoformat() if next_at else None,
                "canRetry": ineligibility_reason(account, contact, channel) is None
                and count < self.policy.max_attempts,
                "backoffActive": next_at is not None and now < next_at,
            }
        return {
            "memberId": account.member_id,
            "activationStatus": account.activation_status,
            "maxRetries": self.policy.max_attempts,
            "channels": channels,
        }
