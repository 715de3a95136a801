"""Invitation resend.

A resend is an operator-initiated fresh invitation: a new temporary secret
replaces the old one (which stops validating immediately), the channel's
retry bookkeeping starts over and the message is sent once.  Unlike a
retry it does not require an earlier failure.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.accounts.status import ActivationStatus
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_BULK_RESEND, EVENT_RESEND_INVITATION
from onboarding.credentials.manager import CredentialManager
from onboarding.db.repositories import MemberAccountRepository
from onboarding.delivery.locks import KeyedLocks, member_locks
from onboarding.delivery.outcomes import BulkDeliveryResult, DeliveryStatus, MemberDeliveryOutcome
from onboarding.notification.channels import Channel
from onboarding.notification.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResendService:
    def __init__(
        self,
        db: Session,
        *,
        accounts: MemberAccountRepository,
        credentials: CredentialManager,
        provisioner: AccountProvisioner,
        dispatcher: NotificationDispatcher,
        locks: KeyedLocks = member_locks,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.credentials = credentials
        self.provisioner = provisioner
        self.dispatcher = dispatcher
        self.locks = locks
        self.clock = clock

    def resend(self, member_id: str, channel: str = Channel.SMS, *, actor: str = "system") -> MemberDeliveryOutcome:
        """Send a fresh invitation on *channel*.  Raises ``KeyError`` for an unknown member."""
        channel = Channel(channel)
        with self.locks.hold(member_id):
            account = self.accounts.get_for_update(member_id)
            if account is None:
                raise KeyError(f"Member {member_id} not found")
            contact = self.accounts.contact_for(account)

            reason = None
            if account.activation_status == ActivationStatus.ACTIVATED:
                reason = "account already activated"
            elif channel is Channel.EMAIL and not contact.email:
                reason = "member has no email address"
            if reason is not None:
                return MemberDeliveryOutcome(
                    member_id=member_id,
                    channel=str(channel),
                    status=DeliveryStatus.INELIGIBLE,
                    retry_count=getattr(account, f"{channel}_retry_count") or 0,
                    message=reason,
                )

            credential = self.credentials.issue(member_id, now=self.clock())
            self.provisioner.reissue(account, credential)
            setattr(account, f"{channel}_retry_count", 0)
            setattr(account, f"{channel}_last_retry_at", None)

            delivery = self.dispatcher.deliver(
                self.dispatcher.compose(channel, account, contact, credential.plaintext)
            )
            self.dispatcher.record(account, delivery, actor=actor, event_type=EVENT_RESEND_INVITATION)
            self.db.commit()

        logger.info("Resent %s invitation to member %s: %s", channel, member_id, "sent" if delivery.ok else "failed")
        return MemberDeliveryOutcome(
            member_id=member_id,
            channel=str(channel),
            status=DeliveryStatus.SUCCEEDED if delivery.ok else DeliveryStatus.FAILED,
            message=delivery.error,
            sent_at=delivery.attempted_at if delivery.ok else None,
        )

    def bulk_resend(
        self,
        member_ids: list[str],
        channel: str = Channel.SMS,
        *,
        actor: str = "system",
    ) -> BulkDeliveryResult:
        channel = Channel(channel)
        bulk = BulkDeliveryResult()
        for member_id in dict.fromkeys(member_ids):
            try:
                bulk.outcomes.append(self.resend(member_id, channel, actor=actor))
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
            event_type=EVENT_BULK_RESEND,
            actor=actor,
            channel=str(channel),
            outcome="completed",
            metadata=bulk.totals,
        )
        self.db.commit()
        return bulk
