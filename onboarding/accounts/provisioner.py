"""Account provisioner.

Creates member accounts in ``pending_activation`` linked to their import
ledger, swaps temporary secrets on retry/resend, and implements the
activation primitive used by the (external) activation flow.

The unique constraints on ``member_accounts`` are the final arbiter of
identity uniqueness: ``provision`` lets ``IntegrityError`` propagate and
the batch turns it into an ordinary duplicate row.
"""
from __future__ import annotations

import logging
import string
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from onboarding.accounts.status import ActivationStatus, transition
from onboarding.audit.audit_log import record_event
from onboarding.audit.events import EVENT_ACCOUNT_ACTIVATED
from onboarding.credentials.manager import (
    MIN_SECRET_LENGTH,
    SYMBOLS,
    CredentialManager,
    IssuedCredential,
    VerificationResult,
)
from onboarding.db.models import MemberAccount
from onboarding.db.repositories import MemberAccountRepository
from onboarding.importing.validator import MemberRow

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_permanent_secret(secret: str) -> None:
    """Raise ``ValueError`` unless *secret* meets the permanent-password policy."""
    if len(secret) < MIN_SECRET_LENGTH:
        raise ValueError(f"Password must be at least {MIN_SECRET_LENGTH} characters")
    required = (
        (string.ascii_uppercase, "an uppercase letter"),
        (string.ascii_lowercase, "a lowercase letter"),
        (string.digits, "a number"),
        (SYMBOLS, "a special character"),
    )
    for alphabet, label in required:
        if not any(c in alphabet for c in secret):
            raise ValueError(f"Password must include {label}")


class AccountProvisioner:
    """Persist accounts and drive their credential-related transitions."""

    def __init__(
        self,
        db: Session,
        accounts: MemberAccountRepository,
        credentials: CredentialManager,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.credentials = credentials
        self.clock = clock

    def provision(
        self,
        row: MemberRow,
        credential: IssuedCredential,
        *,
        import_id: UUID | None,
    ) -> MemberAccount:
        """Insert the account for *row*.  Flushes; the caller commits."""
        account = self.accounts.create_account(
            member_id=row.member_id,
            full_name=row.full_name,
            phone_number=row.phone_number,
            email=row.email,
            temp_secret_hash=credential.secret_hash,
            temp_secret_expires_at=credential.expires_at,
            activation_status=ActivationStatus.PENDING_ACTIVATION.value,
            import_id=import_id,
        )
        logger.info("Provisioned member %s for import %s", row.member_id, import_id)
        return account

    def reissue(self, account: MemberAccount, credential: IssuedCredential) -> None:
        """Replace the account's temporary secret with *credential*.

        The previous secret stops validating immediately.  An account whose
        secret had expired goes back to ``pending_activation``.
        """
        if account.activation_status == ActivationStatus.ACTIVATED:
            raise ValueError(f"Member {account.member_id} is already activated")
        self.credentials.invalidate(account)
        self.credentials.apply(account, credential)
        if account.activation_status == ActivationStatus.TOKEN_EXPIRED:
            transition(account, ActivationStatus.PENDING_ACTIVATION)
        self.db.flush()

    def activate(
        self,
        account: MemberAccount,
        temporary_secret: str,
        new_secret: str,
        *,
        actor: str = "member",
        now: datetime | None = None,
    ) -> VerificationResult:
        """Exchange a valid temporary secret for a permanent one.

        Returns the verification result; the account is only changed to
        ``activated`` when it is ``VALID``.  A weak *new_secret* raises
        ``ValueError`` before the temporary secret is checked.
        """
        check_permanent_secret(new_secret)
        now = now or self.clock()

        result = self.credentials.verify(account, temporary_secret, now=now, consume=True)
        if result is not VerificationResult.VALID:
            self.db.flush()
            logger.info("Activation refused for member %s: %s", account.member_id, result)
            return result

        account.permanent_secret_hash = self.credentials.hash_secret(new_secret)
        account.last_rotation_at = now
        account.temp_secret_hash = None
        account.temp_secret_expires_at = None
        transition(account, ActivationStatus.ACTIVATED)
        account.activated_at = now
        self.db.flush()

        record_event(
            self.db,
            event_type=EVENT_ACCOUNT_ACTIVATED,
            actor=actor,
            member_id=account.member_id,
            import_id=account.import_id,
            outcome="activated",
        )
        return result
