"""FastAPI dependencies: database session, operator identity and service factories."""
from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from onboarding.access.roles import VALID_ROLES, has_permission, normalize_role
from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.core.security import SecurityService, build_security_service
from onboarding.core.settings import get_settings
from onboarding.credentials.manager import CredentialManager
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository
from onboarding.db.session import get_session_factory
from onboarding.delivery.resend import ResendService
from onboarding.delivery.retry import BackoffPolicy, RetryOrchestrator
from onboarding.importing.processor import BatchProcessor
from onboarding.importing.recovery import RecoveryService
from onboarding.notification.channels import MessageContext, NotificationProvider
from onboarding.notification.dispatcher import NotificationDispatcher
from onboarding.notification.email_sender import LoggingEmailSender, SmtpEmailSender
from onboarding.notification.sms_sender import LoggingSmsSender, TwilioSmsSender


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Operator:
    operator_id: str
    name: str
    role: str


def get_operator(
    x_operator_id: str | None = Header(default=None),
    x_operator_name: str | None = Header(default=None),
    x_operator_role: str | None = Header(default=None),
) -> Operator:
    """Operator identity as set by the upstream gateway."""
    if not x_operator_id or not x_operator_id.strip():
        raise HTTPException(status_code=401, detail="Operator identity required")
    role = normalize_role(x_operator_role)
    if role not in VALID_ROLES:
        raise HTTPException(status_code=403, detail="Unknown operator role")
    operator_id = x_operator_id.strip()
    return Operator(operator_id=operator_id, name=(x_operator_name or operator_id).strip(), role=role)


def require_permission(permission: str):
    """Dependency that admits operators whose role grants *permission*."""

    def dependency(operator: Operator = Depends(get_operator)) -> Operator:
        if not has_permission(operator.role, permission):
            raise HTTPException(status_code=403, detail=f"Role {operator.role!r} lacks {permission}")
        return operator

    return dependency


require_admin = require_permission("imports:write")


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_security() -> SecurityService:
    settings = get_settings()
    return build_security_service(settings.tenant_salt, settings.fernet_key)


def get_credential_manager() -> CredentialManager:
    settings = get_settings()
    return CredentialManager(
        ttl_hours=settings.credential_ttl_hours,
        iterations=settings.credential_hash_iterations,
        length=settings.temp_secret_length,
    )


def get_member_repository(
    db: Session = Depends(get_db),
    security: SecurityService = Depends(get_security),
) -> MemberAccountRepository:
    return MemberAccountRepository(db, security)


def get_ledger_repository(
    db: Session = Depends(get_db),
    security: SecurityService = Depends(get_security),
) -> ImportLedgerRepository:
    return ImportLedgerRepository(db, security)


def get_sms_provider() -> NotificationProvider:
    """Twilio when fully configured, otherwise a provider that only logs."""
    settings = get_settings()
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number:
        return TwilioSmsSender(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number,
        )
    return LoggingSmsSender()


def get_email_provider() -> NotificationProvider:
    settings = get_settings()
    if settings.smtp_host:
        return SmtpEmailSender(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            sender=settings.smtp_sender,
            timeout=settings.send_timeout_seconds,
        )
    return LoggingEmailSender()


def get_dispatcher(
    db: Session = Depends(get_db),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
    sms_provider: NotificationProvider = Depends(get_sms_provider),
    email_provider: NotificationProvider = Depends(get_email_provider),
) -> Generator[NotificationDispatcher, None, None]:
    settings = get_settings()
    dispatcher = NotificationDispatcher(
        db,
        sms_provider=sms_provider,
        email_provider=email_provider,
        context=MessageContext(
            organization_name=settings.organization_name,
            support_phone=settings.support_phone,
            portal_url=settings.portal_url,
            expiry_hours=settings.credential_ttl_hours,
        ),
        ledgers=ledgers,
        sms_max_concurrency=settings.sms_max_concurrency,
        email_max_concurrency=settings.email_max_concurrency,
        timeout_seconds=settings.send_timeout_seconds,
    )
    try:
        yield dispatcher
    finally:
        dispatcher.close()


def get_provisioner(
    db: Session = Depends(get_db),
    accounts: MemberAccountRepository = Depends(get_member_repository),
    credentials: CredentialManager = Depends(get_credential_manager),
) -> AccountProvisioner:
    return AccountProvisioner(db, accounts, credentials)


def get_batch_processor(
    db: Session = Depends(get_db),
    accounts: MemberAccountRepository = Depends(get_member_repository),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
    credentials: CredentialManager = Depends(get_credential_manager),
    provisioner: AccountProvisioner = Depends(get_provisioner),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> BatchProcessor:
    settings = get_settings()
    return BatchProcessor(
        db,
        accounts=accounts,
        ledgers=ledgers,
        credentials=credentials,
        provisioner=provisioner,
        dispatcher=dispatcher,
        max_workers=settings.import_max_workers,
        default_region=settings.default_phone_region,
    )


def get_recovery_service(
    db: Session = Depends(get_db),
    accounts: MemberAccountRepository = Depends(get_member_repository),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
    processor: BatchProcessor = Depends(get_batch_processor),
) -> RecoveryService:
    return RecoveryService(
        db,
        accounts=accounts,
        ledgers=ledgers,
        processor_factory=lambda: processor,
        default_region=get_settings().default_phone_region,
    )


def get_retry_orchestrator(
    db: Session = Depends(get_db),
    accounts: MemberAccountRepository = Depends(get_member_repository),
    credentials: CredentialManager = Depends(get_credential_manager),
    provisioner: AccountProvisioner = Depends(get_provisioner),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> RetryOrchestrator:
    settings = get_settings()
    return RetryOrchestrator(
        db,
        accounts=accounts,
        credentials=credentials,
        provisioner=provisioner,
        dispatcher=dispatcher,
        policy=BackoffPolicy(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            max_attempts=settings.retry_max_attempts,
        ),
    )


def get_resend_service(
    db: Session = Depends(get_db),
    accounts: MemberAccountRepository = Depends(get_member_repository),
    credentials: CredentialManager = Depends(get_credential_manager),
    provisioner: AccountProvisioner = Depends(get_provisioner),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ResendService:
    return ResendService(
        db,
        accounts=accounts,
        credentials=credentials,
        provisioner=provisioner,
        dispatcher=dispatcher,
    )
