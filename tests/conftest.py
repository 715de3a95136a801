import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.core.errors import DeliveryError
from onboarding.core.security import SecurityService, build_security_service
from onboarding.credentials.manager import CredentialManager
from onboarding.db.base import Base
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository
from onboarding.delivery.locks import KeyedLocks
from onboarding.delivery.resend import ResendService
from onboarding.delivery.retry import BackoffPolicy, RetryOrchestrator
from onboarding.importing.processor import BatchProcessor
from onboarding.importing.recovery import RecoveryService
from onboarding.notification.channels import MessageContext, OutboundMessage
from onboarding.notification.dispatcher import NotificationDispatcher

TEST_HASH_ITERATIONS = 1_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeProvider:
    """Records messages; fails the next ``fail_next`` sends or every send."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.sent: list[OutboundMessage] = []
        self.attempts = 0
        self.fail_next = 0
        self.always_fail = False
        self.fail_for: set[str] = set()
        self._lock = threading.Lock()

    def send(self, message: OutboundMessage) -> str:
        with self._lock:
            self.attempts += 1
            if self.always_fail or message.member_id in self.fail_for or self.fail_next > 0:
                if self.fail_next > 0:
                    self.fail_next -= 1
                raise DeliveryError(f"{self.prefix} provider unavailable")
            self.sent.append(message)
            return f"{self.prefix}-{len(self.sent)}"

    def sent_to(self, member_id: str) -> list[OutboundMessage]:
        return [m for m in self.sent if m.member_id == member_id]


@dataclass
class Services:
    db: Session
    clock: FakeClock
    security: SecurityService
    accounts: MemberAccountRepository
    ledgers: ImportLedgerRepository
    credentials: CredentialManager
    provisioner: AccountProvisioner
    sms: FakeProvider
    email: FakeProvider
    dispatcher: NotificationDispatcher
    processor: BatchProcessor
    recovery: RecoveryService
    retry: RetryOrchestrator
    resend: ResendService


@pytest.fixture()
def db_session():
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_services(db_session, clock):
    """Factory wiring every service against the test session and fake providers."""
    dispatchers: list[NotificationDispatcher] = []

    def _make(**overrides) -> Services:
        security = build_security_service("test-salt", overrides.get("fernet_key"))
        accounts = MemberAccountRepository(db_session, security)
        ledgers = ImportLedgerRepository(db_session, security)
        credentials = CredentialManager(iterations=TEST_HASH_ITERATIONS, clock=clock)
        provisioner = AccountProvisioner(db_session, accounts, credentials, clock=clock)
        sms = overrides.get("sms") or FakeProvider("sms")
        email = overrides.get("email") or FakeProvider("email")
        dispatcher = NotificationDispatcher(
            db_session,
            sms_provider=sms,
            email_provider=email,
            context=MessageContext(organization_name="Test Co-op", support_phone="0800", portal_url="https://portal"),
            ledgers=ledgers,
            timeout_seconds=overrides.get("timeout_seconds", 5.0),
            clock=clock,
        )
        dispatchers.append(dispatcher)

        def processor_factory() -> BatchProcessor:
            return BatchProcessor(
                db_session,
                accounts=accounts,
                ledgers=ledgers,
                credentials=credentials,
                provisioner=provisioner,
                dispatcher=dispatcher,
                max_workers=overrides.get("max_workers", 2),
                cancel_event=overrides.get("cancel_event"),
            )

        locks = KeyedLocks()
        return Services(
            db=db_session,
            clock=clock,
            security=security,
            accounts=accounts,
            ledgers=ledgers,
            credentials=credentials,
            provisioner=provisioner,
            sms=sms,
            email=email,
            dispatcher=dispatcher,
            processor=processor_factory(),
            recovery=RecoveryService(
                db_session,
                accounts=accounts,
                ledgers=ledgers,
                processor_factory=processor_factory,
            ),
            retry=RetryOrchestrator(
                db_session,
                accounts=accounts,
                credentials=credentials,
                provisioner=provisioner,
                dispatcher=dispatcher,
                policy=overrides.get("policy") or BackoffPolicy(),
                locks=locks,
                clock=clock,
            ),
            resend=ResendService(
                db_session,
                accounts=accounts,
                credentials=credentials,
                provisioner=provisioner,
                dispatcher=dispatcher,
                locks=locks,
                clock=clock,
            ),
        )

    yield _make
    for dispatcher in dispatchers:
        dispatcher.close()


@pytest.fixture()
def services(make_services) -> Services:
    return make_services()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))

    from onboarding.core.settings import get_settings

    get_settings.cache_clear()

    from onboarding.main import app

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)


@pytest.fixture()
def sms_provider() -> FakeProvider:
    return FakeProvider("sms")


@pytest.fixture()
def email_provider() -> FakeProvider:
    return FakeProvider("email")
