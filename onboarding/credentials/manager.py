"""Temporary credential manager.

Issues one high-entropy temporary secret per accepted row, hashes it with
PBKDF2-HMAC-SHA256 and sets a fixed expiry.  The plaintext only lives in
the :class:`IssuedCredential` handed to the dispatcher; it is never
persisted or logged.

Hash format::

    pbkdf2_sha256$<iterations>$<salt>$<hash>    (urlsafe base64, unpadded)

An account holds at most one valid temporary secret.  ``apply`` replaces
the previous one, ``invalidate`` clears it, and a successful
``verify(consume=True)`` stamps ``temp_secret_consumed_at`` so the same
secret cannot be replayed inside its validity window.
"""
from __future__ import annotations

import base64
import logging
import os
import secrets
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Callable

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from onboarding.accounts.status import ActivationStatus, transition
from onboarding.core.errors import ErrorCode, ProvisioningError
from onboarding.db.models import MemberAccount

logger = logging.getLogger(__name__)

HASH_SCHEME = "pbkdf2_sha256"
SYMBOLS = "!@#$%^&*"
CHARACTER_CLASSES: tuple[str, ...] = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    SYMBOLS,
)
MIN_SECRET_LENGTH = 8
_SALT_BYTES = 16
_KEY_BYTES = 32
_MAX_DRAWS = 32

_random = secrets.SystemRandom()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64u_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class VerificationResult(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    NO_SECRET = "no_secret"


@dataclass(slots=True)
class IssuedCredential:
    member_id: str
    plaintext: str = field(repr=False)
    secret_hash: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime


class CredentialManager:
    """Issue, hash, verify and invalidate temporary secrets."""

    def __init__(
        self,
        *,
        ttl_hours: int = 24,
        iterations: int = 310_000,
        length: int = 12,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if length < MIN_SECRET_LENGTH:
            raise ValueError(f"Temporary secrets must be at least {MIN_SECRET_LENGTH} characters")
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.ttl = timedelta(hours=ttl_hours)
        self.iterations = iterations
        self.length = length
        self.clock = clock

    # -- secrets ------------------------------------------------------------

    def generate_secret(self) -> str:
        """One character from every class, the rest from the union, shuffled."""
        chars = [_random.choice(cls) for cls in CHARACTER_CLASSES]
        alphabet = "".join(CHARACTER_CLASSES)
        chars.extend(_random.choice(alphabet) for _ in range(self.length - len(chars)))
        _random.shuffle(chars)
        return "".join(chars)

    def hash_secret(self, plaintext: str) -> str:
        salt = os.urandom(_SALT_BYTES)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=_KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        derived = kdf.derive(plaintext.encode("utf-8"))
        return f"{HASH_SCHEME}${self.iterations}${_b64u_encode(salt)}${_b64u_encode(derived)}"

    @staticmethod
    def check_hash(plaintext: str, encoded: str | None) -> bool:
        """Constant-time comparison of *plaintext* against *encoded*."""
        if not encoded:
            return False
        parts = encoded.split("$")
        if len(parts) != 4 or parts[0] != HASH_SCHEME:
            return False
        try:
            iterations = int(parts[1])
            salt = _b64u_decode(parts[2])
            expected = _b64u_decode(parts[3])
        except ValueError:
            return False
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=len(expected),
            salt=salt,
            iterations=iterations,
        )
        try:
            kdf.verify(plaintext.encode("utf-8"), expected)
        except InvalidKey:
            return False
        return True

    # -- issuance -----------------------------------------------------------

    def expiry_for(self, issued_at: datetime) -> datetime:
        return issued_at + self.ttl

    def issue(
        self,
        member_id: str,
        *,
        now: datetime | None = None,
        exclude: set[str] | None = None,
    ) -> IssuedCredential:
        """Draw a secret not in *exclude*, hash it, stamp the expiry."""
        for _ in range(_MAX_DRAWS):
            plaintext = self.generate_secret()
            if exclude is None or plaintext not in exclude:
                break
        else:
            raise ProvisioningError(
                f"Could not draw a unique temporary secret for member {member_id}",
                code=ErrorCode.PASSWORD_GENERATION_ERROR,
            )
        return self.build(member_id, plaintext, now=now)

    def build(self, member_id: str, plaintext: str, *, now: datetime | None = None) -> IssuedCredential:
        issued_at = now or self.clock()
        return IssuedCredential(
            member_id=member_id,
            plaintext=plaintext,
            secret_hash=self.hash_secret(plaintext),
            issued_at=issued_at,
            expires_at=self.expiry_for(issued_at),
        )

    def batch(self) -> CredentialBatch:
        return CredentialBatch(self)

    # -- account state ------------------------------------------------------

    def is_expired(self, account: MemberAccount, now: datetime | None = None) -> bool:
        if account.temp_secret_expires_at is None:
            return True
        return (now or self.clock()) >= account.temp_secret_expires_at

    def apply(self, account: MemberAccount, credential: IssuedCredential) -> None:
        """Make *credential* the account's only valid temporary secret."""
        account.temp_secret_hash = credential.secret_hash
        account.temp_secret_expires_at = credential.expires_at
        account.temp_secret_consumed_at = None

    def invalidate(self, account: MemberAccount) -> None:
        account.temp_secret_hash = None
        account.temp_secret_expires_at = None
        account.temp_secret_consumed_at = None

    def verify(
        self,
        account: MemberAccount,
        plaintext: str,
        *,
        now: datetime | None = None,
        consume: bool = True,
    ) -> VerificationResult:
        """Check *plaintext* against the account's temporary secret.

        Expiry is detected lazily here: an expired secret on an account
        without a permanent secret moves it to ``token_expired``.  The
        caller commits.
        """
        now = now or self.clock()
        if account.temp_secret_hash is None:
            return VerificationResult.NO_SECRET
        if account.temp_secret_consumed_at is not None:
            return VerificationResult.CONSUMED
        if self.is_expired(account, now):
            if account.permanent_secret_hash is None:
                transition(account, ActivationStatus.TOKEN_EXPIRED)
            logger.info("Temporary secret expired for member %s", account.member_id)
            return VerificationResult.EXPIRED
        if not self.check_hash(plaintext, account.temp_secret_hash):
            return VerificationResult.INVALID
        if consume:
            account.temp_secret_consumed_at = now
        return VerificationResult.VALID


class CredentialBatch:
    """Issues credentials whose plaintexts are pairwise distinct.

    Safe to call from several worker threads at once.
    """

    def __init__(self, manager: CredentialManager) -> None:
        self.manager = manager
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    def issue(self, member_id: str, *, now: datetime | None = None) -> IssuedCredential:
        for _ in range(_MAX_DRAWS):
            plaintext = self.manager.generate_secret()
            with self._lock:
                if plaintext in self._issued:
                    continue
                self._issued.add(plaintext)
            return self.manager.build(member_id, plaintext, now=now)
        raise ProvisioningError(
            f"Could not draw a unique temporary secret for member {member_id}",
            code=ErrorCode.PASSWORD_GENERATION_ERROR,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._issued)
