"""Error taxonomy for the onboarding pipeline.

Error categories
----------------
FILE          : malformed file, missing/unknown columns; fatal, no ledger
VALIDATION    : a row field is missing or malformed; row skipped
DUPLICATE     : identity repeated in the file or already stored; row skipped
PROVISIONING  : store write failed for the row; row counted as failed
DELIVERY      : a channel send failed; account kept, retry-eligible
INFRASTRUCTURE: store unavailable mid-batch; batch aborted, ledger failed

Expiry of a temporary secret is a lazily detected state, not an error.
"""
from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    # File level
    CSV_FILE_NOT_PROVIDED = "CSV_FILE_NOT_PROVIDED"
    CSV_INVALID_FORMAT = "CSV_INVALID_FORMAT"
    CSV_PARSE_ERROR = "CSV_PARSE_ERROR"
    CSV_EMPTY = "CSV_EMPTY"
    CSV_MISSING_COLUMNS = "CSV_MISSING_COLUMNS"
    CSV_UNKNOWN_COLUMNS = "CSV_UNKNOWN_COLUMNS"
    CSV_FILE_TOO_LARGE = "CSV_FILE_TOO_LARGE"

    # Row level
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FIELD = "INVALID_FIELD"
    DUPLICATE_IN_FILE = "DUPLICATE_IN_FILE"
    DUPLICATE_MEMBER_ID = "DUPLICATE_MEMBER_ID"
    DUPLICATE_PHONE_NUMBER = "DUPLICATE_PHONE_NUMBER"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    PASSWORD_GENERATION_ERROR = "PASSWORD_GENERATION_ERROR"
    ACCOUNT_CREATION_FAILED = "ACCOUNT_CREATION_FAILED"

    # Delivery
    SMS_SEND_FAILED = "SMS_SEND_FAILED"
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"

    # Batch
    OPERATION_INTERRUPTED = "OPERATION_INTERRUPTED"
    DATABASE_ERROR = "DATABASE_ERROR"


class RowErrorKind(StrEnum):
    VALIDATION = "validation"
    DUPLICATE_IN_FILE = "duplicate_in_file"
    DUPLICATE_IN_STORE = "duplicate_in_store"
    PROVISIONING = "provisioning"
    DELIVERY = "delivery"


class OnboardingError(Exception):
    """Root of every error raised by the onboarding package."""

    code: ErrorCode = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class FileValidationError(OnboardingError):
    """The uploaded file cannot be processed at all."""

    code = ErrorCode.CSV_PARSE_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        missing_columns: list[str] | None = None,
        unknown_columns: list[str] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.missing_columns = missing_columns or []
        self.unknown_columns = unknown_columns or []


class DuplicateIdentityError(OnboardingError):
    """An identity field collides with an existing account."""

    code = ErrorCode.DUPLICATE_MEMBER_ID

    def __init__(self, message: str, *, field: str, code: ErrorCode | None = None) -> None:
        super().__init__(message, code=code)
        self.field = field


class ProvisioningError(OnboardingError):
    code = ErrorCode.ACCOUNT_CREATION_FAILED


class DeliveryError(OnboardingError):
    """Raised by providers when a message could not be handed off."""

    code = ErrorCode.SMS_SEND_FAILED


class InvalidTransitionError(OnboardingError, ValueError):
    """An activation-status change not allowed by the state machine."""


class BatchAbortedError(OnboardingError):
    """The batch stopped before every row was resolved."""

    code = ErrorCode.OPERATION_INTERRUPTED

    def __init__(self, message: str, *, ledger_id: object, code: ErrorCode | None = None) -> None:
        super().__init__(message, code=code)
        self.ledger_id = ledger_id
