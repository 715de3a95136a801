"""Event type constants for the append-only audit trail."""
from __future__ import annotations

EVENT_BULK_IMPORT = "bulk_import"
EVENT_IMPORT_ERROR = "import_error"
EVENT_IMPORT_RECOVERY = "import_recovery"
EVENT_SMS_SENT = "sms_sent"
EVENT_EMAIL_SENT = "email_sent"
EVENT_NOTIFICATION_FAILED = "notification_failed"
EVENT_RETRY_SUCCESS = "retry_success"
EVENT_RETRY_FAILED = "retry_failed"
EVENT_BULK_RETRY = "bulk_retry"
EVENT_RESEND_INVITATION = "resend_invitation"
EVENT_BULK_RESEND = "bulk_resend"
EVENT_ACCOUNT_ACTIVATED = "account_activated"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_BULK_IMPORT,
    EVENT_IMPORT_ERROR,
    EVENT_IMPORT_RECOVERY,
    EVENT_SMS_SENT,
    EVENT_EMAIL_SENT,
    EVENT_NOTIFICATION_FAILED,
    EVENT_RETRY_SUCCESS,
    EVENT_RETRY_FAILED,
    EVENT_BULK_RETRY,
    EVENT_RESEND_INVITATION,
    EVENT_BULK_RESEND,
    EVENT_ACCOUNT_ACTIVATED,
})

# One delivery attempt each; these must name a channel.
CHANNEL_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_SMS_SENT,
    EVENT_EMAIL_SENT,
    EVENT_NOTIFICATION_FAILED,
    EVENT_RETRY_SUCCESS,
    EVENT_RETRY_FAILED,
    EVENT_RESEND_INVITATION,
})
