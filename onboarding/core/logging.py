"""Logging setup with PII redaction on every handler.

Application code logs member ids, ledger ids and counts only.  The filter
is the backstop for provider error text and third-party messages that may
echo a phone number, an email or a temporary secret.
"""
import logging
import logging.config
import re

PII_PATTERNS = [
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    re.compile(r"\+[1-9]\d{7,14}\b"),
    re.compile(r"\b(?:\+1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)\d{3}[-.\s]?\d{4}\b"),
    re.compile(r"(?i)((?:temp_secret|temporary_password|password|secret)\s*[=:]\s*)([^,\s]+)"),
]

REDACTED = "[REDACTED]"

# Chatty third-party loggers; their request lines can carry recipients.
QUIET_LOGGERS = ("uvicorn.access", "twilio.http_client", "urllib3.connectionpool")


def redact_pii(value: str) -> str:
    """Replace every PII pattern match in *value* with ``[REDACTED]``.

    Key/value patterns keep the key: ``temp_secret=[REDACTED]``.
    """
    for pattern in PII_PATTERNS:
        value = pattern.sub(rf"\1{REDACTED}" if pattern.groups else REDACTED, value)
    return value


class PIISafeFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_pii(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact_pii(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: redact_pii(v) if isinstance(v, str) else v for k, v in record.args.items()}
        return True


def build_logging_config(level: str) -> dict:
    quiet = {name: {"handlers": ["console"], "level": "WARNING", "propagate": False} for name in QUIET_LOGGERS}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"pii_safe": {"()": "onboarding.core.logging.PIISafeFilter"}},
        "formatters": {"default": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["pii_safe"],
            }
        },
        "loggers": {"": {"handlers": ["console"], "level": level.upper()}, **quiet},
    }


def setup_logging() -> None:
    from onboarding.core.settings import get_settings

    logging.config.dictConfig(build_logging_config(get_settings().log_level))
