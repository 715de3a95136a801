"""Email normalizers.

Two forms are kept apart:

``clean_email``
    What is stored and what messages are sent to: stripped and lowercased.
``normalize_email``
    The identity key.  On top of lowercasing it removes dots from the local
    part of Gmail addresses, since ``j.o.h.n@gmail.com`` and
    ``john@gmail.com`` reach the same mailbox.  Sub-address tags
    (``user+tag@domain``) are preserved.

Raw values are never logged.
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_GMAIL_DOMAINS = frozenset({"gmail.com", "googlemail.com"})


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value.strip()))


def clean_email(raw: str | None) -> str | None:
    if raw is None:
        return None
    stripped = raw.strip().lower()
    return stripped or None


def normalize_email(raw: str) -> str:
    """Return the identity key for *raw*; ``""`` for blank input."""
    stripped = raw.strip().lower()
    if not stripped:
        return ""

    if "@" not in stripped:
        logger.debug("normalize_email: no '@' found (length=%d)", len(stripped))
        return stripped

    local, _, domain = stripped.partition("@")
    if domain in _GMAIL_DOMAINS:
        local = local.replace(".", "")

    return f"{local}@{domain}"
