"""Phone number normalizer.

Converts a member's phone cell to E.164 (e.g. ``+12125551234``), which is
both the stored form and the identity key used for duplicate detection.
Numbers without an international prefix are read in *default_region*.

Raw values are never logged.
"""
from __future__ import annotations

import logging

import phonenumbers

logger = logging.getLogger(__name__)

DEFAULT_REGION = "US"


def normalize_phone(raw: str | None, *, default_region: str = DEFAULT_REGION) -> str | None:
    """Return *raw* in E.164 format, or ``None`` if it is not a valid number.

    Never raises.  Empty and whitespace-only input yields ``None``.
    """
    if not raw or not raw.strip():
        return None

    try:
        parsed = phonenumbers.parse(raw.strip(), default_region)
    except phonenumbers.NumberParseException:
        logger.debug("phone_normalizer: could not parse input (length=%d)", len(raw))
        return None

    if not phonenumbers.is_valid_number(parsed):
        logger.debug("phone_normalizer: parsed but invalid number")
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
