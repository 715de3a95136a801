"""Identity masking for list responses and preview samples.

Detail responses return unmasked values; everything that lists members
goes through these helpers.  Masked forms never match the PII filter
patterns, so masked payloads pass the response middleware.
"""
from __future__ import annotations


def mask_member_id(member_id: str | None) -> str | None:
    if member_id is None:
        return None
    if len(member_id) <= 4:
        return member_id
    return f"{member_id[:2]}***{member_id[-2:]}"


def mask_email(email: str | None) -> str | None:
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digit_total = sum(1 for c in phone if c.isdigit())
    keep_from = digit_total - 4
    masked: list[str] = []
    seen = 0
    for c in phone:
        if c.isdigit():
            masked.append(c if seen >= keep_from else "*")
            seen += 1
        else:
            masked.append(c)
    return "".join(masked)


def mask_field(field: str, value: str | None) -> str | None:
    """Mask *value* according to the column it came from."""
    if field == "phone_number":
        return mask_phone(value)
    if field == "email":
        return mask_email(value)
    if field == "member_id":
        return mask_member_id(value)
    return value
