"""Row validator.

Pure transform of raw member rows into typed :class:`MemberRow` objects or
per-field :class:`RowValidationError` records.  No I/O.

Column rules are applied to the whole file first (:func:`check_columns`);
per-row rules only exclude the offending row.  Rows are numbered from 1
with the header excluded.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from onboarding.accounts.masking import mask_field, mask_member_id
from onboarding.core.errors import ErrorCode, FileValidationError, RowErrorKind
from onboarding.normalization.email_normalizer import clean_email, is_valid_email
from onboarding.normalization.phone_normalizer import DEFAULT_REGION, normalize_phone

REQUIRED_COLUMNS: tuple[str, ...] = ("member_id", "name", "phone_number")
OPTIONAL_COLUMNS: tuple[str, ...] = ("email",)
ALLOWED_COLUMNS: tuple[str, ...] = REQUIRED_COLUMNS + OPTIONAL_COLUMNS

MEMBER_ID_MAX_LENGTH = 64
NAME_MAX_LENGTH = 256
_MEMBER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class RowValidationError:
    """One problem with one field of one row."""

    row_number: int
    field: str
    value: str | None
    reason: str
    code: ErrorCode = ErrorCode.INVALID_FIELD
    kind: RowErrorKind = RowErrorKind.VALIDATION
    member_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "row": self.row_number,
            "member_id": mask_member_id(self.member_id),
            "field": self.field,
            "value": mask_field(self.field, self.value),
            "code": str(self.code),
            "kind": str(self.kind),
            "message": self.reason,
        }


@dataclass(slots=True)
class MemberRow:
    """A row that passed field validation.

    ``phone_number`` is E.164; ``email`` is stripped and lowercased or
    ``None``.  ``raw`` keeps the cells exactly as uploaded.
    """

    row_number: int
    member_id: str
    full_name: str
    phone_number: str
    email: str | None
    raw: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ValidationReport:
    valid_rows: list[MemberRow]
    errors: list[RowValidationError]

    @property
    def rejected_rows(self) -> list[int]:
        return sorted({e.row_number for e in self.errors})


def check_columns(headers: Iterable[str]) -> list[str]:
    """Return the stripped header list or raise ``FileValidationError``."""
    cleaned = [str(h).strip() for h in headers]
    if not cleaned or all(not h for h in cleaned):
        raise FileValidationError(
            "CSV file is empty or has no headers", code=ErrorCode.CSV_EMPTY
        )

    missing = [c for c in REQUIRED_COLUMNS if c not in cleaned]
    unknown = [c for c in cleaned if c not in ALLOWED_COLUMNS]
    if missing or unknown:
        parts = []
        if missing:
            parts.append(f"missing required columns: {', '.join(missing)}")
        if unknown:
            parts.append(f"unknown columns: {', '.join(unknown)}")
        raise FileValidationError(
            "Invalid CSV header; " + "; ".join(parts),
            code=ErrorCode.CSV_MISSING_COLUMNS if missing else ErrorCode.CSV_UNKNOWN_COLUMNS,
            missing_columns=missing,
            unknown_columns=unknown,
        )
    return cleaned


def _cell(raw: dict, column: str) -> str:
    value = raw.get(column)
    if value is None:
        return ""
    return str(value).strip()


def validate_row(
    raw: dict,
    row_number: int,
    *,
    default_region: str = DEFAULT_REGION,
) -> tuple[MemberRow | None, list[RowValidationError]]:
    """Validate one row; returns the typed row or every field error found."""
    errors: list[RowValidationError] = []
    member_id = _cell(raw, "member_id")
    name = _cell(raw, "name")
    phone = _cell(raw, "phone_number")
    email = _cell(raw, "email")
    known_id = member_id or None

    def fail(field_name: str, value: str, reason: str, code: ErrorCode) -> None:
        errors.append(
            RowValidationError(
                row_number=row_number,
                field=field_name,
                value=value,
                reason=reason,
                code=code,
                member_id=known_id,
            )
        )

    if not member_id:
        fail("member_id", member_id, "member_id is required and cannot be empty", ErrorCode.MISSING_FIELD)
    elif len(member_id) > MEMBER_ID_MAX_LENGTH:
        fail("member_id", member_id, f"member_id exceeds {MEMBER_ID_MAX_LENGTH} characters", ErrorCode.INVALID_FIELD)
    elif not _MEMBER_ID_PATTERN.match(member_id):
        fail(
            "member_id",
            member_id,
            "member_id may only contain letters, digits, '-' and '_'",
            ErrorCode.INVALID_FIELD,
        )

    if not name:
        fail("name", name, "name is required and cannot be empty", ErrorCode.MISSING_FIELD)
    elif len(name) > NAME_MAX_LENGTH:
        fail("name", name, f"name exceeds {NAME_MAX_LENGTH} characters", ErrorCode.INVALID_FIELD)

    phone_e164 = None
    if not phone:
        fail("phone_number", phone, "phone_number is required and cannot be empty", ErrorCode.MISSING_FIELD)
    else:
        phone_e164 = normalize_phone(phone, default_region=default_region)
        if phone_e164 is None:
            fail("phone_number", phone, "invalid phone number format", ErrorCode.INVALID_FIELD)

    if email and not is_valid_email(email):
        fail("email", email, "invalid email format", ErrorCode.INVALID_FIELD)

    if errors:
        return None, errors

    return (
        MemberRow(
            row_number=row_number,
            member_id=member_id,
            full_name=name,
            phone_number=phone_e164,
            email=clean_email(email),
            raw={k: "" if v is None else str(v) for k, v in raw.items()},
        ),
        [],
    )


def validate_rows(
    rows: Iterable[dict],
    *,
    row_numbers: Iterable[int] | None = None,
    default_region: str = DEFAULT_REGION,
) -> ValidationReport:
    """Validate every row independently.

    *row_numbers* overrides the default 1-based numbering, which lets
    reprocessed rows keep the numbers they had in their original upload.
    """
    rows = list(rows)
    numbers = list(row_numbers) if row_numbers is not None else list(range(1, len(rows) + 1))
    if len(numbers) != len(rows):
        raise ValueError("row_numbers must have one entry per row")

    valid: list[MemberRow] = []
    errors: list[RowValidationError] = []
    for number, raw in zip(numbers, rows):
        member_row, row_errors = validate_row(raw, number, default_region=default_region)
        if member_row is not None:
            valid.append(member_row)
        errors.extend(row_errors)
    return ValidationReport(valid_rows=valid, errors=errors)
