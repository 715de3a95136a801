"""Duplicate detector.

Two passes:

within-file
    Runs over every raw row of the upload, valid or not.  Any member id,
    phone or email repeated across rows flags *every* occurrence.  Each
    flagged row gets one error per colliding field naming the other row
    numbers.  Phones and emails are compared by identity key where they
    parse and by their stripped cell otherwise.
against-store
    A row whose member id, phone or email already belongs to a stored
    account is skipped.  The first colliding field, in that order, is
    reported.  The check is optimistic; the unique constraints on
    ``member_accounts`` remain the final arbiter at insert time.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from onboarding.core.errors import ErrorCode, RowErrorKind
from onboarding.db.repositories import MemberAccountRepository
from onboarding.importing.validator import MemberRow, RowValidationError
from onboarding.normalization.email_normalizer import normalize_email
from onboarding.normalization.phone_normalizer import DEFAULT_REGION, normalize_phone


_STORE_CODES = {
    "member_id": ErrorCode.DUPLICATE_MEMBER_ID,
    "phone_number": ErrorCode.DUPLICATE_PHONE_NUMBER,
    "email": ErrorCode.DUPLICATE_EMAIL,
}

IDENTITY_FIELDS = ("member_id", "phone_number", "email")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _cell(raw: dict, column: str) -> str:
    value = raw.get(column)
    return "" if value is None else str(value).strip()


def identity_keys(raw: dict, *, default_region: str = DEFAULT_REGION) -> dict[str, str]:
    """Identity keys of one raw row; blank cells have none."""
    keys: dict[str, str] = {}
    member_id = _cell(raw, "member_id")
    if member_id:
        keys["member_id"] = member_id
    phone = _cell(raw, "phone_number")
    if phone:
        keys["phone_number"] = normalize_phone(phone, default_region=default_region) or phone
    email = _cell(raw, "email")
    if email:
        keys["email"] = normalize_email(email)
    return keys


def _raw_value(row: MemberRow, field: str) -> str | None:
    if field == "member_id":
        return row.member_id
    if field == "phone_number":
        return row.phone_number
    return row.email


def find_in_file_duplicates(
    rows: Iterable[dict],
    *,
    row_numbers: Iterable[int] | None = None,
    default_region: str = DEFAULT_REGION,
) -> list[RowValidationError]:
    """Flag every raw row whose identity value appears in another row of the file.

    Rows that failed validation still take part, so a valid row sharing a
    member id with an invalid one is flagged too.
    """
    rows = list(rows)
    numbers = list(row_numbers) if row_numbers is not None else list(range(1, len(rows) + 1))
    by_row = dict(zip(numbers, rows))

    seen: dict[tuple[str, str], list[int]] = defaultdict(list)
    for number, raw in by_row.items():
        for field, key in identity_keys(raw, default_region=default_region).items():
            seen[(field, key)].append(number)

    errors: list[RowValidationError] = []
    for (field, _key), collided in seen.items():
        if len(collided) < 2:
            continue
        for number in collided:
            others = ", ".join(str(n) for n in collided if n != number)
            raw = by_row[number]
            errors.append(
                RowValidationError(
                    row_number=number,
                    field=field,
                    value=_cell(raw, field),
                    reason=f"duplicate {field} also found in row(s) {others}",
                    code=ErrorCode.DUPLICATE_IN_FILE,
                    kind=RowErrorKind.DUPLICATE_IN_FILE,
                    member_id=_cell(raw, "member_id") or None,
                )
            )

    errors.sort(key=lambda e: (e.row_number, IDENTITY_FIELDS.index(e.field)))
    return errors


def store_duplicate_error(row: MemberRow, field: str) -> RowValidationError:
    return RowValidationError(
        row_number=row.row_number,
        field=field,
        value=_raw_value(row, field),
        reason=f"{field} already belongs to an existing account",
        code=_STORE_CODES[field],
        kind=RowErrorKind.DUPLICATE_IN_STORE,
        member_id=row.member_id,
    )


# ---------------------------------------------------------------------------
# DuplicateDetector
# ---------------------------------------------------------------------------

class DuplicateDetector:
    """Split validated rows into fresh rows and duplicate errors."""

    def __init__(self, accounts: MemberAccountRepository) -> None:
        self.accounts = accounts

    def colliding_field(self, row: MemberRow) -> str | None:
        """Return the first identity field already stored, or ``None``."""
        if self.accounts.get_by_member_id(row.member_id) is not None:
            return "member_id"
        if self.accounts.get_by_phone(row.phone_number) is not None:
            return "phone_number"
        if row.email and self.accounts.get_by_email(row.email) is not None:
            return "email"
        return None

    def check_store(self, row: MemberRow) -> RowValidationError | None:
        field = self.colliding_field(row)
        if field is None:
            return None
        return store_duplicate_error(row, field)

    def split(
        self,
        rows: list[MemberRow],
        in_file: list[RowValidationError],
    ) -> tuple[list[MemberRow], list[RowValidationError]]:
        """Drop rows flagged by the within-file pass, then run the store pass.

        *in_file* is the within-file result over the whole upload.  Returns
        the fresh rows and every duplicate error, in-file ones first.
        """
        errors = list(in_file)
        flagged = {e.row_number for e in errors}

        fresh: list[MemberRow] = []
        for row in rows:
            if row.row_number in flagged:
                continue
            store_error = self.check_store(row)
            if store_error is not None:
                errors.append(store_error)
                continue
            fresh.append(row)
        return fresh, errors
