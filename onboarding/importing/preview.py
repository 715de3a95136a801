"""Dry-run preview of an upload.  Reads the store, never writes to it."""
from __future__ import annotations

from dataclasses import dataclass, field

from onboarding.accounts.masking import mask_email, mask_member_id, mask_phone
from onboarding.db.repositories import MemberAccountRepository
from onboarding.importing.duplicates import DuplicateDetector, find_in_file_duplicates
from onboarding.importing.reader import ParsedFile
from onboarding.importing.validator import RowValidationError, validate_rows
from onboarding.normalization.phone_normalizer import DEFAULT_REGION

SAMPLE_SIZE = 10


@dataclass(slots=True)
class ImportPreview:
    row_count: int
    headers: list[str]
    errors: list[RowValidationError]
    valid_rows: int
    has_email_column: bool
    sample: list[dict] = field(default_factory=list)
    warnings: list[RowValidationError] = field(default_factory=list)

    @property
    def invalid_rows(self) -> int:
        return len({e.row_number for e in self.errors})

    def to_dict(self) -> dict:
        return {
            "rowCount": self.row_count,
            "headers": self.headers,
            "errors": [e.to_dict() for e in self.errors],
            "validRows": self.valid_rows,
            "invalidRows": self.invalid_rows,
            "hasEmailColumn": self.has_email_column,
            "sample": self.sample,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def build_preview(
    parsed: ParsedFile,
    accounts: MemberAccountRepository,
    *,
    default_region: str = DEFAULT_REGION,
) -> ImportPreview:
    """Validate *parsed* and look up store duplicates without mutating anything.

    Row and in-file duplicate problems are ``errors``; identities that
    already exist in the store are ``warnings`` since those rows are
    skipped, not rejected, at confirm time.
    """
    report = validate_rows(parsed.rows, default_region=default_region)
    in_file = find_in_file_duplicates(parsed.rows, default_region=default_region)
    errors = sorted([*report.errors, *in_file], key=lambda e: e.row_number)
    flagged = {e.row_number for e in in_file}
    clean = [row for row in report.valid_rows if row.row_number not in flagged]

    detector = DuplicateDetector(accounts)
    warnings = [w for w in (detector.check_store(row) for row in clean) if w is not None]

    sample = [
        {
            "row": row.row_number,
            "member_id": mask_member_id(row.member_id),
            "name": row.full_name,
            "phone_number": mask_phone(row.phone_number),
            "email": mask_email(row.email),
        }
        for row in clean[:SAMPLE_SIZE]
    ]
    return ImportPreview(
        row_count=len(parsed.rows),
        headers=parsed.headers,
        errors=errors,
        valid_rows=len(clean),
        has_email_column=parsed.has_email_column,
        sample=sample,
        warnings=warnings,
    )
