"""Tests for onboarding/importing/validator.py."""
from __future__ import annotations

import pytest

from onboarding.core.errors import ErrorCode, FileValidationError, RowErrorKind
from onboarding.importing.validator import check_columns, validate_row, validate_rows


def _row(**overrides) -> dict[str, str]:
    row = {
        "member_id": "M001",
        "name": "Alice Reyes",
        "phone_number": "+639171234567",
        "email": "alice@example.com",
    }
    row.update(overrides)
    return row


# ===========================================================================
# Header checks
# ===========================================================================


class TestCheckColumns:
    def test_required_columns_accepted(self):
        assert check_columns(["member_id", "name", "phone_number"]) == ["member_id", "name", "phone_number"]

    def test_header_names_are_stripped(self):
        assert check_columns([" member_id", "name ", " phone_number ", "email"]) == [
            "member_id",
            "name",
            "phone_number",
            "email",
        ]

    def test_missing_required_column(self):
        with pytest.raises(FileValidationError) as exc_info:
            check_columns(["member_id", "name"])
        assert exc_info.value.code == ErrorCode.CSV_MISSING_COLUMNS
        assert exc_info.value.missing_columns == ["phone_number"]

    def test_unknown_column(self):
        with pytest.raises(FileValidationError) as exc_info:
            check_columns(["member_id", "name", "phone_number", "address"])
        assert exc_info.value.code == ErrorCode.CSV_UNKNOWN_COLUMNS
        assert exc_info.value.unknown_columns == ["address"]

    def test_missing_and_unknown_reported_together(self):
        with pytest.raises(FileValidationError) as exc_info:
            check_columns(["member_id", "fullname", "phone_number"])
        assert exc_info.value.code == ErrorCode.CSV_MISSING_COLUMNS
        assert exc_info.value.missing_columns == ["name"]
        assert exc_info.value.unknown_columns == ["fullname"]

    def test_empty_header(self):
        with pytest.raises(FileValidationError) as exc_info:
            check_columns([])
        assert exc_info.value.code == ErrorCode.CSV_EMPTY


# ===========================================================================
# Row validation
# ===========================================================================


class TestValidateRow:
    def test_valid_row_is_normalized(self):
        member, errors = validate_row(
            _row(member_id=" M001 ", phone_number="0917 123 4567", email=" Alice@Example.com "),
            1,
            default_region="PH",
        )
        assert errors == []
        assert member.member_id == "M001"
        assert member.phone_number == "+639171234567"
        assert member.email == "alice@example.com"
        assert member.row_number == 1

    def test_email_is_optional(self):
        member, errors = validate_row(_row(email=""), 1)
        assert errors == []
        assert member.email is None

    def test_missing_email_column_is_fine(self):
        row = _row()
        del row["email"]
        member, errors = validate_row(row, 1)
        assert errors == []
        assert member.email is None

    def test_missing_member_id(self):
        member, errors = validate_row(_row(member_id="  "), 4)
        assert member is None
        assert [(e.row_number, e.field, e.code) for e in errors] == [(4, "member_id", ErrorCode.MISSING_FIELD)]

    def test_member_id_with_invalid_characters(self):
        _, errors = validate_row(_row(member_id="M 001!"), 1)
        assert errors[0].field == "member_id"
        assert errors[0].code == ErrorCode.INVALID_FIELD

    def test_member_id_too_long(self):
        _, errors = validate_row(_row(member_id="M" * 65), 1)
        assert errors[0].code == ErrorCode.INVALID_FIELD

    def test_missing_name(self):
        _, errors = validate_row(_row(name=""), 1)
        assert [e.field for e in errors] == ["name"]

    def test_invalid_phone(self):
        _, errors = validate_row(_row(phone_number="abc"), 2)
        assert [(e.row_number, e.field) for e in errors] == [(2, "phone_number")]
        assert errors[0].kind == RowErrorKind.VALIDATION

    def test_invalid_email(self):
        _, errors = validate_row(_row(email="not-an-email"), 1)
        assert [e.field for e in errors] == ["email"]

    def test_one_error_per_failing_field(self):
        _, errors = validate_row(_row(name="", phone_number="abc", email="nope"), 3)
        assert [e.field for e in errors] == ["name", "phone_number", "email"]
        assert all(e.member_id == "M001" for e in errors)

    def test_error_dict_masks_identity_values(self):
        _, errors = validate_row(_row(member_id="MEMBER-0001", email="bad@"), 1)
        payload = errors[0].to_dict()
        assert payload["field"] == "email"
        assert payload["value"] == "b***@"
        assert payload["kind"] == "validation"
        assert payload["row"] == 1


class TestValidateRows:
    def test_every_well_formed_row_accepted(self):
        rows = [
            _row(member_id=f"M{i:03d}", phone_number=f"+6391712345{i:02d}", email=f"m{i}@example.com")
            for i in range(10)
        ]
        report = validate_rows(rows)
        assert len(report.valid_rows) == 10
        assert report.errors == []
        assert [r.row_number for r in report.valid_rows] == list(range(1, 11))

    def test_bad_row_does_not_affect_others(self):
        report = validate_rows([_row(), _row(member_id="M002", phone_number="abc"), _row(member_id="M003")])
        assert [r.row_number for r in report.valid_rows] == [1, 3]
        assert report.rejected_rows == [2]

    def test_explicit_row_numbers_are_kept(self):
        report = validate_rows([_row(), _row(member_id="")], row_numbers=[7, 9])
        assert report.valid_rows[0].row_number == 7
        assert report.rejected_rows == [9]

    def test_row_numbers_must_match_rows(self):
        with pytest.raises(ValueError):
            validate_rows([_row()], row_numbers=[1, 2])
