"""Tests for onboarding/importing/preview.py."""
from __future__ import annotations

from sqlalchemy import func, select

from onboarding.db.models import ImportLedger, MemberAccount
from onboarding.importing.preview import SAMPLE_SIZE, build_preview
from onboarding.importing.reader import read_member_file

HEADER = "member_id,name,phone_number,email\n"


def _csv(*lines: str) -> bytes:
    return (HEADER + "\n".join(lines) + "\n").encode("utf-8")


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


class TestBuildPreview:
    def test_reports_invalid_phone_row(self, services):
        parsed = read_member_file(
            _csv(
                "M001,Alice Reyes,+639171234501,alice@example.com",
                "M002,Bob Santos,abc,bob@example.com",
                "M003,Carla Cruz,+639171234503,",
            )
        )

        preview = build_preview(parsed, services.accounts).to_dict()

        assert preview["rowCount"] == 3
        assert [(e["row"], e["field"]) for e in preview["errors"]] == [(2, "phone_number")]
        assert preview["validRows"] == 2
        assert preview["invalidRows"] == 1
        assert preview["hasEmailColumn"] is True
        assert preview["warnings"] == []

    def test_sample_is_masked(self, services):
        parsed = read_member_file(_csv("MEMBER-0001,Alice Reyes,+639171234501,alice@example.com"))
        sample = build_preview(parsed, services.accounts).sample

        assert sample == [
            {
                "row": 1,
                "member_id": "ME***01",
                "name": "Alice Reyes",
                "phone_number": "+********4501",
                "email": "a***@example.com",
            }
        ]

    def test_sample_is_capped(self, services):
        lines = [f"M{n:03d},Member {n},+6391712345{n:02d}," for n in range(1, 16)]
        preview = build_preview(read_member_file(_csv(*lines)), services.accounts)
        assert preview.valid_rows == 15
        assert len(preview.sample) == SAMPLE_SIZE

    def test_in_file_duplicates_are_errors(self, services):
        parsed = read_member_file(
            _csv(
                "M001,Alice Reyes,+639171234501,",
                "M001,Alice Again,+639171234502,",
            )
        )
        preview = build_preview(parsed, services.accounts)
        assert preview.invalid_rows == 2
        assert preview.valid_rows == 0

    def test_duplicate_of_invalid_row_is_an_error_on_both(self, services):
        parsed = read_member_file(
            _csv(
                "M001,Alice Reyes,+639171234501,",
                "M001,Alice Again,abc,",
                "M003,Carla Cruz,+639171234503,",
            )
        )
        preview = build_preview(parsed, services.accounts).to_dict()

        assert {(e["row"], e["code"]) for e in preview["errors"]} == {
            (1, "DUPLICATE_IN_FILE"),
            (2, "DUPLICATE_IN_FILE"),
            (2, "INVALID_FIELD"),
        }
        assert preview["validRows"] == 1
        assert [s["row"] for s in preview["sample"]] == [3]

    def test_store_duplicates_are_warnings(self, services):
        services.accounts.create_account(
            member_id="M001", full_name="Stored", phone_number="+639171234599", email=None
        )
        services.db.commit()
        parsed = read_member_file(_csv("M001,Alice Reyes,+639171234501,", "M002,Bob,+639171234502,"))

        preview = build_preview(parsed, services.accounts).to_dict()

        assert preview["errors"] == []
        assert [(w["row"], w["code"]) for w in preview["warnings"]] == [(1, "DUPLICATE_MEMBER_ID")]
        assert preview["validRows"] == 2

    def test_preview_writes_nothing(self, services):
        parsed = read_member_file(_csv("M001,Alice Reyes,+639171234501,alice@example.com"))
        build_preview(parsed, services.accounts)

        assert _count(services.db, MemberAccount) == 0
        assert _count(services.db, ImportLedger) == 0
        assert services.sms.attempts == 0
