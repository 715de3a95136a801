"""CSV reader for member upload files.

Cells are read as strings (``dtype=str``, ``keep_default_na=False``) so
member ids with leading zeros and phone numbers survive untouched.  The
header row is checked before any row is returned.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from onboarding.core.errors import ErrorCode, FileValidationError
from onboarding.importing.validator import check_columns

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = frozenset({".csv"})


@dataclass(slots=True)
class ParsedFile:
    headers: list[str]
    rows: list[dict[str, str]]

    @property
    def has_email_column(self) -> bool:
        return "email" in self.headers


def check_file_format(filename: str | None) -> None:
    if not filename or not filename.strip():
        raise FileValidationError("No file provided", code=ErrorCode.CSV_FILE_NOT_PROVIDED)
    if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise FileValidationError("File must be in CSV format (.csv)", code=ErrorCode.CSV_INVALID_FORMAT)


def read_member_file(source: str | Path | bytes) -> ParsedFile:
    """Parse *source* (a path or the raw file bytes) into header and rows.

    Raises ``FileValidationError`` for unreadable files, empty files and
    bad headers.  Per-row content is not validated here.
    """
    handle = io.BytesIO(source) if isinstance(source, bytes) else str(source)
    try:
        frame = pd.read_csv(
            handle,
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError as exc:
        raise FileValidationError("CSV file is empty or has no headers", code=ErrorCode.CSV_EMPTY) from exc
    except (pd.errors.ParserError, UnicodeDecodeError) as exc:
        logger.warning("CSV parse failure: %s", type(exc).__name__)
        raise FileValidationError("CSV file could not be parsed", code=ErrorCode.CSV_PARSE_ERROR) from exc

    headers = check_columns(frame.columns)
    frame.columns = headers
    rows = frame.to_dict(orient="records")
    if not rows:
        raise FileValidationError("CSV file has no data rows", code=ErrorCode.CSV_EMPTY)

    logger.info("Parsed member file: rows=%d columns=%d", len(rows), len(headers))
    return ParsedFile(headers=headers, rows=rows)
