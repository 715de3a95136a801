"""Bulk import routes: upload, confirm, history and recovery.

POST /imports/upload stores the file and returns a preview plus an
upload_id; POST /imports/confirm runs the stored upload through the batch
pipeline.  Each route checks one permission from onboarding.access.roles.
"""
from __future__ import annotations

import logging
import math
from pathlib import Path
from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel

from onboarding.accounts.masking import mask_email, mask_member_id, mask_phone
from onboarding.api.deps import (
    Operator,
    get_batch_processor,
    get_ledger_repository,
    get_member_repository,
    get_recovery_service,
    require_admin,
    require_permission,
)
from onboarding.api.uploads import UploadStore
from onboarding.core.errors import BatchAbortedError, ErrorCode, FileValidationError
from onboarding.core.settings import get_settings
from onboarding.db.models import ImportLedger, MemberAccount
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository
from onboarding.importing.ledger import ledger_statistics
from onboarding.importing.preview import build_preview
from onboarding.importing.processor import BatchProcessor
from onboarding.importing.reader import check_file_format, read_member_file
from onboarding.importing.recovery import RecoveryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])


class ConfirmBody(BaseModel):
    upload_id: UUID


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def file_error(exc: FileValidationError, status_code: int = 400) -> HTTPException:
    detail = {"code": str(exc.code), "message": str(exc)}
    if exc.missing_columns:
        detail["missingColumns"] = exc.missing_columns
    if exc.unknown_columns:
        detail["unknownColumns"] = exc.unknown_columns
    return HTTPException(status_code=status_code, detail=detail)


def aborted_error(exc: BatchAbortedError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"code": str(exc.code), "message": str(exc), "ledgerId": str(exc.ledger_id)},
    )


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0}


def serialize_ledger(ledger: ImportLedger) -> dict:
    return {
        "ledgerId": str(ledger.id),
        "parentLedgerId": str(ledger.parent_ledger_id) if ledger.parent_ledger_id else None,
        "operatorId": ledger.operator_id,
        "operatorName": ledger.operator_name,
        "sourceFilename": ledger.source_filename,
        "status": ledger.status,
        "statistics": ledger_statistics(ledger),
        "errorSummary": ledger.error_summary,
        "createdAt": ledger.created_at.isoformat() if ledger.created_at else None,
        "completedAt": ledger.completed_at.isoformat() if ledger.completed_at else None,
    }


def masked_member(account: MemberAccount, accounts: MemberAccountRepository) -> dict:
    contact = accounts.contact_for(account)
    return {
        "memberId": mask_member_id(account.member_id),
        "name": account.full_name,
        "phoneNumber": mask_phone(contact.phone_number),
        "email": mask_email(contact.email),
        "activationStatus": account.activation_status,
        "importId": str(account.import_id) if account.import_id else None,
        "smsSentAt": account.sms_sent_at.isoformat() if account.sms_sent_at else None,
        "emailSentAt": account.email_sent_at.isoformat() if account.email_sent_at else None,
        "createdAt": account.created_at.isoformat() if account.created_at else None,
    }


def upload_store() -> UploadStore:
    return UploadStore(get_settings().upload_dir)


def _get_ledger(ledgers: ImportLedgerRepository, ledger_id: UUID) -> ImportLedger:
    ledger = ledgers.get(ledger_id)
    if ledger is None:
        raise HTTPException(status_code=404, detail=f"Import {ledger_id} not found")
    return ledger


# ---------------------------------------------------------------------------
# Upload → preview → confirm
# ---------------------------------------------------------------------------


@router.post("/upload", summary="Upload a member CSV and preview it")
def upload_file(
    file: UploadFile | None = File(default=None),
    operator: Operator = Depends(require_admin),
    accounts: MemberAccountRepository = Depends(get_member_repository),
):
    """Validate the file, store it under a new upload_id and return the preview.

    Nothing is written to the store; duplicates against existing accounts
    are reported as warnings.
    """
    settings = get_settings()
    try:
        check_file_format(file.filename if file is not None else None)
    except FileValidationError as exc:
        raise file_error(exc) from exc

    content = file.file.read()
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail={
                "code": str(ErrorCode.CSV_FILE_TOO_LARGE),
                "message": f"File exceeds {settings.upload_max_file_size_mb}MB limit",
            },
        )

    try:
        parsed = read_member_file(content)
    except FileValidationError as exc:
        raise file_error(exc) from exc

    preview = build_preview(parsed, accounts, default_region=settings.default_phone_region)
    upload_id = upload_store().save(content, filename=file.filename, operator_id=operator.operator_id)

    logger.info("Stored upload %s (%d rows) for operator %s", upload_id, len(parsed.rows), operator.operator_id)
    return {"uploadId": str(upload_id), "filename": Path(file.filename).name, **preview.to_dict()}


@router.post("/confirm", summary="Process a previously uploaded file")
def confirm_upload(
    body: ConfirmBody,
    operator: Operator = Depends(require_admin),
    processor: BatchProcessor = Depends(get_batch_processor),
):
    store = upload_store()
    upload = store.load(body.upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail=f"Upload {body.upload_id} not found or expired")

    try:
        parsed = read_member_file(upload.path)
        result = processor.process(
            parsed.rows,
            operator_id=operator.operator_id,
            operator_name=operator.name,
            source_filename=upload.filename,
        )
    except FileValidationError as exc:
        raise file_error(exc) from exc
    except BatchAbortedError as exc:
        raise aborted_error(exc) from exc
    finally:
        store.discard(body.upload_id)

    return result.to_dict()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/history", summary="Paginated import history")
def list_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: Operator = Depends(require_permission("imports:read")),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
):
    rows, total = ledgers.history(limit=limit, offset=(page - 1) * limit)
    return {"items": [serialize_ledger(ledger) for ledger in rows], "pagination": pagination(page, limit, total)}


@router.get("/history/{ledger_id}", summary="Import detail")
def get_history_detail(
    ledger_id: UUID,
    _: Operator = Depends(require_permission("imports:read")),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
    recovery: RecoveryService = Depends(get_recovery_service),
):
    ledger = _get_ledger(ledgers, ledger_id)
    return {
        **serialize_ledger(ledger),
        "errors": list(ledger.errors or []),
        "childLedgerIds": [str(child.id) for child in ledgers.children_of(ledger.id)],
        "canRecover": recovery.can_recover(ledger.id),
    }


@router.get("/history/{ledger_id}/members", summary="Members created by one import (masked)")
def list_history_members(
    ledger_id: UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: Operator = Depends(require_permission("imports:read")),
    ledgers: ImportLedgerRepository = Depends(get_ledger_repository),
    accounts: MemberAccountRepository = Depends(get_member_repository),
):
    ledger = _get_ledger(ledgers, ledger_id)
    rows, total = accounts.search(
        import_id=ledger.id, sort_by="member_id", sort_order="asc", limit=limit, offset=(page - 1) * limit
    )
    return {
        "items": [masked_member(account, accounts) for account in rows],
        "pagination": pagination(page, limit, total),
    }


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


@router.get("/recovery/{ledger_id}", summary="Provisioned and outstanding rows of an import")
def get_recovery(
    ledger_id: UUID,
    _: Operator = Depends(require_permission("imports:read")),
    recovery: RecoveryService = Depends(get_recovery_service),
):
    try:
        report = recovery.recover(ledger_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Import {ledger_id} not found") from exc
    return report.to_dict()


@router.post("/recovery/{ledger_id}/reprocess", summary="Reprocess outstanding rows into a child import")
def reprocess_import(
    ledger_id: UUID,
    operator: Operator = Depends(require_admin),
    recovery: RecoveryService = Depends(get_recovery_service),
):
    try:
        result = recovery.reprocess(ledger_id, operator_id=operator.operator_id, operator_name=operator.name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Import {ledger_id} not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BatchAbortedError as exc:
        raise aborted_error(exc) from exc
    return {**result.to_dict(), "parentLedgerId": str(ledger_id)}
