"""Member routes: directory, detail, retry and resend.

GET /imports/members is masked; GET /imports/members/{member_id} returns
the unmasked detail for an admin working one account.
"""
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from onboarding.accounts.status import ActivationStatus
from onboarding.api.deps import (
    Operator,
    get_member_repository,
    get_resend_service,
    get_retry_orchestrator,
    require_admin,
    require_permission,
)
from onboarding.api.routes.imports import masked_member, pagination
from onboarding.db.repositories import MemberAccountRepository
from onboarding.delivery.resend import ResendService
from onboarding.delivery.retry import RetryOrchestrator

router = APIRouter(prefix="/imports", tags=["members"])

BULK_LIMIT = 500


class ChannelBody(BaseModel):
    channel: Literal["sms", "email"] = "sms"


class BulkBody(BaseModel):
    member_ids: list[str] = Field(min_length=1, max_length=BULK_LIMIT)
    channel: Literal["sms", "email"] = "sms"


def _iso(value):
    return value.isoformat() if value else None


@router.get("/members", summary="Member directory (masked)")
def list_members(
    status: str | None = None,
    search: str | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _: Operator = Depends(require_permission("members:read")),
    accounts: MemberAccountRepository = Depends(get_member_repository),
):
    if status is not None and status not in {s.value for s in ActivationStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown activation status: {status}")
    try:
        rows, total = accounts.search(
            status=status,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=(page - 1) * limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "items": [masked_member(account, accounts) for account in rows],
        "pagination": pagination(page, limit, total),
    }


@router.get("/members/{member_id}", summary="Member detail (unmasked)")
def get_member(
    member_id: str,
    _: Operator = Depends(require_permission("members:read")),
    accounts: MemberAccountRepository = Depends(get_member_repository),
):
    account = accounts.get_by_member_id(member_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    contact = accounts.contact_for(account)
    return {
        "memberId": account.member_id,
        "name": account.full_name,
        "phoneNumber": contact.phone_number,
        "email": contact.email,
        "activationStatus": account.activation_status,
        "activatedAt": _iso(account.activated_at),
        "importId": str(account.import_id) if account.import_id else None,
        "tempSecretExpiresAt": _iso(account.temp_secret_expires_at),
        "delivery": {
            channel: {
                "sentAt": _iso(getattr(account, f"{channel}_sent_at")),
                "retryCount": getattr(account, f"{channel}_retry_count"),
                "lastRetryAt": _iso(getattr(account, f"{channel}_last_retry_at")),
                "lastError": getattr(account, f"{channel}_last_error"),
            }
            for channel in ("sms", "email")
        },
        "createdAt": _iso(account.created_at),
    }


@router.get("/members/{member_id}/retry-status", summary="Retry bookkeeping per channel")
def get_retry_status(
    member_id: str,
    _: Operator = Depends(require_permission("members:read")),
    orchestrator: RetryOrchestrator = Depends(get_retry_orchestrator),
):
    try:
        return orchestrator.retry_status(member_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found") from exc


@router.post("/members/{member_id}/retry", summary="Manually retry a failed delivery")
def retry_member(
    member_id: str,
    body: ChannelBody,
    operator: Operator = Depends(require_admin),
    orchestrator: RetryOrchestrator = Depends(get_retry_orchestrator),
):
    try:
        outcome = orchestrator.retry(member_id, body.channel, manual=True, actor=operator.operator_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found") from exc
    return outcome.to_dict()


@router.post("/bulk-retry", summary="Manually retry failed deliveries for many members")
def bulk_retry(
    body: BulkBody,
    operator: Operator = Depends(require_admin),
    orchestrator: RetryOrchestrator = Depends(get_retry_orchestrator),
):
    return orchestrator.bulk_retry(body.member_ids, body.channel, actor=operator.operator_id).to_dict()


@router.post("/members/{member_id}/resend", summary="Resend the invitation with a fresh secret")
def resend_member(
    member_id: str,
    body: ChannelBody,
    operator: Operator = Depends(require_admin),
    service: ResendService = Depends(get_resend_service),
):
    try:
        outcome = service.resend(member_id, body.channel, actor=operator.operator_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found") from exc
    return outcome.to_dict()


@router.post("/bulk-resend", summary="Resend invitations to many members")
def bulk_resend(
    body: BulkBody,
    operator: Operator = Depends(require_admin),
    service: ResendService = Depends(get_resend_service),
):
    return service.bulk_resend(body.member_ids, body.channel, actor=operator.operator_id).to_dict()
