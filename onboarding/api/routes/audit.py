"""Audit trail routes: GET /audit/recent, GET /audit/members/{member_id}/history."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from onboarding.accounts.masking import mask_member_id
from onboarding.api.deps import Operator, get_db, require_permission
from onboarding.audit.audit_log import get_member_history, get_recent_events
from onboarding.db.models import AuditEvent

router = APIRouter(prefix="/audit", tags=["audit"])


def _serialize_event(ev: AuditEvent, *, mask: bool = True) -> dict:
    return {
        "event_type": ev.event_type,
        "actor": ev.actor,
        "member_id": mask_member_id(ev.member_id) if mask else ev.member_id,
        "import_id": ev.import_id,
        "channel": ev.channel,
        "outcome": ev.outcome,
        "detail": ev.detail,
        "timestamp": ev.timestamp.isoformat() if ev.timestamp else None,
    }


@router.get("/recent", summary="Get most recent audit events")
def get_recent(
    limit: int = Query(default=10, ge=1, le=500),
    event_type: str | None = None,
    _: Operator = Depends(require_permission("audit:read")),
    db: Session = Depends(get_db),
):
    try:
        events = get_recent_events(db, event_type=event_type, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [_serialize_event(ev) for ev in events]


@router.get("/members/{member_id}/history", summary="Get audit history for a member")
def get_history(
    member_id: str,
    _: Operator = Depends(require_permission("audit:read")),
    db: Session = Depends(get_db),
):
    events = get_member_history(db, member_id)
    if not events:
        raise HTTPException(status_code=404, detail=f"No audit history for member {member_id}")

    return [_serialize_event(ev, mask=False) for ev in events]
