"""Append-only audit logger.

Provides ``record_event()`` to persist ``AuditEvent`` rows.
All writes are immutable: ``immutable=True`` always.

Safety: contact details and secrets are never passed in; events carry the
member id, ledger id, channel and outcome only.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from onboarding.audit.events import CHANNEL_EVENT_TYPES, VALID_EVENT_TYPES
from onboarding.db.models import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db_session: Session,
    event_type: str,
    actor: str,
    member_id: str | None = None,
    import_id: str | None = None,
    channel: str | None = None,
    outcome: str | None = None,
    detail: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    """Create and persist an immutable ``AuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit; the caller controls the transaction boundary.
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    if event_type in CHANNEL_EVENT_TYPES and not channel:
        raise ValueError(f"channel is required for {event_type} events")

    event = AuditEvent(
        event_type=event_type,
        actor=actor,
        member_id=member_id,
        import_id=str(import_id) if import_id is not None else None,
        channel=channel,
        outcome=outcome,
        detail=detail,
        metadata_json=metadata,
        immutable=True,
    )
    db_session.add(event)
    db_session.flush()

    logger.info("Audit event recorded: type=%s actor=%s", event_type, actor)
    return event


def get_member_history(db_session: Session, member_id: str) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows for *member_id*, ordered by timestamp."""
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.member_id == member_id)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())


def get_recent_events(
    db_session: Session,
    *,
    event_type: str | None = None,
    limit: int = 50,
) -> list[AuditEvent]:
    """Return the newest events first, optionally of one *event_type*."""
    stmt = select(AuditEvent)
    if event_type is not None:
        if event_type not in VALID_EVENT_TYPES:
            raise ValueError(
                f"Invalid event_type {event_type!r}; "
                f"must be one of {sorted(VALID_EVENT_TYPES)}"
            )
        stmt = stmt.where(AuditEvent.event_type == event_type)
    stmt = stmt.order_by(AuditEvent.timestamp.desc()).limit(limit)
    return list(db_session.execute(stmt).scalars().all())
