"""Per-member results of retry and resend operations."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class DeliveryStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INELIGIBLE = "ineligible"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    BACKOFF_ACTIVE = "backoff_active"
    NOT_FOUND = "not_found"


ATTEMPTED_STATUSES = frozenset({DeliveryStatus.SUCCEEDED, DeliveryStatus.FAILED})


@dataclass(slots=True)
class MemberDeliveryOutcome:
    member_id: str
    channel: str
    status: DeliveryStatus
    retry_count: int = 0
    message: str | None = None
    wait_seconds: float | None = None
    sent_at: datetime | None = None

    @property
    def attempted(self) -> bool:
        return self.status in ATTEMPTED_STATUSES

    def to_dict(self) -> dict:
        return {
            "memberId": self.member_id,
            "channel": self.channel,
            "status": str(self.status),
            "success": self.status is DeliveryStatus.SUCCEEDED,
            "retryCount": self.retry_count,
            "message": self.message,
            "waitSeconds": self.wait_seconds,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
        }


@dataclass(slots=True)
class BulkDeliveryResult:
    outcomes: list[MemberDeliveryOutcome] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, int]:
        attempted = [o for o in self.outcomes if o.attempted]
        succeeded = sum(1 for o in attempted if o.status is DeliveryStatus.SUCCEEDED)
        return {
            "total": len(self.outcomes),
            "attempted": len(attempted),
            "succeeded": succeeded,
            "failed": len(attempted) - succeeded,
            "skipped": len(self.outcomes) - len(attempted),
        }

    def to_dict(self) -> dict:
        return {"totals": self.totals, "results": [o.to_dict() for o in self.outcomes]}
