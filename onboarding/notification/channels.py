"""Channel contract shared by the dispatcher and the provider adapters.

A provider exposes one method, ``send(message) -> provider_ref``, and
raises ``DeliveryError`` (or any other exception) when the message could
not be handed off.  The dispatcher turns both into a failed
:class:`DeliveryOutcome`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from html import escape
from pathlib import Path
from string import Template
from typing import Protocol

TEMPLATE_DIR = Path(__file__).parent / "templates"


class Channel(StrEnum):
    SMS = "sms"
    EMAIL = "email"

    @property
    def other(self) -> Channel:
        return Channel.EMAIL if self is Channel.SMS else Channel.SMS


# ---------------------------------------------------------------------------
# Messages and outcomes
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class OutboundMessage:
    """A rendered message.  Recipient and body are kept out of ``repr``."""

    channel: Channel
    member_id: str
    recipient: str = field(repr=False)
    body: str = field(repr=False)
    subject: str | None = None
    html_body: str | None = field(default=None, repr=False)


@dataclass(slots=True)
class DeliveryOutcome:
    """Result of one send attempt on one channel."""

    channel: Channel
    ok: bool
    attempted_at: datetime
    provider_ref: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "channel": str(self.channel),
            "ok": self.ok,
            "providerRef": self.provider_ref,
            "error": self.error,
            "attemptedAt": self.attempted_at.isoformat(),
        }


class NotificationProvider(Protocol):
    def send(self, message: OutboundMessage) -> str:
        ...


# ---------------------------------------------------------------------------
# Template rendering
# ---------------------------------------------------------------------------

def _load_template(template_dir: str | Path, name: str) -> str:
    path = Path(template_dir) / name
    if not path.is_file():
        raise FileNotFoundError(f"No template {name!r} in {template_dir}")
    return path.read_text(encoding="utf-8")


@dataclass(slots=True)
class MessageContext:
    """Organization-wide values substituted into every invitation."""

    organization_name: str = "SVMPC"
    support_phone: str = ""
    portal_url: str = ""
    expiry_hours: int = 24
    template_dir: Path = TEMPLATE_DIR


def render_invitation(
    channel: Channel,
    *,
    member_id: str,
    member_name: str,
    recipient: str,
    temporary_secret: str,
    context: MessageContext,
) -> OutboundMessage:
    values = {
        "member_id": member_id,
        "member_name": member_name,
        "temporary_secret": temporary_secret,
        "organization_name": context.organization_name,
        "support_phone": context.support_phone,
        "portal_url": context.portal_url,
        "expiry_hours": context.expiry_hours,
    }
    if channel is Channel.SMS:
        body = Template(_load_template(context.template_dir, "invitation_sms.txt")).safe_substitute(values)
        return OutboundMessage(channel=channel, member_id=member_id, recipient=recipient, body=body)

    text = Template(_load_template(context.template_dir, "invitation_email.txt")).safe_substitute(values)
    html_values = {key: escape(str(value)) for key, value in values.items()}
    html = Template(_load_template(context.template_dir, "invitation_email.html")).safe_substitute(html_values)
    return OutboundMessage(
        channel=channel,
        member_id=member_id,
        recipient=recipient,
        body=text,
        subject=f"{context.organization_name} - Activate Your Account",
        html_body=html,
    )
