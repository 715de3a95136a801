"""SMTP email sender.

Delivers invitation emails via an SMTP relay as ``multipart/alternative``
(plain text plus HTML).  A single attempt per call: retries and backoff
belong to the retry orchestrator, which owns the per-member counters.

Safety: recipient addresses are never logged; only the member id is.
"""
from __future__ import annotations

import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from onboarding.core.errors import DeliveryError, ErrorCode
from onboarding.notification.channels import Channel, OutboundMessage

logger = logging.getLogger(__name__)


class SmtpEmailSender:
    """Send invitation emails via SMTP."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        sender: str = "noreply@notifications.local",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.timeout = timeout

    def build_mime(self, message: OutboundMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject or ""
        msg["From"] = self.sender
        msg["To"] = message.recipient
        msg["Message-ID"] = make_msgid(domain=self.sender.partition("@")[2] or None)
        msg.attach(MIMEText(message.body, "plain"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: OutboundMessage) -> str:
        if message.channel is not Channel.EMAIL:
            raise ValueError(f"SmtpEmailSender cannot send {message.channel} messages")

        msg = self.build_mime(message)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.sendmail(self.sender, [message.recipient], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP error for member %s: %s", message.member_id, type(exc).__name__)
            raise DeliveryError(
                f"Failed to send email: {exc}", code=ErrorCode.EMAIL_SEND_FAILED
            ) from exc

        logger.info("Delivered invitation email for member %s", message.member_id)
        return msg["Message-ID"]


class LoggingEmailSender:
    """Accepts every message without sending it anywhere."""

    def send(self, message: OutboundMessage) -> str:
        ref = f"EMAIL_{uuid.uuid4().hex[:12]}"
        logger.info("Email provider not configured; recorded email for member %s ref=%s", message.member_id, ref)
        return ref
