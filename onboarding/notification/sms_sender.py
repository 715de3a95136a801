"""SMS providers.

``TwilioSmsSender`` sends through the Twilio REST API.  When Twilio is not
configured ``LoggingSmsSender`` stands in: it accepts every message and
logs only the member id, which keeps local environments usable.

Safety: recipient numbers and message bodies are never logged.
"""
from __future__ import annotations

import logging
import uuid

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from onboarding.core.errors import DeliveryError, ErrorCode
from onboarding.notification.channels import Channel, OutboundMessage

logger = logging.getLogger(__name__)


class TwilioSmsSender:
    """Send invitation SMS via Twilio."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: TwilioClient | None = None,
    ) -> None:
        if not from_number:
            raise ValueError("from_number is required for Twilio SMS")
        self.from_number = from_number
        self.client = client or TwilioClient(account_sid, auth_token)

    def send(self, message: OutboundMessage) -> str:
        if message.channel is not Channel.SMS:
            raise ValueError(f"TwilioSmsSender cannot send {message.channel} messages")
        try:
            sms = self.client.messages.create(
                body=message.body,
                from_=self.from_number,
                to=message.recipient,
            )
        except TwilioException as exc:
            logger.warning("Twilio rejected SMS for member %s: %s", message.member_id, type(exc).__name__)
            raise DeliveryError(
                f"Failed to send SMS: {exc}", code=ErrorCode.SMS_SEND_FAILED
            ) from exc

        logger.info("SMS sent for member %s sid=%s status=%s", message.member_id, sms.sid, sms.status)
        return sms.sid


class LoggingSmsSender:
    """Accepts every message without sending it anywhere."""

    def send(self, message: OutboundMessage) -> str:
        ref = f"SMS_{uuid.uuid4().hex[:12]}"
        logger.info("SMS provider not configured; recorded SMS for member %s ref=%s", message.member_id, ref)
        return ref
