"""
Vonage SMS Channel
SMS delivery using the Vonage SMS API (SDK v4).
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from vonage import Auth, Vonage
from vonage_sms import SmsMessage

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.channel import ChannelAgent, DeliveryReceipt
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.lead import Channel

logger = logging.getLogger(__name__)


class VonageSMSChannel(ChannelAgent):
    """
    SMS channel agent.

    Uses Vonage credentials:
    - VONAGE_API_KEY
    - VONAGE_API_SECRET
    - VONAGE_FROM_NUMBER (SMS sender ID)

    The SDK is synchronous, so sends run in a worker thread.
    """

    format_instructions = (
        "Format: a single SMS under 300 characters. Friendly, no links unless "
        "asked, no emojis, no greeting line."
    )
    max_length = 320

    def __init__(
        self,
        text_service,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        from_number: Optional[str] = None,
        sms_client=None
    ):
        super().__init__(text_service)
        self._api_key = api_key
        self._api_secret = api_secret
        self._from = from_number
        self._sms = sms_client

    @property
    def channel(self) -> Channel:
        return Channel.SMS

    def is_configured(self) -> bool:
        return self._sms is not None or bool(self._api_key and self._api_secret and self._from)

    def _ensure_client(self):
        if self._sms is None:
            auth = Auth(api_key=self._api_key, api_secret=self._api_secret)
            self._sms = Vonage(auth=auth).sms
            logger.info("VonageSMSChannel initialized")
        return self._sms

    @staticmethod
    def _normalize_number(number: str) -> str:
        digits = "".join(ch for ch in number if ch.isdigit())
        return digits

    async def send(
        self,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DeliveryReceipt:
        to_number = self._normalize_number(recipient)
        if not self.is_configured():
            logger.warning(f"Simulating SMS to {to_number[:6]}... (Vonage not configured)")
            return DeliveryReceipt(
                status=DeliveryStatus.SENT,
                external_id=f"sim-{uuid.uuid4().hex[:12]}",
                simulated=True,
            )

        sms = self._ensure_client()
        message = SmsMessage(to=to_number, from_=self._from or "Leadflow", text=content)
        logger.info(f"Sending SMS via Vonage to {to_number[:6]}...")

        try:
            response = await asyncio.to_thread(sms.send, message)
        except Exception as e:
            logger.error(f"Exception sending SMS via Vonage: {e}")
            raise DeliveryError(f"Vonage send failed: {e}") from e

        messages = getattr(response, "messages", None) or []
        if not messages:
            raise DeliveryError("Unexpected response format from Vonage")

        part = messages[0]
        if str(getattr(part, "status", "")) != "0":
            error_text = getattr(part, "error_text", None) or "Unknown error"
            logger.error(f"Vonage SMS failed: {error_text}")
            raise DeliveryError(f"Vonage rejected SMS: {error_text}")

        message_id = getattr(part, "message_id", None)
        logger.info(f"SMS sent successfully: {message_id}")
        return DeliveryReceipt(
            status=DeliveryStatus.SENT,
            external_id=message_id,
            metadata={"provider": "vonage", "parts": len(messages)},
        )
