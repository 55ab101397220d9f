"""
Mailgun Email Channel
Sends outreach email through the Mailgun HTTP API.
"""
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.channel import ChannelAgent, DeliveryReceipt
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.lead import Channel
from leadflow.infrastructure.http_utils import OwnedClient, raise_for_delivery

logger = logging.getLogger(__name__)


class MailgunEmailChannel(ChannelAgent):
    """
    Email channel agent.

    Setup Required:
    - MAILGUN_API_KEY and MAILGUN_DOMAIN

    Without credentials sends are simulated and logged.
    """

    API_BASE_URL = "https://api.mailgun.net/v3"

    format_instructions = (
        "Format: a plain-text email body of two to four short paragraphs. "
        "No subject line, no markdown, sign off with the agent's first name only."
    )
    max_length = 4000

    def __init__(
        self,
        text_service,
        api_key: Optional[str] = None,
        domain: Optional[str] = None,
        from_address: str = "Leadflow <noreply@leadflow.local>",
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(text_service)
        self._api_key = api_key
        self._domain = domain
        self._from = from_address
        self._http = OwnedClient(http_client)

    @property
    def channel(self) -> Channel:
        return Channel.EMAIL

    def is_configured(self) -> bool:
        return bool(self._api_key and self._domain)

    async def send(
        self,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DeliveryReceipt:
        metadata = metadata or {}
        if not self.is_configured():
            logger.warning(f"Simulating email to {recipient} (Mailgun not configured)")
            return DeliveryReceipt(
                status=DeliveryStatus.SENT,
                external_id=f"sim-{uuid.uuid4().hex[:12]}",
                simulated=True,
            )

        data = {
            "from": self._from,
            "to": recipient,
            "subject": subject or "",
            "text": content,
        }
        for key in ("lead_id", "conversation_id"):
            if metadata.get(key):
                data[f"v:{key}"] = str(metadata[key])

        try:
            response = await self._http.get().post(
                f"{self.API_BASE_URL}/{self._domain}/messages",
                auth=("api", self._api_key),
                data=data,
            )
        except httpx.HTTPError as e:
            logger.error(f"Mailgun request failed: {e}")
            raise DeliveryError(f"Mailgun request failed: {e}") from e

        raise_for_delivery(response, "mailgun")
        message_id = response.json().get("id")
        logger.info(f"Email sent to {recipient}: {message_id}")
        return DeliveryReceipt(
            status=DeliveryStatus.SENT,
            external_id=message_id,
            metadata={"provider": "mailgun"},
        )

    async def close(self) -> None:
        await self._http.close()
