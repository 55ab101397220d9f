"""
Redis Chat Channel
Publishes agent messages to the lead's live chat session.

Chat widgets subscribe to leadflow:chat:{session_id}; the last messages
are also kept in a capped list so a reconnecting widget can catch up.
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.channel import ChannelAgent, DeliveryReceipt
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.lead import Channel
from leadflow.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class RedisChatChannel(ChannelAgent):

    CHANNEL_KEY = "leadflow:chat:{session_id}"
    HISTORY_KEY = "leadflow:chat:{session_id}:history"
    HISTORY_MAX_LENGTH = 100

    format_instructions = "Format: one or two short conversational chat lines, no greeting after the first message."
    max_length = 1000

    def __init__(self, text_service, redis_client=None):
        super().__init__(text_service)
        self._redis = redis_client

    @property
    def channel(self) -> Channel:
        return Channel.CHAT

    async def send(
        self,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DeliveryReceipt:
        message_id = f"chat-{uuid.uuid4().hex[:12]}"
        if self._redis is None:
            logger.warning(f"Simulating chat message to session {recipient} (no Redis client)")
            return DeliveryReceipt(status=DeliveryStatus.SENT, external_id=message_id, simulated=True)

        event = json.dumps({
            "type": "agent_message",
            "message_id": message_id,
            "content": content,
            "sent_at": utc_now().isoformat(),
            "metadata": {k: v for k, v in (metadata or {}).items() if isinstance(v, (str, int, float, bool))},
        })
        history_key = self.HISTORY_KEY.format(session_id=recipient)
        try:
            listeners = await self._redis.publish(self.CHANNEL_KEY.format(session_id=recipient), event)
            await self._redis.rpush(history_key, event)
            await self._redis.ltrim(history_key, -self.HISTORY_MAX_LENGTH, -1)
        except Exception as e:
            logger.error(f"Chat publish to session {recipient} failed: {e}")
            raise DeliveryError(f"chat publish failed: {e}") from e

        logger.debug(f"Chat message {message_id} published to {listeners} listener(s)")
        return DeliveryReceipt(
            status=DeliveryStatus.DELIVERED if listeners else DeliveryStatus.SENT,
            external_id=message_id,
            metadata={"listeners": listeners},
        )
