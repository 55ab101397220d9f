"""
Channel Agent Interface
Every outreach channel implements {generate_message, send}.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, TYPE_CHECKING

from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.lead import Channel

if TYPE_CHECKING:
    from leadflow.domain.services.text_generation import TextGenerationService


@dataclass
class DeliveryReceipt:
    """Result of handing one message to a channel provider"""
    status: DeliveryStatus
    external_id: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "external_id": self.external_id,
            "error": self.error,
            "simulated": self.simulated,
            "metadata": self.metadata,
        }


@dataclass
class MessageRequest:
    """Prompt material assembled by the conversation engine"""
    system_prompt: str
    prompt: str
    default_subject: Optional[str] = None


@dataclass
class GeneratedMessage:
    body: str
    subject: Optional[str] = None


class ChannelAgent(ABC):
    """
    Base class for channel agents.

    Subclasses declare the channel, a formatting instruction appended
    to the system prompt, and implement send().
    """

    format_instructions: str = ""
    max_length: Optional[int] = None

    def __init__(self, text_service: "TextGenerationService"):
        self._text = text_service

    @property
    @abstractmethod
    def channel(self) -> Channel:
        """Channel this agent delivers on"""
        pass

    @abstractmethod
    async def send(
        self,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DeliveryReceipt:
        """
        Deliver one message.

        Raises on provider failure so the caller's circuit breaker can
        count it; never returns partially sent state.
        """
        pass

    async def generate_message(self, request: MessageRequest) -> GeneratedMessage:
        """Generate channel-formatted content from the assembled prompt."""
        system_prompt = request.system_prompt
        if self.format_instructions:
            system_prompt = f"{system_prompt}\n\n{self.format_instructions}"
        text = await self._text.generate(system_prompt, request.prompt)
        return self.format_generated(text.strip(), request)

    def format_generated(self, text: str, request: MessageRequest) -> GeneratedMessage:
        if self.max_length and len(text) > self.max_length:
            text = text[: self.max_length - 3].rstrip() + "..."
        return GeneratedMessage(body=text, subject=request.default_subject)

    async def close(self) -> None:
        """Release provider resources"""
        pass
