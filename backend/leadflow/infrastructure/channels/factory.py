"""
Channel Agent Factory
"""
from typing import Dict, Optional, Type

import httpx

from leadflow.core.config import Settings
from leadflow.domain.interfaces.channel import ChannelAgent
from leadflow.domain.models.lead import Channel
from leadflow.domain.services.text_generation import TextGenerationService
from leadflow.infrastructure.channels.chat import RedisChatChannel
from leadflow.infrastructure.channels.email import MailgunEmailChannel
from leadflow.infrastructure.channels.sms import VonageSMSChannel


class ChannelFactory:
    """Builds one agent per Channel; every channel must be covered."""

    _agents: Dict[Channel, Type[ChannelAgent]] = {
        Channel.EMAIL: MailgunEmailChannel,
        Channel.SMS: VonageSMSChannel,
        Channel.CHAT: RedisChatChannel,
    }

    @classmethod
    def register(cls, channel: Channel, agent_class: Type[ChannelAgent]) -> None:
        cls._agents[channel] = agent_class

    @classmethod
    def list_channels(cls) -> list[str]:
        return [c.value for c in cls._agents]

    @classmethod
    def create_all(
        cls,
        settings: Settings,
        text_service: TextGenerationService,
        redis_client=None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> Dict[Channel, ChannelAgent]:
        missing = [c.value for c in Channel if c not in cls._agents]
        if missing:
            raise ValueError(f"No channel agent registered for: {', '.join(missing)}")

        agents: Dict[Channel, ChannelAgent] = {}
        for channel, agent_class in cls._agents.items():
            if agent_class is MailgunEmailChannel:
                agents[channel] = MailgunEmailChannel(
                    text_service,
                    api_key=settings.mailgun_api_key,
                    domain=settings.mailgun_domain,
                    from_address=settings.mailgun_from,
                    http_client=http_client,
                )
            elif agent_class is VonageSMSChannel:
                agents[channel] = VonageSMSChannel(
                    text_service,
                    api_key=settings.vonage_api_key,
                    api_secret=settings.vonage_api_secret,
                    from_number=settings.vonage_from_number,
                )
            elif agent_class is RedisChatChannel:
                agents[channel] = RedisChatChannel(text_service, redis_client=redis_client)
            else:
                agents[channel] = agent_class(text_service)
        return agents
