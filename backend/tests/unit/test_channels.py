"""
Unit Tests for Channel Agents
Tests for Mailgun email, Vonage SMS and Redis chat delivery, simulated
mode, and channel-specific formatting of generated text.
"""
from base64 import b64encode
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.interfaces.channel import MessageRequest
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.lead import Channel
from leadflow.domain.services.circuit_breaker import CircuitBreaker
from leadflow.domain.services.text_generation import FALLBACK_TEXT, TextGenerationService
from leadflow.infrastructure.channels.chat import RedisChatChannel
from leadflow.infrastructure.channels.email import MailgunEmailChannel
from leadflow.infrastructure.channels.factory import ChannelFactory
from leadflow.infrastructure.channels.sms import VonageSMSChannel


@pytest.fixture
def text_service():
    return TextGenerationService(None, CircuitBreaker("llm"))


class TestMailgunEmailChannel:

    @pytest.mark.asyncio
    async def test_send_posts_form_with_basic_auth(self, text_service):
        """Mailgun receives from/to/subject/text plus tracking variables"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "<20240304.1@mg.test>", "message": "Queued"})

        channel = MailgunEmailChannel(
            text_service,
            api_key="key-123",
            domain="mg.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        receipt = await channel.send(
            "dana@example.com", "Hello Dana", subject="Welcome", metadata={"lead_id": "lead-1"}
        )

        request = requests[0]
        assert str(request.url) == "https://api.mailgun.net/v3/mg.test/messages"
        assert request.headers["Authorization"] == "Basic " + b64encode(b"api:key-123").decode()
        form = parse_qs(request.content.decode())
        assert form["to"] == ["dana@example.com"]
        assert form["subject"] == ["Welcome"]
        assert form["v:lead_id"] == ["lead-1"]
        assert receipt.status == DeliveryStatus.SENT
        assert receipt.external_id == "<20240304.1@mg.test>"
        assert receipt.simulated is False

    @pytest.mark.asyncio
    async def test_provider_error_raises(self, text_service):
        """Non-2xx responses raise so the channel breaker can count them"""
        channel = MailgunEmailChannel(
            text_service,
            api_key="key-123",
            domain="mg.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="oops"))),
        )

        with pytest.raises(DeliveryError) as exc_info:
            await channel.send("dana@example.com", "Hello")

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unconfigured_send_is_simulated(self, text_service):
        channel = MailgunEmailChannel(text_service)

        receipt = await channel.send("dana@example.com", "Hello")

        assert receipt.simulated is True
        assert receipt.success is True


class TestVonageSMSChannel:

    def _response(self, status="0", **extra):
        return SimpleNamespace(messages=[SimpleNamespace(status=status, message_id="msg-9", **extra)])

    @pytest.mark.asyncio
    async def test_send_normalizes_number(self, text_service):
        """Numbers are sent as bare digits"""
        sms_client = MagicMock()
        sms_client.send.return_value = self._response()
        channel = VonageSMSChannel(text_service, from_number="Solar", sms_client=sms_client)

        receipt = await channel.send("+1 (555) 000-1111", "Hi Dana")

        message = sms_client.send.call_args.args[0]
        assert message.to == "15550001111"
        assert message.text == "Hi Dana"
        assert receipt.external_id == "msg-9"

    @pytest.mark.asyncio
    async def test_rejected_status_raises(self, text_service):
        sms_client = MagicMock()
        sms_client.send.return_value = self._response(status="2", error_text="Missing to param")
        channel = VonageSMSChannel(text_service, sms_client=sms_client)

        with pytest.raises(DeliveryError, match="Missing to param"):
            await channel.send("+15550001111", "Hi")

    @pytest.mark.asyncio
    async def test_sdk_exception_raises_delivery_error(self, text_service):
        sms_client = MagicMock()
        sms_client.send.side_effect = RuntimeError("connection reset")
        channel = VonageSMSChannel(text_service, sms_client=sms_client)

        with pytest.raises(DeliveryError, match="connection reset"):
            await channel.send("+15550001111", "Hi")

    @pytest.mark.asyncio
    async def test_unconfigured_send_is_simulated(self, text_service):
        receipt = await VonageSMSChannel(text_service).send("+15550001111", "Hi")

        assert receipt.simulated is True

    @pytest.mark.asyncio
    async def test_generated_text_is_truncated_for_sms(self):
        """SMS bodies are capped at the channel max length"""
        provider = MagicMock()
        provider.generate = AsyncMock(return_value="word " * 200)
        channel = VonageSMSChannel(TextGenerationService(provider, CircuitBreaker("llm")))

        generated = await channel.generate_message(MessageRequest("system", "prompt"))

        assert len(generated.body) <= VonageSMSChannel.max_length
        assert generated.body.endswith("...")
        assert "single SMS" in provider.generate.call_args.args[0]


class TestRedisChatChannel:

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.publish = AsyncMock(return_value=1)
        client.rpush = AsyncMock()
        client.ltrim = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_publish_with_listener_is_delivered(self, text_service, redis_client):
        """A connected widget means the message was delivered"""
        channel = RedisChatChannel(text_service, redis_client=redis_client)

        receipt = await channel.send("sess-9", "Hi there", metadata={"lead_id": "lead-1", "skip": {"x": 1}})

        key, event = redis_client.publish.call_args.args
        assert key == "leadflow:chat:sess-9"
        assert '"content": "Hi there"' in event
        assert '"skip"' not in event
        assert receipt.status == DeliveryStatus.DELIVERED
        redis_client.ltrim.assert_awaited_once_with("leadflow:chat:sess-9:history", -100, -1)

    @pytest.mark.asyncio
    async def test_publish_without_listener_is_sent(self, text_service, redis_client):
        redis_client.publish.return_value = 0
        channel = RedisChatChannel(text_service, redis_client=redis_client)

        receipt = await channel.send("sess-9", "Hi there")

        assert receipt.status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_redis_failure_raises(self, text_service, redis_client):
        redis_client.publish.side_effect = ConnectionError("redis down")
        channel = RedisChatChannel(text_service, redis_client=redis_client)

        with pytest.raises(DeliveryError):
            await channel.send("sess-9", "Hi there")


class TestChannelFactory:

    def test_every_channel_is_built(self, settings, text_service):
        agents = ChannelFactory.create_all(settings, text_service)

        assert set(agents) == set(Channel)
        assert all(agent.channel == channel for channel, agent in agents.items())

    @pytest.mark.asyncio
    async def test_fallback_text_without_llm(self, text_service):
        """Generation degrades to the fixed acknowledgment"""
        channel = RedisChatChannel(text_service)

        generated = await channel.generate_message(MessageRequest("system", "prompt"))

        assert generated.body == FALLBACK_TEXT
