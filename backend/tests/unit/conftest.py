"""
Shared fixtures for unit tests: a controllable clock, recording channel
and handover doubles, and a fully wired in-memory pipeline.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from leadflow.core.config import ConfigManager, Settings
from leadflow.domain.interfaces.channel import ChannelAgent, DeliveryReceipt
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.models.campaign import (
    Campaign,
    CampaignGoal,
    ChannelPreferences,
    DestinationType,
    HandoverCriteria,
    HandoverDestination,
    TemplateStep,
)
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.handover import HandoverPackage, HandoverResult
from leadflow.domain.models.lead import Channel, Lead
from leadflow.domain.services.queue_service import InMemoryJobQueue
from leadflow.services.pipeline import PipelineContext
from leadflow.workers.job_worker import JobWorker


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.start = start or datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)
        self.now = self.start

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self.start).total_seconds()

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel(ChannelAgent):
    """Channel double that records sends and can be told to fail."""

    def __init__(self, text_service, channel: Channel):
        super().__init__(text_service)
        self._channel = channel
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    @property
    def channel(self) -> Channel:
        return self._channel

    async def send(self, recipient, content, subject=None, metadata=None) -> DeliveryReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"recipient": recipient, "content": content, "subject": subject, "metadata": metadata or {}})
        return DeliveryReceipt(status=DeliveryStatus.SENT, external_id=f"{self._channel.value}-{len(self.sent)}")


class FakeHandoverClient(HandoverDestinationClient):
    """Handover double; set error to make deliveries fail."""

    def __init__(self, destination_type: DestinationType):
        self._type = destination_type
        self.packages: List[HandoverPackage] = []
        self.error: Optional[Exception] = None

    @property
    def destination_type(self) -> DestinationType:
        return self._type

    async def deliver(self, destination: HandoverDestination, package: HandoverPackage) -> HandoverResult:
        if self.error is not None:
            raise self.error
        self.packages.append(package)
        return HandoverResult(
            destination=destination.id,
            destination_type=destination.type,
            success=True,
            destination_id=f"{destination.id}-record-{len(self.packages)}",
        )


def make_campaign(**overrides) -> Campaign:
    data = dict(
        id="camp-1",
        name="Solar Savings",
        goals=[CampaignGoal(name="budget_confirmed")],
        channels=ChannelPreferences(primary=Channel.EMAIL, fallback=[Channel.SMS]),
        templates={
            Channel.EMAIL: [
                TemplateStep(body="Hi {{name}}, welcome to {{campaign}}", subject="Welcome", delay_minutes=0),
                TemplateStep(body="Hi {{name}}, just checking in", subject="Following up", delay_minutes=60),
                TemplateStep(body="Hi {{name}}, last note from us", subject="Last note", delay_minutes=1440),
            ],
            Channel.SMS: [
                TemplateStep(body="Hi {{name}}, reply YES for a quote", delay_minutes=0),
                TemplateStep(body="Still interested, {{name}}?", delay_minutes=120),
            ],
        },
    )
    data.update(overrides)
    return Campaign(**data)


def make_lead(**overrides) -> Lead:
    data = dict(
        id="lead-1",
        campaign_id="camp-1",
        source="web_form",
        first_name="Dana",
        last_name="Reyes",
        email="dana@example.com",
    )
    data.update(overrides)
    return Lead(**data)


def make_destination(destination_id: str, destination_type: DestinationType, **config) -> HandoverDestination:
    return HandoverDestination(id=destination_id, type=destination_type, config=config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def config():
    return ConfigManager(env="test")


@pytest.fixture
def handover_clients():
    return {t: FakeHandoverClient(t) for t in DestinationType}


@pytest.fixture
def pipeline(clock, settings, config, handover_clients):
    """In-memory pipeline with recording channels and no LLM."""
    queue = InMemoryJobQueue(max_attempts=3, clock=clock)
    context = PipelineContext.build(
        settings=settings,
        config=config,
        queue=queue,
        channels={},
        handover_clients=handover_clients,
        clock=clock,
        time_func=clock.monotonic,
    )
    for channel in Channel:
        context.channels[channel] = RecordingChannel(context.text_service, channel)
    return context


@pytest.fixture
def worker(pipeline, clock):
    return JobWorker(pipeline, clock=clock)


__all__ = [
    "FakeClock",
    "FakeHandoverClient",
    "RecordingChannel",
    "make_campaign",
    "make_destination",
    "make_lead",
]
