"""
Campaign Domain Models
Goals, qualification and handover policy, channel preferences and
the agents that work a campaign's leads.
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from leadflow.domain.models.lead import Channel
from leadflow.utils.time_utils import utc_now


class CoordinationStrategy(str, Enum):
    """How multiple agents share outreach to one lead"""
    ROUND_ROBIN = "round_robin"
    PRIORITY_BASED = "priority_based"
    CHANNEL_SPECIFIC = "channel_specific"


class DestinationType(str, Enum):
    """Kinds of handover destinations"""
    CRM = "crm"
    MARKETPLACE = "marketplace"
    WEBHOOK = "webhook"
    EMAIL_NOTIFY = "email_notify"


class CampaignGoal(BaseModel):
    """Named target tracked per (campaign, lead)"""
    name: str
    target: float = Field(default=1.0, gt=0)
    keywords: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class QualificationCriteria(BaseModel):
    min_score: int = Field(default=0, ge=0, le=100)
    required_fields: List[str] = Field(default_factory=list)
    required_goals: List[str] = Field(default_factory=list)


class ChannelPreferences(BaseModel):
    primary: Channel = Channel.EMAIL
    fallback: List[Channel] = Field(default_factory=list)

    def ordering(self) -> List[Channel]:
        """Primary first, then fallbacks, without duplicates."""
        ordered = [self.primary]
        for channel in self.fallback:
            if channel not in ordered:
                ordered.append(channel)
        return ordered


class HandoverCriteria(BaseModel):
    """
    Handover triggers. Each criterion is optional; an unset criterion
    never fires.
    """
    score_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    message_count_threshold: Optional[int] = Field(default=None, ge=1)
    keyword_triggers: List[str] = Field(default_factory=list)
    required_goals: List[str] = Field(default_factory=list)
    time_threshold_seconds: Optional[int] = Field(default=None, ge=1)


class AgentAssignment(BaseModel):
    agent_id: str
    capabilities: List[str] = Field(default_factory=list)
    role: str = "primary"


class TemplateStep(BaseModel):
    """One scripted message; delay is measured from the previous send."""
    body: str
    subject: Optional[str] = None
    delay_minutes: int = Field(default=0, ge=0)


class HandoverDestination(BaseModel):
    """
    Downstream system a qualified lead is pushed to.

    config holds endpoint/auth settings (endpoint, api_key, headers,
    secret, recipients); field_mapping maps destination field -> lead field.
    """
    id: str
    type: DestinationType
    name: Optional[str] = None
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    field_mapping: Dict[str, str] = Field(default_factory=dict)


# Delays of the generated default sequence, relative to the previous send
DEFAULT_SEQUENCE_DELAYS_MINUTES = [0, 60, 24 * 60, 3 * 24 * 60, 7 * 24 * 60, 14 * 24 * 60]


class Campaign(BaseModel):
    """Outreach campaign"""
    id: str
    name: str
    description: Optional[str] = None
    goals: List[CampaignGoal] = Field(default_factory=list)
    qualification: QualificationCriteria = Field(default_factory=QualificationCriteria)
    channels: ChannelPreferences = Field(default_factory=ChannelPreferences)
    handover: HandoverCriteria = Field(default_factory=HandoverCriteria)
    agents: List[AgentAssignment] = Field(default_factory=list)
    strategy: CoordinationStrategy = CoordinationStrategy.ROUND_ROBIN
    templates: Dict[Channel, List[TemplateStep]] = Field(default_factory=dict)
    destinations: List[HandoverDestination] = Field(default_factory=list)
    ai_instructions: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_multi_agent(self) -> bool:
        return len(self.agents) > 1

    @property
    def primary_agent_id(self) -> str:
        return self.agents[0].agent_id if self.agents else f"{self.id}-agent"

    def goal_targets(self) -> Dict[str, float]:
        return {goal.name: goal.target for goal in self.goals}

    def required_goal_names(self) -> List[str]:
        """Goals that must all be met for completion (all goals when none are marked)."""
        return list(self.qualification.required_goals) or [goal.name for goal in self.goals]

    def enabled_destinations(self) -> List[HandoverDestination]:
        return [d for d in self.destinations if d.enabled]

    def get_destination(self, destination_id: str) -> Optional[HandoverDestination]:
        for destination in self.destinations:
            if destination.id == destination_id:
                return destination
        return None

    def template_steps(self, channel: Channel) -> List[TemplateStep]:
        """Configured steps for a channel, or a generated default cadence."""
        steps = self.templates.get(channel)
        if steps:
            return steps
        return generate_default_sequence(self, channel)


def generate_default_sequence(campaign: Campaign, channel: Channel) -> List[TemplateStep]:
    """
    Default follow-up cadence used when a campaign ships no templates:
    immediately, one hour later, then one day, three days, a week and
    two weeks apart. {{name}} is replaced with the lead's name at send time.
    """
    topic = campaign.description or campaign.name
    bodies = [
        "Hi {{name}}, thanks for your interest in " + topic + ". Do you have a minute to tell us what you are looking for?",
        "Hi {{name}}, just following up. Is there anything we can answer for you about " + topic + "?",
        "Hi {{name}}, checking in again. Many people in your position ask about pricing and timing. Happy to help with either.",
        "Hi {{name}}, we would still love to help. Reply any time and a specialist will get back to you.",
        "Hi {{name}}, one last note from us about " + topic + ". Let us know if the timing is better now.",
        "Hi {{name}}, we will stop reaching out after this message. Reply if you would like to pick things back up.",
    ]
    steps = []
    for index, body in enumerate(bodies):
        subject = None
        if channel == Channel.EMAIL:
            subject = f"{campaign.name}" if index == 0 else f"Re: {campaign.name}"
        steps.append(TemplateStep(
            body=body,
            subject=subject,
            delay_minutes=DEFAULT_SEQUENCE_DELAYS_MINUTES[index],
        ))
    return steps
