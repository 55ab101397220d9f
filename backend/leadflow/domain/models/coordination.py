"""
Coordination Models
Schedules, typed inter-agent messages, decision feedback and
shared goal progress.
"""
from pydantic import BaseModel, Field
from typing import Annotated, Optional, Dict, Any, List, Literal, Union
from datetime import datetime
from enum import Enum
import uuid

from leadflow.domain.models.lead import Channel
from leadflow.domain.models.campaign import CoordinationStrategy
from leadflow.domain.models.agent_decision import AgentDecision
from leadflow.utils.time_utils import utc_now


class CoordinationEntryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"


class MessageCoordination(BaseModel):
    """One agent's slot in a lead's outreach schedule"""
    agent_id: str
    channel: Channel
    priority: int = Field(default=1, ge=1)
    scheduled_time: datetime
    status: CoordinationEntryStatus = CoordinationEntryStatus.PENDING


class CoordinationSchedule(BaseModel):
    """Persisted schedule keyed by (campaign, lead)"""
    campaign_id: str
    lead_id: str
    strategy: CoordinationStrategy
    entries: List[MessageCoordination] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def pending_entries(self) -> List[MessageCoordination]:
        return sorted(
            (e for e in self.entries if e.status == CoordinationEntryStatus.PENDING),
            key=lambda e: (e.scheduled_time, e.priority),
        )


class AgentFeedback(BaseModel):
    """One agent's opinion on a proposed decision"""
    agent_id: str
    agrees: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ConsensusDecision(BaseModel):
    """Aggregated feedback, broadcast with the original decision attached"""
    decision: AgentDecision
    consensus: bool
    agreement_ratio: float
    weighted_support: float
    feedback: List[AgentFeedback] = Field(default_factory=list)


class AgentMessageType(str, Enum):
    DECISION = "decision"
    STATUS = "status"
    HANDOVER = "handover"
    GOAL_UPDATE = "goal_update"
    COORDINATION = "coordination"


class DecisionPayload(BaseModel):
    kind: Literal["decision"] = "decision"
    decision: AgentDecision
    requires_coordination: bool = False


class StatusPayload(BaseModel):
    kind: Literal["status"] = "status"
    status: str
    detail: Dict[str, Any] = Field(default_factory=dict)


class HandoverPayload(BaseModel):
    kind: Literal["handover"] = "handover"
    to_agent_id: str
    reason: str
    context: Dict[str, Any] = Field(default_factory=dict)


class GoalUpdatePayload(BaseModel):
    kind: Literal["goal_update"] = "goal_update"
    goal: str
    increment: float
    current: float
    target: Optional[float] = None


class CoordinationPayload(BaseModel):
    kind: Literal["coordination"] = "coordination"
    consensus: ConsensusDecision


AgentMessagePayload = Annotated[
    Union[DecisionPayload, StatusPayload, HandoverPayload, GoalUpdatePayload, CoordinationPayload],
    Field(discriminator="kind"),
]


class AgentMessage(BaseModel):
    """Message delivered to one agent's mailbox"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    from_agent: str
    to_agent: str
    campaign_id: str
    lead_id: str
    payload: AgentMessagePayload
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def message_type(self) -> AgentMessageType:
        return AgentMessageType(self.payload.kind)


class GoalProgress(BaseModel):
    """Merged goal progress for one (campaign, lead)"""
    campaign_id: str
    lead_id: str
    progress: Dict[str, float] = Field(default_factory=dict)
    targets: Dict[str, float] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)

    @property
    def completed_goals(self) -> List[str]:
        return [
            name for name, target in self.targets.items()
            if self.progress.get(name, 0.0) >= target
        ]

    @property
    def is_complete(self) -> bool:
        if not self.required:
            return False
        done = set(self.completed_goals)
        return all(name in done for name in self.required)
