"""
Agent Decision Models
Append-only audit records of routing decisions, plus the strict
schema for routing advice returned by the text-generation capability.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Literal
from datetime import datetime
from enum import Enum
import uuid

from leadflow.domain.models.lead import Channel
from leadflow.utils.time_utils import utc_now


class DecisionAction(str, Enum):
    ASSIGN_CHANNEL = "assign_channel"
    CONTINUE_CONVERSATION = "continue_conversation"
    TRIGGER_HANDOVER = "trigger_handover"
    ARCHIVE = "archive"
    PROCESSING_ERROR = "processing_error"


class DecisionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Job queue priority (1-10) per decision priority
PRIORITY_TO_JOB_PRIORITY = {
    DecisionPriority.LOW: 3,
    DecisionPriority.MEDIUM: 5,
    DecisionPriority.HIGH: 8,
}


class AgentDecision(BaseModel):
    """Immutable decision record"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    lead_id: str
    actor: str
    action: DecisionAction
    reasoning: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def effective_action(self) -> DecisionAction:
        """The action callers should execute (processing errors carry a fallback)."""
        if self.action == DecisionAction.PROCESSING_ERROR:
            return DecisionAction(self.data.get("fallback_action", DecisionAction.ASSIGN_CHANNEL.value))
        return self.action

    @property
    def priority(self) -> DecisionPriority:
        return DecisionPriority(self.data.get("priority", DecisionPriority.MEDIUM.value))


class RoutingAdvice(BaseModel):
    """Structured routing output expected from the text-generation capability"""
    model_config = ConfigDict(extra="forbid")

    action: Literal["assign_channel", "continue_conversation", "archive"]
    channel: Channel
    priority: DecisionPriority
    reasoning: str = Field(min_length=1)
    initial_message_focus: str = ""
