"""
Handover Models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from leadflow.domain.models.campaign import DestinationType
from leadflow.domain.models.conversation import Message
from leadflow.domain.models.lead import Lead
from leadflow.utils.time_utils import utc_now


class HandoverCriterion(str, Enum):
    """Criteria in evaluation order"""
    QUALIFICATION_SCORE = "qualification_score"
    CONVERSATION_LENGTH = "conversation_length"
    KEYWORD_TRIGGERS = "keyword_triggers"
    GOAL_COMPLETION = "goal_completion"
    TIME_THRESHOLD = "time_threshold"


class HandoverEvaluation(BaseModel):
    """
    Result of evaluating every handover criterion.

    reason joins all criteria that hold with " and ".
    """
    should_handover: bool
    reason: str = ""
    triggered: List[HandoverCriterion] = Field(default_factory=list)
    details: Dict[str, str] = Field(default_factory=dict)
    evaluated_at: datetime = Field(default_factory=utc_now)


class HandoverPackage(BaseModel):
    """Uniform payload handed to every destination kind"""
    lead: Lead
    campaign_id: str
    campaign_name: str
    conversation_id: Optional[str] = None
    channel: Optional[str] = None
    reason: str
    qualification_score: int
    messages: List[Message] = Field(default_factory=list)
    completed_goals: List[str] = Field(default_factory=list)
    shared_notes: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def conversation_summary(self, limit: int = 10) -> str:
        recent = self.messages[-limit:]
        return "\n".join(f"{m.role.value}: {m.content}" for m in recent)


class HandoverResult(BaseModel):
    """
    Outcome of one delivery attempt to one destination.

    destination is the configured destination id; destination_id is the
    record id returned by the remote system, when it returns one.
    """
    destination: str
    destination_type: DestinationType
    success: bool
    destination_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True
    simulated: bool = False
    response: Dict[str, Any] = Field(default_factory=dict)
    attempted_at: datetime = Field(default_factory=utc_now)
