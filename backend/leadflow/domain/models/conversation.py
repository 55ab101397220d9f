"""
Conversation Domain Models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from leadflow.domain.models.lead import Channel
from leadflow.utils.time_utils import utc_now


class ConversationMode(str, Enum):
    """
    Conversation state machine.

    TEMPLATE_MODE -> AI_MODE -> HANDOVER_PENDING -> COMPLETED.
    AI_MODE is entered at most once and never left for TEMPLATE_MODE.
    """
    TEMPLATE_MODE = "template_mode"
    AI_MODE = "ai_mode"
    HANDOVER_PENDING = "handover_pending"
    COMPLETED = "completed"


ACTIVE_MODES = (ConversationMode.TEMPLATE_MODE, ConversationMode.AI_MODE, ConversationMode.HANDOVER_PENDING)

ALLOWED_TRANSITIONS = {
    ConversationMode.TEMPLATE_MODE: {ConversationMode.AI_MODE, ConversationMode.COMPLETED},
    ConversationMode.AI_MODE: {ConversationMode.HANDOVER_PENDING, ConversationMode.COMPLETED},
    ConversationMode.HANDOVER_PENDING: {ConversationMode.COMPLETED},
    ConversationMode.COMPLETED: set(),
}


class MessageRole(str, Enum):
    """Who authored a conversation message"""
    AGENT = "agent"
    LEAD = "lead"


class Message(BaseModel):
    """Single message in a conversation"""
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    is_scripted: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CrossChannelContext(BaseModel):
    """Notes and preferences shared by every conversation of one lead"""
    lead_id: str
    notes: List[str] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)

    def merged(
        self,
        notes: Optional[List[str]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> "CrossChannelContext":
        combined_notes = list(self.notes)
        for note in notes or []:
            if note not in combined_notes:
                combined_notes.append(note)
        return CrossChannelContext(
            lead_id=self.lead_id,
            notes=combined_notes,
            preferences={**self.preferences, **(preferences or {})},
            updated_at=utc_now(),
        )

    def summary(self) -> str:
        lines = []
        if self.notes:
            lines.append("Notes: " + "; ".join(self.notes[-10:]))
        if self.preferences:
            prefs = ", ".join(f"{k}={v}" for k, v in self.preferences.items())
            lines.append(f"Preferences: {prefs}")
        return "\n".join(lines)


class Conversation(BaseModel):
    """One conversation per (lead, channel, agent)"""
    id: str
    lead_id: str
    campaign_id: str
    channel: Channel
    agent_id: str
    mode: ConversationMode = ConversationMode.TEMPLATE_MODE
    template_stage: int = Field(default=0, ge=0)
    messages: List[Message] = Field(default_factory=list)
    goal_progress: Dict[str, float] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    last_sent_at: Optional[datetime] = None
    ai_mode_entered_at: Optional[datetime] = None
    handover_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.mode != ConversationMode.COMPLETED

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def has_reply(self) -> bool:
        return any(m.role == MessageRole.LEAD for m in self.messages)

    def inbound_messages(self) -> List[Message]:
        return [m for m in self.messages if m.role == MessageRole.LEAD]

    def can_transition_to(self, mode: ConversationMode) -> bool:
        return mode in ALLOWED_TRANSITIONS[self.mode]

    def transcript(self, limit: Optional[int] = None) -> str:
        messages = self.messages[-limit:] if limit else self.messages
        return "\n".join(
            f"{'Lead' if m.role == MessageRole.LEAD else 'Agent'}: {m.content}"
            for m in messages
        )
