"""
Lead Domain Models
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from leadflow.utils.time_utils import utc_now


class LeadStatus(str, Enum):
    """Lifecycle status of a lead"""
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    SENT_TO_HANDOVER = "sent_to_handover"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class Channel(str, Enum):
    """Outreach channels. Declaration order is the default-channel preference."""
    EMAIL = "email"
    SMS = "sms"
    CHAT = "chat"


# Metadata key holding the chat session a lead can be reached on
CHAT_SESSION_KEY = "chat_session_id"

MAX_SCORE = 100


class Lead(BaseModel):
    """Inbound sales lead"""
    id: str
    campaign_id: Optional[str] = None
    source: str = "unknown"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: LeadStatus = LeadStatus.NEW
    qualification_score: int = Field(default=0, ge=0, le=MAX_SCORE)
    assigned_channel: Optional[Channel] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else "there"

    @property
    def is_terminal(self) -> bool:
        return self.status == LeadStatus.ARCHIVED

    def available_channels(self) -> List[Channel]:
        """Channels this lead has contact info for, in enum order."""
        available = []
        if self.email:
            available.append(Channel.EMAIL)
        if self.phone:
            available.append(Channel.SMS)
        if self.metadata.get(CHAT_SESSION_KEY):
            available.append(Channel.CHAT)
        return available

    def recipient_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.SMS:
            return self.phone
        return self.metadata.get(CHAT_SESSION_KEY)

    def has_field(self, name: str) -> bool:
        """True when the attribute or metadata entry is present and non-empty."""
        value = getattr(self, name, None) if name in type(self).model_fields else None
        if value is None:
            value = self.metadata.get(name)
        return value not in (None, "", [], {})

    def get_field(self, name: str) -> Any:
        if name in type(self).model_fields:
            value = getattr(self, name)
            if value is not None:
                return value.value if isinstance(value, Enum) else value
        return self.metadata.get(name)

    def can_transition_to(self, status: LeadStatus) -> bool:
        return not self.is_terminal or status == LeadStatus.ARCHIVED
