"""
Communication Records
One append-only record per outbound or inbound attempt, including
handover delivery attempts.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid

from leadflow.utils.time_utils import utc_now


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    RECEIVED = "received"
    FAILED = "failed"


# Communication.channel prefix for handover delivery attempts
HANDOVER_CHANNEL_PREFIX = "handover:"


class Communication(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    lead_id: str
    channel: str
    direction: Direction
    content: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    external_id: Optional[str] = None
    conversation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_handover_attempt(self) -> bool:
        return self.channel.startswith(HANDOVER_CHANNEL_PREFIX)
