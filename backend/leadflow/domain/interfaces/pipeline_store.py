"""
Pipeline Store Interface
Per-entity persistence for leads, campaigns, conversations and audit records.

There are no cross-entity transactions. Conditional updates
(compare-and-set on conversation stage/mode, max-merge on lead score,
dispatch claims) are the only atomicity guarantees callers may rely on.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from leadflow.domain.models.agent_decision import AgentDecision
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.communication import Communication
from leadflow.domain.models.conversation import (
    Conversation,
    ConversationMode,
    CrossChannelContext,
    Message,
)
from leadflow.domain.models.lead import Channel, Lead, LeadStatus


class PipelineStore(ABC):

    # Leads

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        pass

    @abstractmethod
    async def save_lead(self, lead: Lead) -> Lead:
        pass

    @abstractmethod
    async def update_lead_status(self, lead_id: str, status: LeadStatus) -> Lead:
        """Set status unless the lead is archived. Raises NotFoundError."""
        pass

    @abstractmethod
    async def merge_lead_score(self, lead_id: str, score: int) -> int:
        """Store max(current, score) and return the resulting score."""
        pass

    @abstractmethod
    async def set_assigned_channel(self, lead_id: str, channel: Channel) -> Lead:
        pass

    # Campaigns

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        pass

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        pass

    # Conversations

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Raises ConversationConflictError if (lead, channel) already has an active conversation."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def find_active_conversation(self, lead_id: str, channel: Channel) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def list_conversations(self, lead_id: str, active_only: bool = False) -> List[Conversation]:
        pass

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        pass

    @abstractmethod
    async def compare_and_set_stage(
        self,
        conversation_id: str,
        expected_stage: int,
        new_stage: int,
        sent_at: Optional[datetime] = None
    ) -> bool:
        """
        Advance template_stage only if the conversation is still in
        TEMPLATE_MODE at expected_stage.
        """
        pass

    @abstractmethod
    async def restore_stage(self, conversation_id: str, stage: int, last_sent_at: Optional[datetime]) -> bool:
        """Undo a stage advance (stage + 1 -> stage) after the send failed."""
        pass

    @abstractmethod
    async def transition_mode(
        self,
        conversation_id: str,
        from_modes: Iterable[ConversationMode],
        to_mode: ConversationMode,
        at: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> bool:
        """Move to to_mode only if the current mode is one of from_modes."""
        pass

    @abstractmethod
    async def update_goal_progress(self, conversation_id: str, progress: Dict[str, float]) -> None:
        pass

    # Cross-channel context

    @abstractmethod
    async def get_shared_context(self, lead_id: str) -> CrossChannelContext:
        pass

    @abstractmethod
    async def merge_shared_context(
        self,
        lead_id: str,
        notes: Optional[List[str]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> CrossChannelContext:
        pass

    # Audit records

    @abstractmethod
    async def record_communication(self, communication: Communication) -> Communication:
        pass

    @abstractmethod
    async def list_communications(self, lead_id: str, channel: Optional[str] = None) -> List[Communication]:
        pass

    @abstractmethod
    async def record_decision(self, decision: AgentDecision) -> AgentDecision:
        pass

    @abstractmethod
    async def list_decisions(self, lead_id: str) -> List[AgentDecision]:
        pass

    # Dispatch idempotency

    @abstractmethod
    async def claim_dispatch(self, key: str) -> bool:
        """Return True for the first caller claiming key, False afterwards."""
        pass

    @abstractmethod
    async def release_dispatch(self, key: str) -> None:
        pass

    async def close(self) -> None:
        pass
