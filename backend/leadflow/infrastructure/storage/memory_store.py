"""
In-Memory Pipeline Store
Single-process store used for tests and local runs.

Every mutation runs under one asyncio lock, which makes the
compare-and-set operations atomic within the process.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from leadflow.core.exceptions import ConversationConflictError, NotFoundError
from leadflow.domain.interfaces.pipeline_store import PipelineStore
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
from leadflow.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class InMemoryPipelineStore(PipelineStore):

    def __init__(self):
        self._lock = asyncio.Lock()
        self._leads: Dict[str, Lead] = {}
        self._campaigns: Dict[str, Campaign] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._contexts: Dict[str, CrossChannelContext] = {}
        self._communications: List[Communication] = []
        self._decisions: List[AgentDecision] = []
        self._claims: Set[str] = set()

    # Leads

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def save_lead(self, lead: Lead) -> Lead:
        async with self._lock:
            self._leads[lead.id] = lead.model_copy(deep=True)
        return lead

    async def update_lead_status(self, lead_id: str, status: LeadStatus) -> Lead:
        async with self._lock:
            lead = self._require_lead(lead_id)
            if not lead.can_transition_to(status):
                logger.warning(f"Lead {lead_id} is archived, ignoring status {status.value}")
                return lead.model_copy(deep=True)
            updated = lead.model_copy(update={"status": status, "updated_at": utc_now()})
            self._leads[lead_id] = updated
            return updated.model_copy(deep=True)

    async def merge_lead_score(self, lead_id: str, score: int) -> int:
        async with self._lock:
            lead = self._require_lead(lead_id)
            merged = max(lead.qualification_score, min(max(score, 0), 100))
            if merged != lead.qualification_score:
                self._leads[lead_id] = lead.model_copy(
                    update={"qualification_score": merged, "updated_at": utc_now()}
                )
            return merged

    async def set_assigned_channel(self, lead_id: str, channel: Channel) -> Lead:
        async with self._lock:
            lead = self._require_lead(lead_id)
            updated = lead.model_copy(update={"assigned_channel": channel, "updated_at": utc_now()})
            self._leads[lead_id] = updated
            return updated.model_copy(deep=True)

    def _require_lead(self, lead_id: str) -> Lead:
        lead = self._leads.get(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead

    # Campaigns

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        async with self._lock:
            self._campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    # Conversations

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            existing = self._find_active(conversation.lead_id, conversation.channel)
            if existing is not None:
                raise ConversationConflictError(
                    f"Lead {conversation.lead_id} already has an active {conversation.channel.value} conversation",
                    {"conversation_id": existing.id},
                )
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def find_active_conversation(self, lead_id: str, channel: Channel) -> Optional[Conversation]:
        conversation = self._find_active(lead_id, channel)
        return conversation.model_copy(deep=True) if conversation else None

    def _find_active(self, lead_id: str, channel: Channel) -> Optional[Conversation]:
        for conversation in self._conversations.values():
            if conversation.lead_id == lead_id and conversation.channel == channel and conversation.is_active:
                return conversation
        return None

    async def list_conversations(self, lead_id: str, active_only: bool = False) -> List[Conversation]:
        conversations = [
            c.model_copy(deep=True) for c in self._conversations.values()
            if c.lead_id == lead_id and (c.is_active or not active_only)
        ]
        return sorted(conversations, key=lambda c: c.started_at)

    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            updates: Dict[str, Any] = {"messages": [*conversation.messages, message]}
            self._conversations[conversation_id] = conversation.model_copy(update=updates)
            return self._conversations[conversation_id].model_copy(deep=True)

    async def compare_and_set_stage(
        self,
        conversation_id: str,
        expected_stage: int,
        new_stage: int,
        sent_at: Optional[datetime] = None
    ) -> bool:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            if conversation.mode != ConversationMode.TEMPLATE_MODE or conversation.template_stage != expected_stage:
                return False
            updates: Dict[str, Any] = {"template_stage": new_stage}
            if sent_at is not None:
                updates["last_sent_at"] = sent_at
            self._conversations[conversation_id] = conversation.model_copy(update=updates)
            return True

    async def restore_stage(self, conversation_id: str, stage: int, last_sent_at: Optional[datetime]) -> bool:
        """Undo a stage claim after a failed send."""
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            if conversation.mode != ConversationMode.TEMPLATE_MODE or conversation.template_stage != stage + 1:
                return False
            self._conversations[conversation_id] = conversation.model_copy(
                update={"template_stage": stage, "last_sent_at": last_sent_at}
            )
            return True

    async def transition_mode(
        self,
        conversation_id: str,
        from_modes: Iterable[ConversationMode],
        to_mode: ConversationMode,
        at: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> bool:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            if conversation.mode not in set(from_modes) or not conversation.can_transition_to(to_mode):
                return False
            at = at or utc_now()
            updates: Dict[str, Any] = {"mode": to_mode}
            if to_mode == ConversationMode.AI_MODE:
                updates["ai_mode_entered_at"] = at
            elif to_mode == ConversationMode.HANDOVER_PENDING:
                updates["handover_at"] = at
            elif to_mode == ConversationMode.COMPLETED:
                updates["completed_at"] = at
                updates["completion_reason"] = reason
            self._conversations[conversation_id] = conversation.model_copy(update=updates)
            return True

    async def update_goal_progress(self, conversation_id: str, progress: Dict[str, float]) -> None:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            self._conversations[conversation_id] = conversation.model_copy(
                update={"goal_progress": dict(progress)}
            )

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    # Cross-channel context

    async def get_shared_context(self, lead_id: str) -> CrossChannelContext:
        context = self._contexts.get(lead_id) or CrossChannelContext(lead_id=lead_id)
        return context.model_copy(deep=True)

    async def merge_shared_context(
        self,
        lead_id: str,
        notes: Optional[List[str]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> CrossChannelContext:
        async with self._lock:
            current = self._contexts.get(lead_id) or CrossChannelContext(lead_id=lead_id)
            merged = current.merged(notes, preferences)
            self._contexts[lead_id] = merged
            return merged.model_copy(deep=True)

    # Audit records

    async def record_communication(self, communication: Communication) -> Communication:
        async with self._lock:
            self._communications.append(communication)
        return communication

    async def list_communications(self, lead_id: str, channel: Optional[str] = None) -> List[Communication]:
        return [
            c for c in self._communications
            if c.lead_id == lead_id and (channel is None or c.channel == channel)
        ]

    async def record_decision(self, decision: AgentDecision) -> AgentDecision:
        async with self._lock:
            self._decisions.append(decision)
        return decision

    async def list_decisions(self, lead_id: str) -> List[AgentDecision]:
        return [d for d in self._decisions if d.lead_id == lead_id]

    # Dispatch idempotency

    async def claim_dispatch(self, key: str) -> bool:
        async with self._lock:
            if key in self._claims:
                return False
            self._claims.add(key)
            return True

    async def release_dispatch(self, key: str) -> None:
        async with self._lock:
            self._claims.discard(key)
