"""
Supabase Pipeline Store
Durable PipelineStore on Supabase (Postgres via PostgREST).

Tables (one row per entity, nested values in jsonb columns):
- leads, campaigns, conversations
- shared_contexts (lead_id primary key)
- communications, agent_decisions (append only)
- dispatch_claims (claim_key primary key)

Conditional updates are expressed as filtered UPDATEs; a row coming
back means the condition held. conversations needs a unique partial
index on (lead_id, channel) where mode is not 'completed'.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from leadflow.core.exceptions import ConversationConflictError, DependencyError, NotFoundError
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import AgentDecision
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.communication import Communication
from leadflow.domain.models.conversation import (
    ACTIVE_MODES,
    ALLOWED_TRANSITIONS,
    Conversation,
    ConversationMode,
    CrossChannelContext,
    Message,
)
from leadflow.domain.models.lead import Channel, Lead, LeadStatus
from leadflow.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class SupabasePipelineStore(PipelineStore):

    LEADS = "leads"
    CAMPAIGNS = "campaigns"
    CONVERSATIONS = "conversations"
    CONTEXTS = "shared_contexts"
    COMMUNICATIONS = "communications"
    DECISIONS = "agent_decisions"
    CLAIMS = "dispatch_claims"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    @classmethod
    def from_settings(cls, url: str, service_key: str) -> "SupabasePipelineStore":
        return cls(create_client(url, service_key))

    async def _execute(self, query, action: str):
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise
            logger.error(f"Supabase {action} failed: {e}")
            raise DependencyError("supabase", f"{action} failed: {e}") from e

    async def _select_one(self, table: str, key: str, value: str) -> Optional[Dict[str, Any]]:
        response = await self._execute(
            self.supabase.table(table).select("*").eq(key, value).limit(1),
            f"select {table}",
        )
        return response.data[0] if response.data else None

    # Leads

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        row = await self._select_one(self.LEADS, "id", lead_id)
        return Lead.model_validate(row) if row else None

    async def save_lead(self, lead: Lead) -> Lead:
        await self._execute(
            self.supabase.table(self.LEADS).upsert(lead.model_dump(mode="json")),
            "save lead",
        )
        return lead

    async def _require_lead(self, lead_id: str) -> Lead:
        lead = await self.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead

    async def update_lead_status(self, lead_id: str, status: LeadStatus) -> Lead:
        query = self.supabase.table(self.LEADS).update({
            "status": status.value,
            "updated_at": utc_now().isoformat(),
        }).eq("id", lead_id)
        if status != LeadStatus.ARCHIVED:
            query = query.neq("status", LeadStatus.ARCHIVED.value)

        response = await self._execute(query, "update lead status")
        if response.data:
            return Lead.model_validate(response.data[0])

        lead = await self._require_lead(lead_id)
        logger.warning(f"Lead {lead_id} is archived, ignoring status {status.value}")
        return lead

    async def merge_lead_score(self, lead_id: str, score: int) -> int:
        score = min(max(score, 0), 100)
        await self._execute(
            self.supabase.table(self.LEADS).update({
                "qualification_score": score,
                "updated_at": utc_now().isoformat(),
            }).eq("id", lead_id).lt("qualification_score", score),
            "merge lead score",
        )
        lead = await self._require_lead(lead_id)
        return lead.qualification_score

    async def set_assigned_channel(self, lead_id: str, channel: Channel) -> Lead:
        response = await self._execute(
            self.supabase.table(self.LEADS).update({
                "assigned_channel": channel.value,
                "updated_at": utc_now().isoformat(),
            }).eq("id", lead_id),
            "set assigned channel",
        )
        if not response.data:
            raise NotFoundError("lead", lead_id)
        return Lead.model_validate(response.data[0])

    # Campaigns

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = await self._select_one(self.CAMPAIGNS, "id", campaign_id)
        return Campaign.model_validate(row) if row else None

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        await self._execute(
            self.supabase.table(self.CAMPAIGNS).upsert(campaign.model_dump(mode="json")),
            "save campaign",
        )
        return campaign

    # Conversations

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        existing = await self.find_active_conversation(conversation.lead_id, conversation.channel)
        if existing is not None:
            raise ConversationConflictError(
                f"Lead {conversation.lead_id} already has an active {conversation.channel.value} conversation",
                {"conversation_id": existing.id},
            )
        try:
            await self._execute(
                self.supabase.table(self.CONVERSATIONS).insert(conversation.model_dump(mode="json")),
                "create conversation",
            )
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise ConversationConflictError(
                    f"Lead {conversation.lead_id} already has an active {conversation.channel.value} conversation"
                ) from e
            raise
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await self._select_one(self.CONVERSATIONS, "id", conversation_id)
        return Conversation.model_validate(row) if row else None

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    async def find_active_conversation(self, lead_id: str, channel: Channel) -> Optional[Conversation]:
        response = await self._execute(
            self.supabase.table(self.CONVERSATIONS).select("*")
            .eq("lead_id", lead_id)
            .eq("channel", channel.value)
            .in_("mode", [m.value for m in ACTIVE_MODES])
            .limit(1),
            "find active conversation",
        )
        return Conversation.model_validate(response.data[0]) if response.data else None

    async def list_conversations(self, lead_id: str, active_only: bool = False) -> List[Conversation]:
        query = self.supabase.table(self.CONVERSATIONS).select("*").eq("lead_id", lead_id)
        if active_only:
            query = query.in_("mode", [m.value for m in ACTIVE_MODES])
        response = await self._execute(query.order("started_at"), "list conversations")
        return [Conversation.model_validate(row) for row in response.data or []]

    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        """Read-modify-write of the messages array; callers hold the lead lock."""
        conversation = await self._require_conversation(conversation_id)
        messages = [m.model_dump(mode="json") for m in conversation.messages]
        messages.append(message.model_dump(mode="json"))
        response = await self._execute(
            self.supabase.table(self.CONVERSATIONS).update({"messages": messages}).eq("id", conversation_id),
            "append message",
        )
        return Conversation.model_validate(response.data[0])

    async def compare_and_set_stage(
        self,
        conversation_id: str,
        expected_stage: int,
        new_stage: int,
        sent_at: Optional[datetime] = None
    ) -> bool:
        updates: Dict[str, Any] = {"template_stage": new_stage}
        if sent_at is not None:
            updates["last_sent_at"] = sent_at.isoformat()
        response = await self._execute(
            self.supabase.table(self.CONVERSATIONS).update(updates)
            .eq("id", conversation_id)
            .eq("mode", ConversationMode.TEMPLATE_MODE.value)
            .eq("template_stage", expected_stage),
            "advance template stage",
        )
        return bool(response.data)

    async def restore_stage(self, conversation_id: str, stage: int, last_sent_at: Optional[datetime]) -> bool:
        response = await self._execute(
            self.supabase.table(self.CONVERSATIONS).update({
                "template_stage": stage,
                "last_sent_at": last_sent_at.isoformat() if last_sent_at else None,
            })
            .eq("id", conversation_id)
            .eq("mode", ConversationMode.TEMPLATE_MODE.value)
            .eq("template_stage", stage + 1),
            "restore template stage",
        )
        return bool(response.data)

    async def transition_mode(
        self,
        conversation_id: str,
        from_modes: Iterable[ConversationMode],
        to_mode: ConversationMode,
        at: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> bool:
        from_modes = [m for m in from_modes if to_mode in ALLOWED_TRANSITIONS[m]]
        if not from_modes:
            return False
        at = at or utc_now()
        updates: Dict[str, Any] = {"mode": to_mode.value}
        if to_mode == ConversationMode.AI_MODE:
            updates["ai_mode_entered_at"] = at.isoformat()
        elif to_mode == ConversationMode.HANDOVER_PENDING:
            updates["handover_at"] = at.isoformat()
        elif to_mode == ConversationMode.COMPLETED:
            updates["completed_at"] = at.isoformat()
            updates["completion_reason"] = reason

        response = await self._execute(
            self.supabase.table(self.CONVERSATIONS).update(updates)
            .eq("id", conversation_id)
            .in_("mode", [m.value for m in from_modes]),
            f"transition to {to_mode.value}",
        )
        return bool(response.data)

    async def update_goal_progress(self, conversation_id: str, progress: Dict[str, float]) -> None:
        await self._execute(
            self.supabase.table(self.CONVERSATIONS).update({"goal_progress": dict(progress)}).eq("id", conversation_id),
            "update goal progress",
        )

    # Cross-channel context

    async def get_shared_context(self, lead_id: str) -> CrossChannelContext:
        row = await self._select_one(self.CONTEXTS, "lead_id", lead_id)
        return CrossChannelContext.model_validate(row) if row else CrossChannelContext(lead_id=lead_id)

    async def merge_shared_context(
        self,
        lead_id: str,
        notes: Optional[List[str]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> CrossChannelContext:
        merged = (await self.get_shared_context(lead_id)).merged(notes, preferences)
        await self._execute(
            self.supabase.table(self.CONTEXTS).upsert(merged.model_dump(mode="json")),
            "merge shared context",
        )
        return merged

    # Audit records

    async def record_communication(self, communication: Communication) -> Communication:
        await self._execute(
            self.supabase.table(self.COMMUNICATIONS).insert(communication.model_dump(mode="json")),
            "record communication",
        )
        return communication

    async def list_communications(self, lead_id: str, channel: Optional[str] = None) -> List[Communication]:
        query = self.supabase.table(self.COMMUNICATIONS).select("*").eq("lead_id", lead_id)
        if channel is not None:
            query = query.eq("channel", channel)
        response = await self._execute(query.order("created_at"), "list communications")
        return [Communication.model_validate(row) for row in response.data or []]

    async def record_decision(self, decision: AgentDecision) -> AgentDecision:
        await self._execute(
            self.supabase.table(self.DECISIONS).insert(decision.model_dump(mode="json")),
            "record decision",
        )
        return decision

    async def list_decisions(self, lead_id: str) -> List[AgentDecision]:
        response = await self._execute(
            self.supabase.table(self.DECISIONS).select("*").eq("lead_id", lead_id).order("created_at"),
            "list decisions",
        )
        return [AgentDecision.model_validate(row) for row in response.data or []]

    # Dispatch idempotency

    async def claim_dispatch(self, key: str) -> bool:
        response = await self._execute(
            self.supabase.table(self.CLAIMS).upsert(
                {"claim_key": key, "claimed_at": utc_now().isoformat()},
                on_conflict="claim_key",
                ignore_duplicates=True,
            ),
            "claim dispatch",
        )
        return bool(response.data)

    async def release_dispatch(self, key: str) -> None:
        await self._execute(self.supabase.table(self.CLAIMS).delete().eq("claim_key", key), "release dispatch")
