"""
Lead Processor
Entry points behind the job queue: ingest a lead, route it, run
template steps, answer inbound messages and deliver handovers.

Every handler re-reads current state; job payloads only carry ids.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from leadflow.core.exceptions import DeliveryError, LeadValidationError, NotFoundError
from leadflow.domain.interfaces.job_queue import JobQueue
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import PRIORITY_TO_JOB_PRIORITY, AgentDecision, DecisionAction
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.handover import HandoverResult
from leadflow.domain.models.job import JobType
from leadflow.domain.models.lead import Channel, Lead
from leadflow.domain.services.conversation_engine import (
    ConversationEngine,
    InboundOutcome,
    ReplyOutcome,
    TemplateOutcome,
)
from leadflow.domain.services.coordination_hub import CoordinationHub
from leadflow.domain.services.decision_engine import DecisionEngine
from leadflow.domain.services.handover_service import HandoverService
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)

PROCESS_LEAD_PRIORITY = 5
# Replies are conversational; they jump the normal queue
REPLY_PRIORITY = 9


class LeadProcessor:

    def __init__(
        self,
        pipeline_store: PipelineStore,
        decision_engine: DecisionEngine,
        conversations: ConversationEngine,
        hub: CoordinationHub,
        handover_service: HandoverService,
        queue: JobQueue,
        clock: Clock = utc_now
    ):
        self._store = pipeline_store
        self._decisions = decision_engine
        self._conversations = conversations
        self._hub = hub
        self._handover = handover_service
        self._queue = queue
        self._clock = clock

    async def _require_lead_and_campaign(self, lead_id: str):
        lead = await self._store.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        campaign = await self._store.get_campaign(lead.campaign_id) if lead.campaign_id else None
        if campaign is None:
            raise NotFoundError("campaign", str(lead.campaign_id))
        return lead, campaign

    def _delay_until(self, when: Optional[datetime]) -> float:
        if when is None:
            return 0
        return max((when - self._clock()).total_seconds(), 0)

    # Ingestion

    async def ingest_lead(self, data: Union[Lead, Dict[str, Any]], process: bool = True) -> Lead:
        """
        Validate and store a lead, then queue it for routing.

        Raises:
            LeadValidationError: malformed lead, unknown campaign or no
                contact channel at all
        """
        if isinstance(data, Lead):
            lead = data
        else:
            try:
                lead = Lead.model_validate(data)
            except ValidationError as e:
                raise LeadValidationError(f"invalid lead: {e.error_count()} errors", {"errors": e.errors()}) from e

        if not lead.campaign_id or await self._store.get_campaign(lead.campaign_id) is None:
            raise LeadValidationError(f"unknown campaign: {lead.campaign_id}", {"lead_id": lead.id})
        if not lead.available_channels():
            raise LeadValidationError(f"lead {lead.id} has no contact channel", {"lead_id": lead.id})

        await self._store.save_lead(lead)
        logger.info(f"Ingested lead {lead.id} from {lead.source} for campaign {lead.campaign_id}")

        if process:
            await self._queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": lead.id}, priority=PROCESS_LEAD_PRIORITY)
        return lead

    # Routing

    async def process_lead(self, lead_id: str) -> AgentDecision:
        """Decide for a lead and carry the decision out."""
        lead, campaign = await self._require_lead_and_campaign(lead_id)
        decision = await self._decisions.decide(lead, campaign)

        if decision.effective_action != DecisionAction.ASSIGN_CHANNEL:
            logger.debug(f"Lead {lead_id}: nothing to start ({decision.action.value})")
            return decision

        lead = await self._store.get_lead(lead_id)
        if campaign.is_multi_agent:
            await self._start_coordinated(lead, campaign, decision)
        else:
            await self._start_single(lead, campaign, decision)
        return decision

    async def _start_single(self, lead: Lead, campaign: Campaign, decision: AgentDecision) -> None:
        channel = Channel(decision.data["channel"])
        conversation = await self._conversations.start_conversation(lead, campaign, channel)
        await self._queue.enqueue(
            JobType.SEND_TEMPLATE_STEP,
            {"conversation_id": conversation.id, "expected_stage": conversation.template_stage},
            priority=PRIORITY_TO_JOB_PRIORITY[decision.priority],
        )

    async def _start_coordinated(self, lead: Lead, campaign: Campaign, decision: AgentDecision) -> None:
        """Agree on the decision across agents, then start each agent on its scheduled slot."""
        consensus = await self._hub.coordinate_decision(decision, campaign)
        if not consensus.consensus:
            logger.warning(
                f"No consensus on {decision.action.value} for lead {lead.id} "
                f"(support={consensus.weighted_support:.2f}), holding outreach"
            )
            return

        schedule = await self._hub.create_coordination(campaign, lead)
        for entry in schedule.pending_entries():
            if not lead.recipient_for(entry.channel):
                logger.warning(f"Lead {lead.id} unreachable on {entry.channel.value}, skipping agent {entry.agent_id}")
                continue
            conversation = await self._conversations.start_conversation(lead, campaign, entry.channel, entry.agent_id)
            await self._queue.enqueue(
                JobType.SEND_TEMPLATE_STEP,
                {"conversation_id": conversation.id, "agent_id": entry.agent_id},
                priority=PRIORITY_TO_JOB_PRIORITY[decision.priority],
                delay_seconds=self._delay_until(entry.scheduled_time),
            )

    # Template steps

    async def run_template_step(self, payload: Dict[str, Any]) -> TemplateOutcome:
        """
        Fire one template step and chain the next.

        Steps that are not yet due (or held by the minimum gap) are put
        back on the queue for their due time.
        """
        outcome = await self._conversations.send_template_step(
            payload["conversation_id"], payload.get("expected_stage")
        )

        if outcome.delivery_failed:
            raise DeliveryError(
                f"template step {outcome.stage} delivery failed: {outcome.error}",
                details={"conversation_id": outcome.conversation_id},
            )

        if outcome.sent:
            conversation = await self._store.get_conversation(outcome.conversation_id)
            if payload.get("agent_id"):
                await self._hub.mark_entry(
                    conversation.campaign_id, conversation.lead_id, payload["agent_id"], conversation.channel
                )
            if outcome.next_due_at is not None:
                await self._queue.enqueue(
                    JobType.SEND_TEMPLATE_STEP,
                    {
                        "conversation_id": outcome.conversation_id,
                        "expected_stage": outcome.next_stage,
                        "agent_id": payload.get("agent_id"),
                    },
                    delay_seconds=self._delay_until(outcome.next_due_at),
                )
        elif outcome.retry_at is not None:
            await self._queue.enqueue(
                JobType.SEND_TEMPLATE_STEP,
                dict(payload),
                delay_seconds=self._delay_until(outcome.retry_at),
            )
        return outcome

    # Inbound and replies

    async def handle_inbound(
        self,
        lead_id: str,
        channel: Channel,
        content: str,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> InboundOutcome:
        outcome = await self._conversations.receive_inbound(lead_id, channel, content, external_id, metadata)
        if outcome.reply_needed:
            await self._queue.enqueue(
                JobType.GENERATE_AI_REPLY,
                {"conversation_id": outcome.conversation_id, "message_index": outcome.message_index},
                priority=REPLY_PRIORITY,
            )
        return outcome

    async def generate_reply(self, payload: Dict[str, Any]) -> ReplyOutcome:
        outcome = await self._conversations.generate_reply(payload["conversation_id"], payload.get("message_index"))
        if outcome.delivery_failed:
            raise DeliveryError(
                f"reply delivery failed: {outcome.error}",
                details={"conversation_id": outcome.conversation_id},
            )
        return outcome

    # Handover

    async def deliver_handover(self, payload: Dict[str, Any]) -> HandoverResult:
        return await self._handover.deliver_from_job(payload)

    async def get_handover_status(self, lead_id: str) -> Dict[str, Dict[str, Any]]:
        return await self._handover.get_handover_status(lead_id)
