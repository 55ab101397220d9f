"""
Handover Service
Evaluates handover policy on every AI_MODE message and, on trigger,
moves the lead to handover and dispatches delivery to each destination.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from leadflow.core.exceptions import DeliveryError, NotFoundError
from leadflow.domain.interfaces.job_queue import JobQueue
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import AgentDecision, DecisionAction
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.communication import HANDOVER_CHANNEL_PREFIX, DeliveryStatus
from leadflow.domain.models.conversation import Conversation, ConversationMode
from leadflow.domain.models.handover import (
    HandoverCriterion,
    HandoverEvaluation,
    HandoverPackage,
    HandoverResult,
)
from leadflow.domain.models.job import JobType
from leadflow.domain.models.lead import Lead, LeadStatus
from leadflow.domain.services.coordination_hub import CoordinationHub
from leadflow.domain.services.handover_delivery import HandoverDeliveryService
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)

HANDOVER_ACTOR = "handover_evaluator"
HANDOVER_JOB_PRIORITY = 8


class HandoverService:

    def __init__(
        self,
        pipeline_store: PipelineStore,
        hub: CoordinationHub,
        delivery: HandoverDeliveryService,
        queue: Optional[JobQueue] = None,
        clock: Clock = utc_now
    ):
        self._store = pipeline_store
        self._hub = hub
        self._delivery = delivery
        self._queue = queue
        self._clock = clock

    def evaluate(
        self,
        lead: Lead,
        campaign: Campaign,
        conversation: Conversation,
        completed_goals: List[str],
        now: Optional[datetime] = None
    ) -> HandoverEvaluation:
        """
        Evaluate every criterion independently. The reason lists every
        criterion that holds, in evaluation order, joined with " and ".
        """
        criteria = campaign.handover
        now = now or self._clock()
        held: List[Tuple[HandoverCriterion, str]] = []

        if criteria.score_threshold is not None and lead.qualification_score >= criteria.score_threshold:
            held.append((
                HandoverCriterion.QUALIFICATION_SCORE,
                f"score {lead.qualification_score} meets threshold {criteria.score_threshold}",
            ))

        if (
            criteria.message_count_threshold is not None
            and conversation.message_count >= criteria.message_count_threshold
        ):
            held.append((
                HandoverCriterion.CONVERSATION_LENGTH,
                f"{conversation.message_count} messages reached threshold {criteria.message_count_threshold}",
            ))

        if criteria.keyword_triggers:
            inbound_text = " ".join(m.content for m in conversation.inbound_messages()).lower()
            hits = [kw for kw in criteria.keyword_triggers if kw.lower() in inbound_text]
            if hits:
                held.append((HandoverCriterion.KEYWORD_TRIGGERS, f"matched {', '.join(hits)}"))

        if criteria.required_goals:
            done = set(completed_goals)
            if all(goal in done for goal in criteria.required_goals):
                held.append((
                    HandoverCriterion.GOAL_COMPLETION,
                    f"completed {', '.join(criteria.required_goals)}",
                ))

        if criteria.time_threshold_seconds is not None:
            elapsed = (now - conversation.started_at).total_seconds()
            if elapsed >= criteria.time_threshold_seconds:
                held.append((
                    HandoverCriterion.TIME_THRESHOLD,
                    f"{int(elapsed)}s elapsed exceeds {criteria.time_threshold_seconds}s",
                ))

        return HandoverEvaluation(
            should_handover=bool(held),
            reason=" and ".join(f"{criterion.value}: {detail}" for criterion, detail in held),
            triggered=[criterion for criterion, _ in held],
            details={criterion.value: detail for criterion, detail in held},
            evaluated_at=now,
        )

    async def execute(
        self,
        lead: Lead,
        campaign: Campaign,
        conversation: Conversation,
        evaluation: HandoverEvaluation
    ) -> bool:
        """
        Trigger handover for a lead.

        The AI_MODE -> HANDOVER_PENDING compare-and-set picks the single
        executor; a losing caller returns False. The lead status is set
        before any delivery is attempted.
        """
        now = self._clock()
        moved = await self._store.transition_mode(
            conversation.id, [ConversationMode.AI_MODE], ConversationMode.HANDOVER_PENDING, at=now
        )
        if not moved:
            logger.debug(f"Handover for conversation {conversation.id} already triggered")
            return False

        for other in await self._store.list_conversations(lead.id, active_only=True):
            if other.id != conversation.id and other.mode == ConversationMode.AI_MODE:
                await self._store.transition_mode(
                    other.id, [ConversationMode.AI_MODE], ConversationMode.HANDOVER_PENDING, at=now
                )

        await self._store.update_lead_status(lead.id, LeadStatus.SENT_TO_HANDOVER)

        destinations = campaign.enabled_destinations()
        await self._store.record_decision(AgentDecision(
            lead_id=lead.id,
            actor=HANDOVER_ACTOR,
            action=DecisionAction.TRIGGER_HANDOVER,
            reasoning=evaluation.reason,
            data={
                "conversation_id": conversation.id,
                "criteria": [c.value for c in evaluation.triggered],
                "destinations": [d.id for d in destinations],
            },
        ))
        await self._hub.broadcast_status(
            campaign.id, lead.id, conversation.agent_id, "handover_triggered", {"reason": evaluation.reason}
        )
        logger.info(f"Handover triggered for lead {lead.id}: {evaluation.reason}")

        if not destinations:
            logger.warning(f"Campaign {campaign.id} has no enabled handover destinations")
            return True

        if self._queue is not None:
            for destination in destinations:
                await self._queue.enqueue(
                    JobType.DELIVER_HANDOVER,
                    {
                        "lead_id": lead.id,
                        "campaign_id": campaign.id,
                        "conversation_id": conversation.id,
                        "destination_id": destination.id,
                        "reason": evaluation.reason,
                    },
                    priority=HANDOVER_JOB_PRIORITY,
                )
        else:
            package = await self.build_package(lead.id, campaign, conversation.id, evaluation.reason)
            await self._delivery.deliver_all(destinations, package)
        return True

    async def build_package(
        self,
        lead_id: str,
        campaign: Campaign,
        conversation_id: Optional[str],
        reason: str
    ) -> HandoverPackage:
        """Assemble the package from current state, not from a job snapshot."""
        lead = await self._store.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        conversation = await self._store.get_conversation(conversation_id) if conversation_id else None
        context = await self._store.get_shared_context(lead_id)
        progress = await self._hub.get_goal_progress(campaign, lead_id)

        return HandoverPackage(
            lead=lead,
            campaign_id=campaign.id,
            campaign_name=campaign.name,
            conversation_id=conversation_id,
            channel=conversation.channel.value if conversation else None,
            reason=reason,
            qualification_score=lead.qualification_score,
            messages=list(conversation.messages) if conversation else [],
            completed_goals=progress.completed_goals,
            shared_notes=list(context.notes),
        )

    async def deliver_from_job(self, payload: Dict[str, Any]) -> HandoverResult:
        """
        Run one queued destination delivery.

        Raises DeliveryError for retryable failures so the queue backs
        off and retries; success is final for the destination.
        """
        campaign = await self._store.get_campaign(payload["campaign_id"])
        if campaign is None:
            raise NotFoundError("campaign", payload["campaign_id"])
        destination = campaign.get_destination(payload["destination_id"])
        if destination is None:
            raise NotFoundError("handover destination", payload["destination_id"])

        package = await self.build_package(
            payload["lead_id"], campaign, payload.get("conversation_id"), payload.get("reason", "")
        )
        result = await self._delivery.deliver_one(destination, package)
        if not result.success:
            raise DeliveryError(
                f"Handover to {destination.id} failed: {result.error}",
                retryable=result.retryable,
                details={"destination": destination.id, "simulated": result.simulated},
            )
        return result

    async def get_handover_status(self, lead_id: str) -> Dict[str, Dict[str, Any]]:
        """Per-destination delivery state for a lead."""
        status: Dict[str, Dict[str, Any]] = {}
        for communication in await self._store.list_communications(lead_id):
            if not communication.channel.startswith(HANDOVER_CHANNEL_PREFIX):
                continue
            destination = communication.metadata.get("destination", communication.channel)
            entry = status.setdefault(destination, {
                "destination_type": communication.metadata.get("destination_type"),
                "attempts": 0,
                "success": False,
                "destination_id": None,
                "last_error": None,
                "last_attempt_at": None,
            })
            entry["attempts"] += 1
            entry["last_attempt_at"] = communication.created_at
            if communication.status == DeliveryStatus.SENT:
                entry["success"] = True
                entry["destination_id"] = communication.external_id
                entry["last_error"] = None
            elif not entry["success"]:
                entry["last_error"] = communication.metadata.get("error")
        return status
