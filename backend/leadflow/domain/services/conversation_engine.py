"""
Conversation Engine
Per (lead, channel) state machine:

    TEMPLATE_MODE -> AI_MODE -> HANDOVER_PENDING -> COMPLETED

- Scripted steps fire on their delay while no reply has arrived.
  A step is dispatched at most once per (lead, channel, stage): the
  dispatch claim and the stage compare-and-set both happen before send.
- The first inbound reply switches to AI_MODE permanently.
- Every inbound in AI_MODE gets a freshly generated reply built from
  the whole history; replies bypass the minimum send gap.
- HANDOVER_PENDING suppresses automated sends except the closing notice.
- COMPLETED is terminal; inbound messages are logged only.

Entry points hold the lead lock; everything they call uses store
compare-and-set so nested transitions never re-take the lock.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from leadflow.core.exceptions import DependencyError, LeadValidationError, NotFoundError
from leadflow.domain.interfaces.channel import ChannelAgent, DeliveryReceipt, MessageRequest
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import AgentDecision, DecisionAction
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.communication import Communication, DeliveryStatus, Direction
from leadflow.domain.models.conversation import (
    ACTIVE_MODES,
    Conversation,
    ConversationMode,
    CrossChannelContext,
    Message,
    MessageRole,
)
from leadflow.domain.models.coordination import GoalProgress
from leadflow.domain.models.handover import HandoverEvaluation
from leadflow.domain.models.lead import Channel, Lead, LeadStatus
from leadflow.domain.services.circuit_breaker import BreakerRegistry
from leadflow.domain.services.coordination_hub import CoordinationHub
from leadflow.domain.services.decision_engine import DecisionEngine
from leadflow.domain.services.handover_service import HandoverService
from leadflow.domain.services.lead_locks import LeadLockManager
from leadflow.domain.services.qualification import ConversationAnalyzer
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)

ENGINE_ACTOR = "conversation_engine"

CLOSING_NOTICE = (
    "Thanks for all the details! I'm passing you to a specialist who will "
    "reach out to you directly very soon."
)

# Lead statuses that stop scripted outreach
OUTREACH_STOPPED = (LeadStatus.SENT_TO_HANDOVER, LeadStatus.REJECTED, LeadStatus.ARCHIVED)

# Lead statuses whose inbound messages are logged but never answered
LEAD_CLOSED = (LeadStatus.REJECTED, LeadStatus.ARCHIVED)

AI_SYSTEM_PROMPT = """You are {agent_id}, a sales assistant for the campaign "{campaign}", talking with {name} over {channel}.
{instructions}
Campaign goals: {goals}
Goals already met: {completed}
Rules:
- Write a fresh reply to the lead's latest message using the whole conversation.
- Never reuse, repeat or paraphrase earlier scripted template messages.
- Do not invent prices, dates or commitments that are not in the conversation.
- Ask at most one question.
{context}"""

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(text: Optional[str], lead: Lead, campaign: Campaign) -> Optional[str]:
    """Replace {{placeholders}} with lead/campaign values."""
    if text is None:
        return None
    values = {
        "name": lead.first_name or lead.full_name,
        "first_name": lead.first_name or "",
        "last_name": lead.last_name or "",
        "campaign": campaign.name,
    }

    def _value(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        return str(lead.metadata.get(key, ""))

    return _PLACEHOLDER.sub(_value, text)


@dataclass
class TemplateOutcome:
    """Result of one template step attempt"""
    sent: bool
    reason: str
    conversation_id: str
    stage: Optional[int] = None
    retry_at: Optional[datetime] = None
    next_stage: Optional[int] = None
    next_due_at: Optional[datetime] = None
    delivery_failed: bool = False
    error: Optional[str] = None


@dataclass
class InboundOutcome:
    reply_needed: bool
    reason: str
    conversation_id: Optional[str] = None
    message_index: Optional[int] = None
    switched_to_ai: bool = False
    matched_goals: List[str] = field(default_factory=list)
    handover: Optional[HandoverEvaluation] = None


@dataclass
class ReplyOutcome:
    sent: bool
    reason: str
    conversation_id: str
    message: Optional[Message] = None
    delivery_failed: bool = False
    error: Optional[str] = None
    handover: Optional[HandoverEvaluation] = None


class ConversationEngine:

    def __init__(
        self,
        pipeline_store: PipelineStore,
        channels: Dict[Channel, ChannelAgent],
        breakers: BreakerRegistry,
        hub: CoordinationHub,
        handover_service: HandoverService,
        decision_engine: DecisionEngine,
        analyzer: ConversationAnalyzer,
        locks: LeadLockManager,
        clock: Clock = utc_now
    ):
        self._store = pipeline_store
        self._channels = channels
        self._breakers = breakers
        self._hub = hub
        self._handover = handover_service
        self._decisions = decision_engine
        self._analyzer = analyzer
        self._locks = locks
        self._clock = clock

    # Loading helpers

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    async def _require_lead(self, lead_id: str) -> Lead:
        lead = await self._store.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead

    async def _require_campaign(self, campaign_id: Optional[str]) -> Campaign:
        campaign = await self._store.get_campaign(campaign_id) if campaign_id else None
        if campaign is None:
            raise NotFoundError("campaign", str(campaign_id))
        return campaign

    # Lifecycle

    async def start_conversation(
        self,
        lead: Lead,
        campaign: Campaign,
        channel: Channel,
        agent_id: Optional[str] = None
    ) -> Conversation:
        """Return the active (lead, channel) conversation, creating it if needed."""
        async with self._locks.hold(lead.id):
            existing = await self._store.find_active_conversation(lead.id, channel)
            if existing is not None:
                return existing
            conversation = Conversation(
                id=str(uuid.uuid4()),
                lead_id=lead.id,
                campaign_id=campaign.id,
                channel=channel,
                agent_id=agent_id or campaign.primary_agent_id,
                started_at=self._clock(),
            )
            await self._store.create_conversation(conversation)
            logger.info(f"Started {channel.value} conversation {conversation.id} for lead {lead.id}")
            return conversation

    async def send_template_step(self, conversation_id: str, expected_stage: Optional[int] = None) -> TemplateOutcome:
        """
        Fire the current scripted step if it is due.

        Strict no-op when the conversation left TEMPLATE_MODE, the stage
        moved on, the lead replied, or the step was already dispatched.
        """
        conversation = await self._require_conversation(conversation_id)
        async with self._locks.hold(conversation.lead_id):
            conversation = await self._require_conversation(conversation_id)

            def noop(reason: str, retry_at: Optional[datetime] = None) -> TemplateOutcome:
                logger.debug(f"Template step no-op for conversation {conversation_id}: {reason}")
                return TemplateOutcome(
                    sent=False,
                    reason=reason,
                    conversation_id=conversation_id,
                    stage=conversation.template_stage,
                    retry_at=retry_at,
                )

            if conversation.mode != ConversationMode.TEMPLATE_MODE:
                return noop(f"mode_{conversation.mode.value}")
            if expected_stage is not None and conversation.template_stage != expected_stage:
                return noop("stale_stage")
            if conversation.has_reply:
                return noop("reply_received")

            lead = await self._require_lead(conversation.lead_id)
            if lead.status in OUTREACH_STOPPED:
                return noop(f"lead_{lead.status.value}")
            campaign = await self._require_campaign(conversation.campaign_id)

            steps = campaign.template_steps(conversation.channel)
            stage = conversation.template_stage
            if stage >= len(steps):
                return noop("sequence_exhausted")
            step = steps[stage]

            now = self._clock()
            due_at = (conversation.last_sent_at or conversation.started_at) + timedelta(minutes=step.delay_minutes)
            if now < due_at:
                return noop("not_due", retry_at=due_at)

            gap_until = await self._hub.next_allowed_time(lead.id, conversation.channel, now)
            if gap_until is not None:
                return noop("min_gap", retry_at=gap_until)

            recipient = lead.recipient_for(conversation.channel)
            if not recipient:
                raise LeadValidationError(
                    f"Lead {lead.id} has no {conversation.channel.value} recipient",
                    {"lead_id": lead.id, "channel": conversation.channel.value},
                )

            claim_key = f"template:{lead.id}:{conversation.channel.value}:{stage}"
            if not await self._store.claim_dispatch(claim_key):
                return noop("already_dispatched")
            if not await self._store.compare_and_set_stage(conversation.id, stage, stage + 1, sent_at=now):
                await self._store.release_dispatch(claim_key)
                return noop("stage_changed")

            content = render_template(step.body, lead, campaign)
            subject = render_template(step.subject, lead, campaign)
            receipt = await self._deliver(
                conversation, lead, recipient, content, subject,
                {"template_stage": stage, "is_scripted": True},
            )
            if not receipt.success:
                await self._store.restore_stage(conversation.id, stage, conversation.last_sent_at)
                await self._store.release_dispatch(claim_key)
                return TemplateOutcome(
                    sent=False,
                    reason="delivery_failed",
                    conversation_id=conversation_id,
                    stage=stage,
                    delivery_failed=True,
                    error=receipt.error,
                )

            await self._store.append_message(conversation.id, Message(
                role=MessageRole.AGENT,
                content=content,
                timestamp=now,
                is_scripted=True,
                metadata={"template_stage": stage, "external_id": receipt.external_id},
            ))
            await self._hub.record_outbound(lead.id, conversation.channel, now)
            if lead.status == LeadStatus.NEW:
                await self._store.update_lead_status(lead.id, LeadStatus.CONTACTED)

            next_due = None
            if stage + 1 < len(steps):
                next_due = now + timedelta(minutes=steps[stage + 1].delay_minutes)
            logger.info(f"Sent template step {stage} on {conversation.channel.value} to lead {lead.id}")
            return TemplateOutcome(
                sent=True,
                reason="sent",
                conversation_id=conversation_id,
                stage=stage,
                next_stage=stage + 1,
                next_due_at=next_due,
            )

    async def receive_inbound(
        self,
        lead_id: str,
        channel: Channel,
        content: str,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> InboundOutcome:
        """
        Record an inbound message and advance the state machine.

        Returns whether an adaptive reply should be generated; the reply
        itself is produced by generate_reply (usually from a queued job).
        """
        async with self._locks.hold(lead_id):
            lead = await self._require_lead(lead_id)
            campaign = await self._require_campaign(lead.campaign_id)
            now = self._clock()

            if lead.status in LEAD_CLOSED:
                return await self._log_closed_inbound(lead, channel, content, now, external_id, metadata)

            conversation = await self._store.find_active_conversation(lead_id, channel)
            if conversation is None:
                previous = [
                    c for c in await self._store.list_conversations(lead_id)
                    if c.channel == channel
                ]
                if previous and previous[-1].mode == ConversationMode.COMPLETED:
                    completed = previous[-1]
                    await self._store.append_message(completed.id, Message(
                        role=MessageRole.LEAD, content=content, timestamp=now,
                        metadata={"external_id": external_id, **(metadata or {})},
                    ))
                    await self._record(completed, Direction.INBOUND, content, DeliveryStatus.RECEIVED, external_id)
                    logger.info(f"Inbound on completed conversation {completed.id} logged without reply")
                    return InboundOutcome(reply_needed=False, reason="conversation_completed", conversation_id=completed.id)

                conversation = Conversation(
                    id=str(uuid.uuid4()),
                    lead_id=lead_id,
                    campaign_id=campaign.id,
                    channel=channel,
                    agent_id=campaign.primary_agent_id,
                    started_at=now,
                )
                await self._store.create_conversation(conversation)
                logger.info(f"Lead {lead_id} opened a new {channel.value} conversation {conversation.id}")

            conversation = await self._store.append_message(conversation.id, Message(
                role=MessageRole.LEAD,
                content=content,
                timestamp=now,
                metadata={"external_id": external_id, **(metadata or {})},
            ))
            message_index = conversation.message_count - 1
            await self._record(conversation, Direction.INBOUND, content, DeliveryStatus.RECEIVED, external_id)
            await self._update_shared_context(lead_id, channel, content)

            if self._analyzer.is_opt_out(content):
                await self._opt_out(lead, conversation, now)
                return InboundOutcome(reply_needed=False, reason="opted_out", conversation_id=conversation.id)

            switched = False
            if conversation.mode == ConversationMode.TEMPLATE_MODE:
                switched = await self._store.transition_mode(
                    conversation.id, [ConversationMode.TEMPLATE_MODE], ConversationMode.AI_MODE, at=now
                )
                if switched:
                    logger.info(f"Conversation {conversation.id} switched to AI mode on first reply")

            matched = self._analyzer.detect_goal_matches(campaign.goals, content)
            for goal in matched:
                await self._hub.update_goal_progress(campaign, lead_id, goal, 1.0, from_agent=conversation.agent_id)
            progress = await self._hub.get_goal_progress(campaign, lead_id)
            await self._store.update_goal_progress(conversation.id, progress.progress)

            conversation = await self._require_conversation(conversation.id)
            if conversation.mode == ConversationMode.COMPLETED:
                return InboundOutcome(
                    reply_needed=False,
                    reason="goals_completed",
                    conversation_id=conversation.id,
                    switched_to_ai=switched,
                    matched_goals=matched,
                )
            if conversation.mode == ConversationMode.HANDOVER_PENDING:
                await self._decisions.rescore(lead_id, campaign, progress.completed_goals)
                return InboundOutcome(
                    reply_needed=False,
                    reason="handover_pending",
                    conversation_id=conversation.id,
                    matched_goals=matched,
                )

            evaluation = await self._after_append(lead_id, campaign, conversation, progress.completed_goals)
            if evaluation is not None and evaluation.should_handover:
                return InboundOutcome(
                    reply_needed=False,
                    reason="handover_triggered",
                    conversation_id=conversation.id,
                    message_index=message_index,
                    switched_to_ai=switched,
                    matched_goals=matched,
                    handover=evaluation,
                )

            return InboundOutcome(
                reply_needed=True,
                reason="reply_pending",
                conversation_id=conversation.id,
                message_index=message_index,
                switched_to_ai=switched,
                matched_goals=matched,
                handover=evaluation,
            )

    async def generate_reply(self, conversation_id: str, message_index: Optional[int] = None) -> ReplyOutcome:
        """
        Generate and send the adaptive reply to one inbound message.

        Idempotent per (conversation, inbound message index). Replies are
        reply-triggered and therefore not subject to the minimum gap.
        """
        conversation = await self._require_conversation(conversation_id)
        async with self._locks.hold(conversation.lead_id):
            conversation = await self._require_conversation(conversation_id)
            if conversation.mode != ConversationMode.AI_MODE:
                return ReplyOutcome(sent=False, reason=f"mode_{conversation.mode.value}", conversation_id=conversation_id)

            if message_index is None:
                inbound = [i for i, m in enumerate(conversation.messages) if m.role == MessageRole.LEAD]
                message_index = inbound[-1] if inbound else None
            if (
                message_index is None
                or message_index >= conversation.message_count
                or conversation.messages[message_index].role != MessageRole.LEAD
            ):
                return ReplyOutcome(sent=False, reason="no_inbound_message", conversation_id=conversation_id)

            claim_key = f"reply:{conversation.id}:{message_index}"
            if not await self._store.claim_dispatch(claim_key):
                return ReplyOutcome(sent=False, reason="already_replied", conversation_id=conversation_id)

            try:
                lead = await self._require_lead(conversation.lead_id)
                campaign = await self._require_campaign(conversation.campaign_id)
                recipient = lead.recipient_for(conversation.channel)
                if not recipient:
                    raise LeadValidationError(
                        f"Lead {lead.id} has no {conversation.channel.value} recipient",
                        {"lead_id": lead.id, "channel": conversation.channel.value},
                    )
                content, subject = await self._compose_reply(conversation, lead, campaign)
            except Exception:
                await self._store.release_dispatch(claim_key)
                raise

            receipt = await self._deliver(
                conversation, lead, recipient, content, subject,
                {"reply_to": message_index, "is_scripted": False},
            )
            if not receipt.success:
                await self._store.release_dispatch(claim_key)
                return ReplyOutcome(
                    sent=False,
                    reason="delivery_failed",
                    conversation_id=conversation_id,
                    delivery_failed=True,
                    error=receipt.error,
                )

            now = self._clock()
            message = Message(
                role=MessageRole.AGENT,
                content=content,
                timestamp=now,
                is_scripted=False,
                metadata={"reply_to": message_index, "external_id": receipt.external_id},
            )
            conversation = await self._store.append_message(conversation.id, message)
            await self._hub.record_outbound(lead.id, conversation.channel, now)

            progress = await self._hub.get_goal_progress(campaign, lead.id)
            evaluation = await self._after_append(lead.id, campaign, conversation, progress.completed_goals)
            return ReplyOutcome(
                sent=True,
                reason="sent",
                conversation_id=conversation_id,
                message=message,
                handover=evaluation,
            )

    async def complete_conversation(self, conversation_id: str, reason: str) -> bool:
        completed = await self._store.transition_mode(
            conversation_id, ACTIVE_MODES, ConversationMode.COMPLETED, at=self._clock(), reason=reason
        )
        if completed:
            logger.info(f"Conversation {conversation_id} completed: {reason}")
        return completed

    async def handle_goals_completed(self, campaign_id: str, lead_id: str, progress: GoalProgress) -> None:
        """Completion event from the hub: every active conversation of the lead completes."""
        for conversation in await self._store.list_conversations(lead_id, active_only=True):
            if conversation.campaign_id == campaign_id:
                await self.complete_conversation(conversation.id, "goals_completed")

    # Internals

    async def _after_append(
        self,
        lead_id: str,
        campaign: Campaign,
        conversation: Conversation,
        completed_goals: List[str]
    ) -> Optional[HandoverEvaluation]:
        """Re-score, then evaluate handover while in AI_MODE."""
        lead = await self._decisions.rescore(lead_id, campaign, completed_goals)
        if conversation.mode != ConversationMode.AI_MODE:
            return None

        evaluation = self._handover.evaluate(lead, campaign, conversation, completed_goals, now=self._clock())
        if evaluation.should_handover:
            executed = await self._handover.execute(lead, campaign, conversation, evaluation)
            if executed:
                await self._send_closing_notice(conversation, lead)
        return evaluation

    async def _send_closing_notice(self, conversation: Conversation, lead: Lead) -> None:
        recipient = lead.recipient_for(conversation.channel)
        now = self._clock()
        await self._store.append_message(conversation.id, Message(
            role=MessageRole.AGENT,
            content=CLOSING_NOTICE,
            timestamp=now,
            is_scripted=True,
            metadata={"closing_notice": True},
        ))
        if not recipient:
            return
        receipt = await self._deliver(conversation, lead, recipient, CLOSING_NOTICE, None, {"closing_notice": True})
        if receipt.success:
            await self._hub.record_outbound(lead.id, conversation.channel, now)

    async def _opt_out(self, lead: Lead, conversation: Conversation, now: datetime) -> None:
        for active in await self._store.list_conversations(lead.id, active_only=True):
            await self._store.transition_mode(active.id, ACTIVE_MODES, ConversationMode.COMPLETED, at=now, reason="opt_out")
        await self._store.update_lead_status(lead.id, LeadStatus.REJECTED)
        await self._store.record_decision(AgentDecision(
            lead_id=lead.id,
            actor=ENGINE_ACTOR,
            action=DecisionAction.ARCHIVE,
            reasoning="lead opted out",
            data={"conversation_id": conversation.id, "channel": conversation.channel.value},
        ))
        logger.info(f"Lead {lead.id} opted out on {conversation.channel.value}")

    async def _log_closed_inbound(
        self,
        lead: Lead,
        channel: Channel,
        content: str,
        now: datetime,
        external_id: Optional[str],
        metadata: Optional[Dict[str, Any]]
    ) -> InboundOutcome:
        """Keep inbound from a rejected or archived lead without opening a conversation."""
        previous = [c for c in await self._store.list_conversations(lead.id) if c.channel == channel]
        conversation_id = previous[-1].id if previous else None
        if conversation_id is not None:
            await self._store.append_message(conversation_id, Message(
                role=MessageRole.LEAD, content=content, timestamp=now,
                metadata={"external_id": external_id, **(metadata or {})},
            ))
        await self._store.record_communication(Communication(
            lead_id=lead.id,
            channel=channel.value,
            direction=Direction.INBOUND,
            content=content,
            status=DeliveryStatus.RECEIVED,
            external_id=external_id,
            conversation_id=conversation_id,
            metadata={"lead_status": lead.status.value, **(metadata or {})},
        ))
        logger.info(f"Inbound from {lead.status.value} lead {lead.id} on {channel.value} logged without reply")
        return InboundOutcome(reply_needed=False, reason=f"lead_{lead.status.value}", conversation_id=conversation_id)

    async def _update_shared_context(self, lead_id: str, channel: Channel, content: str) -> CrossChannelContext:
        notes = []
        preferences: Dict[str, Any] = {"last_active_channel": channel.value}
        urgency = self._analyzer.detect_urgency(content)
        if urgency == "high":
            notes.append(f"Lead asked for urgency on {channel.value}")
            preferences["urgency"] = urgency
        return await self._store.merge_shared_context(lead_id, notes, preferences)

    async def _compose_reply(self, conversation: Conversation, lead: Lead, campaign: Campaign):
        agent = self._channels[conversation.channel]
        context = await self._store.get_shared_context(lead.id)
        progress = await self._hub.get_goal_progress(campaign, lead.id)
        scripted = {m.content.strip() for m in conversation.messages if m.is_scripted}

        system_prompt = AI_SYSTEM_PROMPT.format(
            agent_id=conversation.agent_id,
            campaign=campaign.name,
            name=lead.full_name,
            channel=conversation.channel.value,
            instructions=campaign.ai_instructions or "",
            goals=", ".join(g.name for g in campaign.goals) or "none",
            completed=", ".join(progress.completed_goals) or "none",
            context=context.summary(),
        )
        prompt = f"Conversation so far:\n{conversation.transcript()}\n\nWrite the next agent message."
        subject = None
        if conversation.channel == Channel.EMAIL:
            subject = f"Re: {campaign.name}"

        generated = await agent.generate_message(MessageRequest(system_prompt, prompt, subject))
        if generated.body.strip() in scripted:
            logger.warning(f"Generated reply for conversation {conversation.id} repeated a template, regenerating")
            generated = await agent.generate_message(MessageRequest(
                system_prompt + "\n- Your previous draft repeated a template. Write something new.",
                prompt,
                subject,
            ))
        return generated.body, generated.subject

    async def _deliver(
        self,
        conversation: Conversation,
        lead: Lead,
        recipient: str,
        content: str,
        subject: Optional[str],
        metadata: Dict[str, Any]
    ) -> DeliveryReceipt:
        """
        Send through the channel breaker and record the attempt.
        Failures come back as a FAILED receipt; they are never raised.
        """
        agent = self._channels[conversation.channel]
        breaker = self._breakers.get(f"channel.{conversation.channel.value}")
        send_metadata = {"lead_id": lead.id, "conversation_id": conversation.id, **metadata}
        try:
            receipt = await breaker.call(
                lambda: agent.send(recipient, content, subject=subject, metadata=send_metadata),
                fallback=lambda: DeliveryReceipt(
                    status=DeliveryStatus.SENT,
                    external_id=f"sim-{uuid.uuid4().hex[:12]}",
                    simulated=True,
                    metadata={"circuit_open": True},
                ),
            )
        except DependencyError as e:
            receipt = DeliveryReceipt(status=DeliveryStatus.FAILED, error=e.message)
            logger.warning(f"{conversation.channel.value} delivery to lead {lead.id} failed: {e.message}")

        await self._record(
            conversation,
            Direction.OUTBOUND,
            content,
            receipt.status,
            receipt.external_id,
            {**metadata, "subject": subject, "simulated": receipt.simulated, "error": receipt.error},
        )
        return receipt

    async def _record(
        self,
        conversation: Conversation,
        direction: Direction,
        content: str,
        status: DeliveryStatus,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Communication:
        return await self._store.record_communication(Communication(
            lead_id=conversation.lead_id,
            channel=conversation.channel.value,
            direction=direction,
            content=content,
            status=status,
            external_id=external_id,
            conversation_id=conversation.id,
            metadata={"agent_id": conversation.agent_id, **(metadata or {})},
        ))
