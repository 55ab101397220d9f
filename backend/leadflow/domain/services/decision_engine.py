"""
Decision Engine
Routes a lead (assign a channel, continue, archive) and re-scores
qualification as conversations grow.

Channel choice is rule-based. The text-generation capability is only
asked for routing advice (priority, message focus); its output must
match RoutingAdvice exactly or the decision degrades to a recorded
processing_error with a deterministic fallback.
"""
import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from leadflow.core.exceptions import DecisionParseError, DependencyError
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import (
    AgentDecision,
    DecisionAction,
    DecisionPriority,
    RoutingAdvice,
)
from leadflow.domain.models.campaign import Campaign
from leadflow.domain.models.lead import Channel, Lead, LeadStatus
from leadflow.domain.services.qualification import ConversationAnalyzer
from leadflow.domain.services.text_generation import TextGenerationService

logger = logging.getLogger(__name__)

DECISION_ACTOR = "decision_engine"

ROUTING_SYSTEM_PROMPT = """You are the routing agent of a multi-channel sales outreach system.
Reply with one JSON object and nothing else. It must have exactly these keys:
- "action": one of "assign_channel", "continue_conversation", "archive"
- "channel": one of "email", "sms", "chat"
- "priority": one of "low", "medium", "high"
- "reasoning": one or two sentences
- "initial_message_focus": what the first message should focus on"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class DecisionEngine:

    def __init__(
        self,
        pipeline_store: PipelineStore,
        analyzer: ConversationAnalyzer,
        text_service: Optional[TextGenerationService] = None
    ):
        self._store = pipeline_store
        self._analyzer = analyzer
        self._text = text_service

    def choose_channel(self, lead: Lead, campaign: Campaign) -> Tuple[Channel, bool, str]:
        """
        First campaign-preferred channel the lead is reachable on.

        Returns:
            (channel, degraded, reasoning)
        """
        available = lead.available_channels()
        for channel in campaign.channels.ordering():
            if channel in available:
                return channel, False, f"{channel.value} is the first preferred channel the lead is reachable on"

        if available:
            channel = available[0]
            reasoning = (
                f"no preferred channel is reachable; defaulting to {channel.value}, "
                f"the first of the lead's channels ({', '.join(c.value for c in available)})"
            )
        else:
            channel = campaign.channels.primary
            reasoning = f"lead has no contact channels; defaulting to campaign primary {channel.value}"

        logger.warning(f"Degraded channel decision for lead {lead.id}: {reasoning}")
        return channel, True, reasoning

    @staticmethod
    def parse_routing_advice(raw: str) -> RoutingAdvice:
        """Strict parse: one JSON object matching RoutingAdvice, nothing partial."""
        text = _CODE_FENCE.sub("", (raw or "").strip())
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise DecisionParseError(f"routing advice is not valid JSON: {e.msg}", raw) from e
        if not isinstance(data, dict):
            raise DecisionParseError("routing advice is not a JSON object", raw)
        try:
            return RoutingAdvice.model_validate(data)
        except ValidationError as e:
            raise DecisionParseError(f"routing advice failed validation: {e.error_count()} errors", raw) from e

    async def decide(self, lead: Lead, campaign: Campaign, actor: str = DECISION_ACTOR) -> AgentDecision:
        """
        Produce and record exactly one decision for a lead.

        Assigning a channel (directly or as the processing_error fallback)
        also updates Lead.assigned_channel.
        """
        if lead.status in (LeadStatus.ARCHIVED, LeadStatus.REJECTED):
            decision = AgentDecision(
                lead_id=lead.id,
                actor=actor,
                action=DecisionAction.ARCHIVE,
                reasoning=f"lead status is {lead.status.value}",
            )
        else:
            active = await self._store.list_conversations(lead.id, active_only=True)
            if active:
                decision = AgentDecision(
                    lead_id=lead.id,
                    actor=actor,
                    action=DecisionAction.CONTINUE_CONVERSATION,
                    reasoning=f"{len(active)} active conversation(s) in progress",
                    data={
                        "conversation_ids": [c.id for c in active],
                        "modes": {c.channel.value: c.mode.value for c in active},
                    },
                )
            elif lead.status == LeadStatus.SENT_TO_HANDOVER:
                decision = AgentDecision(
                    lead_id=lead.id,
                    actor=actor,
                    action=DecisionAction.CONTINUE_CONVERSATION,
                    reasoning="handover already in progress",
                    data={"handover_in_progress": True},
                )
            else:
                decision = await self._assign_channel(lead, campaign, actor)

        await self._store.record_decision(decision)

        if decision.effective_action == DecisionAction.ASSIGN_CHANNEL:
            await self._store.set_assigned_channel(lead.id, Channel(decision.data["channel"]))

        logger.info(f"Decision for lead {lead.id}: {decision.action.value} ({decision.reasoning})")
        return decision

    async def _assign_channel(self, lead: Lead, campaign: Campaign, actor: str) -> AgentDecision:
        channel, degraded, reasoning = self.choose_channel(lead, campaign)
        data = {
            "channel": channel.value,
            "degraded": degraded,
            "priority": DecisionPriority.MEDIUM.value,
            "multi_agent": campaign.is_multi_agent,
        }

        if self._text is None or not self._text.is_available:
            return AgentDecision(
                lead_id=lead.id,
                actor=actor,
                action=DecisionAction.ASSIGN_CHANNEL,
                reasoning=reasoning,
                data=data,
            )

        try:
            raw = await self._text.generate(ROUTING_SYSTEM_PROMPT, self._routing_prompt(lead, campaign, channel))
            advice = self.parse_routing_advice(raw)
        except (DecisionParseError, DependencyError) as e:
            logger.warning(f"Routing advice unavailable for lead {lead.id}, using safe default: {e.message}")
            return AgentDecision(
                lead_id=lead.id,
                actor=actor,
                action=DecisionAction.PROCESSING_ERROR,
                reasoning=f"routing advice failed ({e.message}); {reasoning}",
                data={
                    **data,
                    "fallback_action": DecisionAction.ASSIGN_CHANNEL.value,
                    "error_type": type(e).__name__,
                    "error": e.message,
                },
            )

        data.update({
            "priority": advice.priority.value,
            "initial_message_focus": advice.initial_message_focus,
            "advised_action": advice.action,
            "advised_channel": advice.channel.value,
        })
        return AgentDecision(
            lead_id=lead.id,
            actor=actor,
            action=DecisionAction.ASSIGN_CHANNEL,
            reasoning=f"{reasoning}. {advice.reasoning}",
            data=data,
        )

    def _routing_prompt(self, lead: Lead, campaign: Campaign, channel: Channel) -> str:
        available = ", ".join(c.value for c in lead.available_channels()) or "none"
        goals = ", ".join(g.name for g in campaign.goals) or "none"
        return (
            f"Campaign: {campaign.name}\n"
            f"Campaign goals: {goals}\n"
            f"Lead source: {lead.source}\n"
            f"Lead name: {lead.full_name}\n"
            f"Reachable channels: {available}\n"
            f"Selected channel: {channel.value}\n"
            f"Lead details: {json.dumps(lead.metadata, default=str)[:1000]}"
        )

    def check_qualification(self, lead: Lead, campaign: Campaign, completed_goals: List[str]) -> Tuple[bool, List[str]]:
        """
        Returns:
            (qualified, unmet requirements)
        """
        criteria = campaign.qualification
        unmet = []
        if lead.qualification_score < criteria.min_score:
            unmet.append(f"score {lead.qualification_score} below minimum {criteria.min_score}")
        for field_name in criteria.required_fields:
            if not lead.has_field(field_name):
                unmet.append(f"missing field {field_name}")
        done = set(completed_goals)
        for goal in criteria.required_goals:
            if goal not in done:
                unmet.append(f"goal {goal} incomplete")
        return not unmet, unmet

    async def rescore(self, lead_id: str, campaign: Campaign, completed_goals: List[str]) -> Lead:
        """
        Recompute the score from all of the lead's conversations, merge it
        (max) into the lead and promote the lead to qualified when the
        campaign's criteria hold.
        """
        conversations = await self._store.list_conversations(lead_id)
        messages = [m for c in conversations for m in c.messages]
        score = self._analyzer.score_for(campaign, messages, completed_goals)
        await self._store.merge_lead_score(lead_id, score)

        lead = await self._store.get_lead(lead_id)
        qualified, unmet = self.check_qualification(lead, campaign, completed_goals)
        if qualified and lead.status in (LeadStatus.NEW, LeadStatus.CONTACTED):
            lead = await self._store.update_lead_status(lead_id, LeadStatus.QUALIFIED)
            logger.info(f"Lead {lead_id} qualified with score {lead.qualification_score}")
        elif unmet:
            logger.debug(f"Lead {lead_id} not yet qualified: {'; '.join(unmet)}")
        return lead
