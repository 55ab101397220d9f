"""
Coordination Hub
Schedules and serializes outreach across the agents assigned to one
lead, aggregates cross-agent decision feedback and tracks shared goal
progress.

Hub state lives in a CoordinationStore owned by the pipeline context;
there is no module-level hub instance.
"""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from leadflow.domain.interfaces.feedback_provider import FeedbackProvider
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.agent_decision import AgentDecision, DecisionAction
from leadflow.domain.models.campaign import Campaign, CoordinationStrategy
from leadflow.domain.models.coordination import (
    AgentFeedback,
    AgentMessage,
    ConsensusDecision,
    CoordinationEntryStatus,
    CoordinationPayload,
    CoordinationSchedule,
    DecisionPayload,
    GoalProgress,
    GoalUpdatePayload,
    HandoverPayload,
    MessageCoordination,
    StatusPayload,
)
from leadflow.domain.models.lead import Channel, Lead
from leadflow.domain.services.coordination_store import CoordinationStore
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)

HUB_AGENT_ID = "coordination_hub"

DEFAULT_ROTATION = [Channel.EMAIL, Channel.SMS, Channel.CHAT]
DEFAULT_STAGGER_MINUTES = {
    CoordinationStrategy.ROUND_ROBIN: 60,
    CoordinationStrategy.PRIORITY_BASED: 120,
    CoordinationStrategy.CHANNEL_SPECIFIC: 30,
}

# Agent roles in priority order for priority_based scheduling
ROLE_RANK = {"primary": 0, "secondary": 1, "support": 2}

CompletionListener = Callable[[str, str, GoalProgress], Awaitable[None]]


class EngagementFeedbackProvider(FeedbackProvider):
    """
    Default feedback: each agent answers from its own conversation with
    the lead. Confidence grows with the number of replies it has seen.
    An agent whose lead has replied disagrees with archiving.
    """

    BASE_CONFIDENCE = 0.5
    CONFIDENCE_PER_REPLY = 0.1

    def __init__(self, pipeline_store: PipelineStore):
        self._store = pipeline_store

    async def solicit(self, agent_id: str, decision: AgentDecision) -> AgentFeedback:
        conversations = await self._store.list_conversations(decision.lead_id)
        replies = sum(
            len(c.inbound_messages()) for c in conversations if c.agent_id == agent_id
        )
        confidence = min(1.0, self.BASE_CONFIDENCE + self.CONFIDENCE_PER_REPLY * replies)
        agrees = not (decision.action == DecisionAction.ARCHIVE and replies > 0)
        reasoning = f"{replies} replies observed on {agent_id}'s conversation"
        return AgentFeedback(agent_id=agent_id, agrees=agrees, confidence=confidence, reasoning=reasoning)


class CoordinationHub:

    def __init__(
        self,
        store: CoordinationStore,
        pipeline_store: PipelineStore,
        feedback_provider: Optional[FeedbackProvider] = None,
        min_gap_minutes: int = 30,
        stagger_minutes: Optional[Dict[str, int]] = None,
        default_rotation: Optional[List[str]] = None,
        clock: Clock = utc_now
    ):
        self._store = store
        self._pipeline_store = pipeline_store
        self._feedback = feedback_provider or EngagementFeedbackProvider(pipeline_store)
        self.min_gap = timedelta(minutes=min_gap_minutes)
        self._stagger = dict(DEFAULT_STAGGER_MINUTES)
        for name, minutes in (stagger_minutes or {}).items():
            self._stagger[CoordinationStrategy(name)] = int(minutes)
        self._rotation = [Channel(c) for c in default_rotation] if default_rotation else list(DEFAULT_ROTATION)
        self._clock = clock
        self._completion_listeners: List[CompletionListener] = []

    # Scheduling

    def build_schedule(self, campaign: Campaign, lead: Lead, start: Optional[datetime] = None) -> CoordinationSchedule:
        """
        Build the outreach schedule for a lead.

        round_robin:      agent[i] -> rotation[i % n], +i * stagger
        priority_based:   every agent -> primary channel, +rank * stagger
        channel_specific: agent[0] -> primary, agent[k] -> fallback[k-1],
                          then rotation[k % n] once fallbacks run out
        """
        start = start or self._clock()
        step = timedelta(minutes=self._stagger[campaign.strategy])
        rotation = self._rotation_for(lead)
        agents = list(campaign.agents)
        entries: List[MessageCoordination] = []

        if campaign.strategy == CoordinationStrategy.PRIORITY_BASED:
            ranked = sorted(enumerate(agents), key=lambda item: (ROLE_RANK.get(item[1].role, len(ROLE_RANK)), item[0]))
            for rank, (_, agent) in enumerate(ranked):
                entries.append(MessageCoordination(
                    agent_id=agent.agent_id,
                    channel=campaign.channels.primary,
                    priority=rank + 1,
                    scheduled_time=start + step * rank,
                ))
        elif campaign.strategy == CoordinationStrategy.CHANNEL_SPECIFIC:
            fallback = campaign.channels.fallback
            for index, agent in enumerate(agents):
                if index == 0:
                    channel = campaign.channels.primary
                elif index - 1 < len(fallback):
                    channel = fallback[index - 1]
                else:
                    channel = rotation[index % len(rotation)]
                entries.append(MessageCoordination(
                    agent_id=agent.agent_id,
                    channel=channel,
                    priority=index + 1,
                    scheduled_time=start + step * index,
                ))
        else:
            for index, agent in enumerate(agents):
                entries.append(MessageCoordination(
                    agent_id=agent.agent_id,
                    channel=rotation[index % len(rotation)],
                    priority=index + 1,
                    scheduled_time=start + step * index,
                ))

        return CoordinationSchedule(
            campaign_id=campaign.id,
            lead_id=lead.id,
            strategy=campaign.strategy,
            entries=self._enforce_min_gap(entries),
        )

    def _rotation_for(self, lead: Lead) -> List[Channel]:
        """Default rotation restricted to channels the lead can be reached on."""
        available = lead.available_channels()
        reachable = [c for c in self._rotation if c in available]
        return reachable or list(self._rotation)

    def _enforce_min_gap(self, entries: List[MessageCoordination]) -> List[MessageCoordination]:
        """Push later same-channel entries so no channel fires twice within min_gap."""
        last_by_channel: Dict[Channel, datetime] = {}
        adjusted = []
        for entry in sorted(entries, key=lambda e: (e.scheduled_time, e.priority)):
            scheduled = entry.scheduled_time
            previous = last_by_channel.get(entry.channel)
            if previous is not None and scheduled < previous + self.min_gap:
                scheduled = previous + self.min_gap
                entry = entry.model_copy(update={"scheduled_time": scheduled})
            last_by_channel[entry.channel] = scheduled
            adjusted.append(entry)
        return adjusted

    async def create_coordination(self, campaign: Campaign, lead: Lead, start: Optional[datetime] = None) -> CoordinationSchedule:
        schedule = self.build_schedule(campaign, lead, start)
        await self._store.save_schedule(schedule)
        logger.info(
            f"Coordination created for lead {lead.id}: {campaign.strategy.value} with "
            f"{len(schedule.entries)} agents"
        )
        return schedule

    async def get_schedule(self, campaign_id: str, lead_id: str) -> Optional[CoordinationSchedule]:
        return await self._store.get_schedule(campaign_id, lead_id)

    async def sync_agent_schedules(self, campaign: Campaign, lead: Lead) -> CoordinationSchedule:
        """
        Rebalance pending entries from now, keeping completed ones.

        Agents added to the campaign since the schedule was built are
        appended; entries for agents no longer assigned are skipped.
        """
        schedule = await self._store.get_schedule(campaign.id, lead.id)
        if schedule is None:
            return await self.create_coordination(campaign, lead)

        now = self._clock()
        assigned = {a.agent_id for a in campaign.agents}
        scheduled_agents = {e.agent_id for e in schedule.entries}
        fresh = self.build_schedule(campaign, lead, start=now)

        done = [e for e in schedule.entries if e.status != CoordinationEntryStatus.PENDING]
        pending = [e for e in schedule.pending_entries() if e.agent_id in assigned]
        dropped = [
            e.model_copy(update={"status": CoordinationEntryStatus.SKIPPED})
            for e in schedule.pending_entries() if e.agent_id not in assigned
        ]
        pending.extend(e for e in fresh.entries if e.agent_id not in scheduled_agents)

        step = timedelta(minutes=self._stagger[campaign.strategy])
        rebalanced = []
        for index, entry in enumerate(sorted(pending, key=lambda e: (e.scheduled_time, e.priority))):
            rebalanced.append(entry.model_copy(update={"scheduled_time": max(entry.scheduled_time, now + step * index)}))

        synced = schedule.model_copy(update={
            "entries": done + dropped + self._enforce_min_gap(rebalanced),
            "updated_at": now,
        })
        await self._store.save_schedule(synced)
        return synced

    async def next_allowed_time(self, lead_id: str, channel: Channel, at: Optional[datetime] = None) -> Optional[datetime]:
        """None when the channel may send now, otherwise the earliest allowed time."""
        at = at or self._clock()
        last = await self._store.get_last_outbound(lead_id, channel)
        if last is None or at >= last + self.min_gap:
            return None
        return last + self.min_gap

    async def record_outbound(self, lead_id: str, channel: Channel, at: Optional[datetime] = None) -> None:
        await self._store.set_last_outbound(lead_id, channel, at or self._clock())

    async def get_next_communication_action(self, campaign_id: str, lead_id: str) -> Optional[MessageCoordination]:
        """Earliest due pending entry whose channel respects the minimum gap."""
        schedule = await self._store.get_schedule(campaign_id, lead_id)
        if schedule is None:
            return None
        now = self._clock()
        for entry in schedule.pending_entries():
            if entry.scheduled_time > now:
                break
            if await self.next_allowed_time(lead_id, entry.channel, now) is None:
                return entry
        return None

    async def mark_entry(
        self,
        campaign_id: str,
        lead_id: str,
        agent_id: str,
        channel: Channel,
        status: CoordinationEntryStatus = CoordinationEntryStatus.SENT
    ) -> bool:
        schedule = await self._store.get_schedule(campaign_id, lead_id)
        if schedule is None:
            return False
        changed = False
        entries = []
        for entry in schedule.entries:
            if (
                not changed
                and entry.agent_id == agent_id
                and entry.channel == channel
                and entry.status == CoordinationEntryStatus.PENDING
            ):
                entry = entry.model_copy(update={"status": status})
                changed = True
            entries.append(entry)
        if changed:
            await self._store.save_schedule(schedule.model_copy(update={"entries": entries, "updated_at": self._clock()}))
        return changed

    # Agent messaging

    async def active_agents(self, campaign_id: str, lead_id: str) -> List[str]:
        """Agents with an active conversation, else the scheduled agents."""
        agents: List[str] = []
        for conversation in await self._pipeline_store.list_conversations(lead_id, active_only=True):
            if conversation.agent_id not in agents:
                agents.append(conversation.agent_id)
        if agents:
            return agents
        schedule = await self._store.get_schedule(campaign_id, lead_id)
        if schedule:
            for entry in schedule.entries:
                if entry.agent_id not in agents:
                    agents.append(entry.agent_id)
        return agents

    async def send_agent_message(self, message: AgentMessage) -> None:
        await self._store.push_message(message)
        logger.debug(f"{message.message_type.value} message {message.from_agent} -> {message.to_agent}")

    async def broadcast(
        self,
        from_agent: str,
        recipients: List[str],
        campaign_id: str,
        lead_id: str,
        payload
    ) -> int:
        count = 0
        for agent_id in recipients:
            await self.send_agent_message(AgentMessage(
                from_agent=from_agent,
                to_agent=agent_id,
                campaign_id=campaign_id,
                lead_id=lead_id,
                payload=payload,
            ))
            count += 1
        return count

    async def broadcast_status(self, campaign_id: str, lead_id: str, agent_id: str, status: str, detail: Optional[dict] = None) -> int:
        recipients = [a for a in await self.active_agents(campaign_id, lead_id) if a != agent_id]
        return await self.broadcast(agent_id, recipients, campaign_id, lead_id, StatusPayload(status=status, detail=detail or {}))

    async def request_agent_handover(
        self,
        campaign_id: str,
        lead_id: str,
        from_agent: str,
        to_agent: str,
        reason: str,
        context: Optional[dict] = None
    ) -> AgentMessage:
        message = AgentMessage(
            from_agent=from_agent,
            to_agent=to_agent,
            campaign_id=campaign_id,
            lead_id=lead_id,
            payload=HandoverPayload(to_agent_id=to_agent, reason=reason, context=context or {}),
        )
        await self.send_agent_message(message)
        logger.info(f"Agent handover requested for lead {lead_id}: {from_agent} -> {to_agent} ({reason})")
        return message

    async def get_mailbox(self, agent_id: str, limit: int = 100) -> List[AgentMessage]:
        return await self._store.drain_messages(agent_id, limit)

    # Cross-agent decisions

    async def coordinate_decision(self, decision: AgentDecision, campaign: Campaign) -> ConsensusDecision:
        """
        Solicit feedback from every other active agent, aggregate it and
        broadcast the consensus to all participants before returning.
        """
        participants = await self.active_agents(campaign.id, decision.lead_id)
        if decision.actor not in participants:
            participants.append(decision.actor)
        others = [a for a in participants if a != decision.actor]

        await self.broadcast(
            decision.actor, others, campaign.id, decision.lead_id,
            DecisionPayload(decision=decision, requires_coordination=True),
        )

        feedback = [await self._feedback.solicit(agent_id, decision) for agent_id in others]
        consensus = self.aggregate_feedback(decision, feedback)

        await self.broadcast(
            HUB_AGENT_ID, participants, campaign.id, decision.lead_id,
            CoordinationPayload(consensus=consensus),
        )
        logger.info(
            f"Consensus for {decision.action.value} on lead {decision.lead_id}: "
            f"{consensus.consensus} (support={consensus.weighted_support:.2f}, agents={len(feedback)})"
        )
        return consensus

    @staticmethod
    def aggregate_feedback(decision: AgentDecision, feedback: List[AgentFeedback]) -> ConsensusDecision:
        """
        Confidence-weighted majority. Consensus holds when the weighted
        support is strictly greater than one half. With no other agents
        the proposer's decision stands.
        """
        if not feedback:
            return ConsensusDecision(decision=decision, consensus=True, agreement_ratio=1.0, weighted_support=1.0)

        agreeing = [f for f in feedback if f.agrees]
        agreement_ratio = len(agreeing) / len(feedback)
        total_confidence = sum(f.confidence for f in feedback)
        if total_confidence > 0:
            weighted_support = sum(f.confidence for f in agreeing) / total_confidence
        else:
            weighted_support = agreement_ratio

        return ConsensusDecision(
            decision=decision,
            consensus=weighted_support > 0.5,
            agreement_ratio=round(agreement_ratio, 4),
            weighted_support=round(weighted_support, 4),
            feedback=feedback,
        )

    # Goals

    def on_completion(self, listener: CompletionListener) -> None:
        """Register a coroutine called once when a lead's required goals are all met."""
        self._completion_listeners.append(listener)

    async def get_goal_progress(self, campaign: Campaign, lead_id: str) -> GoalProgress:
        return GoalProgress(
            campaign_id=campaign.id,
            lead_id=lead_id,
            progress=await self._store.get_goal_progress(campaign.id, lead_id),
            targets=campaign.goal_targets(),
            required=campaign.required_goal_names(),
        )

    async def update_goal_progress(
        self,
        campaign: Campaign,
        lead_id: str,
        goal: str,
        increment: float = 1.0,
        from_agent: str = HUB_AGENT_ID
    ) -> GoalProgress:
        """
        Additively merge progress for one goal across all channels and
        fire completion exactly once when every required goal is met.
        """
        merged = await self._store.increment_goal(campaign.id, lead_id, goal, increment)
        progress = GoalProgress(
            campaign_id=campaign.id,
            lead_id=lead_id,
            progress=merged,
            targets=campaign.goal_targets(),
            required=campaign.required_goal_names(),
        )

        recipients = [a for a in await self.active_agents(campaign.id, lead_id) if a != from_agent]
        await self.broadcast(from_agent, recipients, campaign.id, lead_id, GoalUpdatePayload(
            goal=goal,
            increment=increment,
            current=merged.get(goal, 0.0),
            target=progress.targets.get(goal),
        ))

        if progress.is_complete and await self._store.mark_completed(campaign.id, lead_id):
            logger.info(f"All required goals met for lead {lead_id} in campaign {campaign.id}")
            for listener in self._completion_listeners:
                await listener(campaign.id, lead_id, progress)

        return progress
