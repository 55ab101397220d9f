"""
Unit Tests for the Conversation Engine
Tests for template sequencing, the TEMPLATE -> AI switch, adaptive
replies, opt-out, completion and handover from a conversation.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadflow.core.exceptions import DeliveryError
from leadflow.domain.models.campaign import DestinationType, HandoverCriteria
from leadflow.domain.models.communication import DeliveryStatus, Direction
from leadflow.domain.models.conversation import ConversationMode, MessageRole
from leadflow.domain.models.job import JobType
from leadflow.domain.models.lead import Channel, LeadStatus
from leadflow.domain.services.circuit_breaker import CircuitBreaker
from leadflow.domain.services.conversation_engine import CLOSING_NOTICE, render_template
from leadflow.domain.services.text_generation import TextGenerationService

from conftest import RecordingChannel, make_campaign, make_destination, make_lead


async def _setup(pipeline, campaign=None, lead=None):
    campaign = campaign or make_campaign()
    lead = lead or make_lead()
    await pipeline.pipeline_store.save_campaign(campaign)
    await pipeline.pipeline_store.save_lead(lead)
    return campaign, lead


async def _started(pipeline, channel=Channel.EMAIL, **kwargs):
    campaign, lead = await _setup(pipeline, **kwargs)
    conversation = await pipeline.conversations.start_conversation(lead, campaign, channel)
    return campaign, lead, conversation


class TestRenderTemplate:

    def test_placeholders_replaced(self):
        """Lead, campaign and metadata placeholders are filled"""
        lead = make_lead(metadata={"city": "Tucson"})
        text = render_template("Hi {{ name }} from {{city}}, about {{campaign}}{{missing}}", lead, make_campaign())

        assert text == "Hi Dana from Tucson, about Solar Savings"

    def test_none_passes_through(self):
        assert render_template(None, make_lead(), make_campaign()) is None


class TestTemplateSequence:

    @pytest.mark.asyncio
    async def test_first_step_sends_and_advances(self, pipeline, clock):
        """Stage 0 fires immediately and schedules stage 1 after its delay"""
        _, lead, conversation = await _started(pipeline)

        outcome = await pipeline.conversations.send_template_step(conversation.id, 0)

        assert outcome.sent is True
        assert outcome.next_stage == 1
        assert outcome.next_due_at == clock() + timedelta(minutes=60)

        sent = pipeline.channels[Channel.EMAIL].sent
        assert sent[0]["recipient"] == "dana@example.com"
        assert sent[0]["content"] == "Hi Dana, welcome to Solar Savings"
        assert sent[0]["subject"] == "Welcome"

        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.template_stage == 1
        assert stored.messages[0].is_scripted is True
        assert (await pipeline.pipeline_store.get_lead(lead.id)).status == LeadStatus.CONTACTED

    @pytest.mark.asyncio
    async def test_step_not_due_returns_retry_time(self, pipeline, clock):
        """A step fired early is a no-op carrying its due time"""
        _, _, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)

        clock.advance(minutes=10)
        outcome = await pipeline.conversations.send_template_step(conversation.id, 1)

        assert outcome.sent is False
        assert outcome.reason == "not_due"
        assert outcome.retry_at == clock.start + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_stale_stage_is_noop(self, pipeline):
        """A job for an already-advanced stage does nothing"""
        _, _, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)

        outcome = await pipeline.conversations.send_template_step(conversation.id, 0)

        assert outcome.reason == "stale_stage"
        assert len(pipeline.channels[Channel.EMAIL].sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_firing_dispatches_once(self, pipeline):
        """Racing timer and queue executions send a stage at most once"""
        _, _, conversation = await _started(pipeline)

        outcomes = await asyncio.gather(*(
            pipeline.conversations.send_template_step(conversation.id, 0) for _ in range(5)
        ))

        assert sum(1 for o in outcomes if o.sent) == 1
        assert len(pipeline.channels[Channel.EMAIL].sent) == 1

    @pytest.mark.asyncio
    async def test_sequence_exhausted(self, pipeline, clock):
        """No step past the end of the sequence"""
        _, _, conversation = await _started(pipeline, channel=Channel.SMS, lead=make_lead(phone="+15550001111"))
        await pipeline.conversations.send_template_step(conversation.id)
        clock.advance(minutes=120)
        await pipeline.conversations.send_template_step(conversation.id)
        clock.advance(days=1)

        outcome = await pipeline.conversations.send_template_step(conversation.id)

        assert outcome.reason == "sequence_exhausted"
        assert len(pipeline.channels[Channel.SMS].sent) == 2

    @pytest.mark.asyncio
    async def test_delivery_failure_restores_stage(self, pipeline):
        """A failed send leaves the stage claimable for the retry"""
        _, lead, conversation = await _started(pipeline)
        channel = pipeline.channels[Channel.EMAIL]
        channel.fail_with = DeliveryError("mailgun 503", status_code=503)

        outcome = await pipeline.conversations.send_template_step(conversation.id, 0)

        assert outcome.delivery_failed is True
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.template_stage == 0
        communications = await pipeline.pipeline_store.list_communications(lead.id, "email")
        assert communications[-1].status == DeliveryStatus.FAILED

        channel.fail_with = None
        retry = await pipeline.conversations.send_template_step(conversation.id, 0)
        assert retry.sent is True

    @pytest.mark.asyncio
    async def test_min_gap_defers_next_channel_send(self, pipeline, clock):
        """Another conversation on the same channel cannot send within the gap"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.hub.record_outbound(lead.id, Channel.EMAIL, clock())

        outcome = await pipeline.conversations.send_template_step(conversation.id, 0)

        assert outcome.reason == "min_gap"
        assert outcome.retry_at == clock() + timedelta(minutes=30)


class TestInboundHandling:

    @pytest.mark.asyncio
    async def test_reply_switches_to_ai_mode_and_stops_templates(self, pipeline, clock):
        """The first reply is a permanent switch; pending template steps no-op"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)

        clock.advance(minutes=5)
        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Tell me more please")

        assert outcome.switched_to_ai is True
        assert outcome.reply_needed is True
        assert outcome.message_index == 1

        clock.advance(minutes=60)
        step = await pipeline.conversations.send_template_step(conversation.id, 1)
        assert step.sent is False
        assert step.reason == "mode_ai_mode"

    @pytest.mark.asyncio
    async def test_ai_mode_entered_once(self, pipeline):
        """Later replies do not re-enter AI mode"""
        _, lead, _ = await _started(pipeline)

        first = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Hello")
        second = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Anyone there?")

        assert first.switched_to_ai is True
        assert second.switched_to_ai is False

    @pytest.mark.asyncio
    async def test_inbound_records_communication_and_context(self, pipeline):
        """Inbound messages are audited and shared across channels"""
        _, lead, _ = await _started(pipeline)

        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "I need this ASAP", external_id="m-1")

        inbound = [
            c for c in await pipeline.pipeline_store.list_communications(lead.id)
            if c.direction == Direction.INBOUND
        ]
        assert inbound[0].status == DeliveryStatus.RECEIVED
        assert inbound[0].external_id == "m-1"
        context = await pipeline.pipeline_store.get_shared_context(lead.id)
        assert context.preferences["last_active_channel"] == "email"
        assert context.preferences["urgency"] == "high"

    @pytest.mark.asyncio
    async def test_opt_out_completes_and_rejects(self, pipeline):
        """STOP ends every conversation and rejects the lead"""
        _, lead, conversation = await _started(pipeline)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "STOP")

        assert outcome.reply_needed is False
        assert outcome.reason == "opted_out"
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.COMPLETED
        assert stored.completion_reason == "opt_out"
        assert (await pipeline.pipeline_store.get_lead(lead.id)).status == LeadStatus.REJECTED

    @pytest.mark.asyncio
    async def test_completed_conversation_logs_without_reply(self, pipeline):
        """Inbound after completion is kept but never answered"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.complete_conversation(conversation.id, "manual")

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "One more question")

        assert outcome.reply_needed is False
        assert outcome.reason == "conversation_completed"
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.messages[-1].content == "One more question"

    @pytest.mark.asyncio
    async def test_required_goals_complete_conversation(self, pipeline):
        """Meeting every required goal completes the conversation"""
        _, lead, conversation = await _started(pipeline)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Our budget is approved")

        assert outcome.matched_goals == ["budget_confirmed"]
        assert outcome.reason == "goals_completed"
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.COMPLETED
        assert stored.goal_progress == {"budget_confirmed": 1.0}

    @pytest.mark.asyncio
    async def test_keyword_handover_sends_closing_notice(self, pipeline):
        """A handover trigger moves to HANDOVER_PENDING and queues deliveries"""
        campaign = make_campaign(
            handover=HandoverCriteria(keyword_triggers=["call me"]),
            destinations=[make_destination("crm-main", DestinationType.CRM, endpoint="https://crm.test/leads")],
        )
        _, lead, conversation = await _started(pipeline, campaign=campaign)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Please call me tomorrow")

        assert outcome.reason == "handover_triggered"
        assert "keyword_triggers" in outcome.handover.reason
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.HANDOVER_PENDING
        assert stored.messages[-1].content == CLOSING_NOTICE
        assert pipeline.channels[Channel.EMAIL].sent[-1]["content"] == CLOSING_NOTICE
        assert (await pipeline.pipeline_store.get_lead(lead.id)).status == LeadStatus.SENT_TO_HANDOVER

        jobs = [j for j in pipeline.queue.pending_jobs() if j.job_type == JobType.DELIVER_HANDOVER]
        assert [j.payload["destination_id"] for j in jobs] == ["crm-main"]

        later = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Thanks!")
        assert later.reason == "handover_pending"

    async def _handed_over(self, pipeline):
        campaign = make_campaign(
            handover=HandoverCriteria(keyword_triggers=["call me"]),
            destinations=[make_destination("crm-main", DestinationType.CRM, endpoint="https://crm.test/leads")],
        )
        _, lead, conversation = await _started(pipeline, campaign=campaign)
        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Please call me tomorrow")
        return lead, conversation

    @pytest.mark.asyncio
    async def test_opt_out_while_handover_pending(self, pipeline):
        """STOP after handover still completes the conversation and rejects the lead"""
        lead, conversation = await self._handed_over(pipeline)
        sent_before = len(pipeline.channels[Channel.EMAIL].sent)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "STOP")

        assert outcome.reason == "opted_out"
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.COMPLETED
        assert stored.completion_reason == "opt_out"
        assert (await pipeline.pipeline_store.get_lead(lead.id)).status == LeadStatus.REJECTED
        assert len(pipeline.channels[Channel.EMAIL].sent) == sent_before

    @pytest.mark.asyncio
    async def test_goals_tracked_while_handover_pending(self, pipeline):
        """Goal progress still counts after handover and completes the conversation"""
        lead, conversation = await self._handed_over(pipeline)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "My budget is 20k")

        assert outcome.reply_needed is False
        assert outcome.reason == "goals_completed"
        assert outcome.matched_goals == ["budget_confirmed"]
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.COMPLETED
        assert stored.goal_progress == {"budget_confirmed": 1.0}

    @pytest.mark.asyncio
    async def test_rejected_lead_gets_no_reply_on_new_channel(self, pipeline):
        """An opted-out lead writing on another channel is logged, not answered"""
        _, lead, _ = await _started(pipeline, lead=make_lead(phone="+15550001111"))
        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "unsubscribe")

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.SMS, "hello?")

        assert outcome.reply_needed is False
        assert outcome.reason == "lead_rejected"
        assert outcome.conversation_id is None
        conversations = await pipeline.pipeline_store.list_conversations(lead.id)
        assert [c.channel for c in conversations] == [Channel.EMAIL]
        inbound = await pipeline.pipeline_store.list_communications(lead.id, "sms")
        assert [(c.direction, c.content) for c in inbound] == [(Direction.INBOUND, "hello?")]
        assert pipeline.channels[Channel.SMS].sent == []

    @pytest.mark.asyncio
    async def test_archived_lead_inbound_is_logged_on_last_conversation(self, pipeline):
        _, lead, conversation = await _started(pipeline)
        await pipeline.pipeline_store.update_lead_status(lead.id, LeadStatus.ARCHIVED)

        outcome = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Are you still there?")

        assert outcome.reason == "lead_archived"
        assert outcome.conversation_id == conversation.id
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.messages[-1].content == "Are you still there?"
        assert stored.mode == ConversationMode.TEMPLATE_MODE


class TestModeTransitions:

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, pipeline):
        """The store refuses to reopen a completed conversation"""
        _, _, conversation = await _started(pipeline)
        await pipeline.conversations.complete_conversation(conversation.id, "manual")

        reopened = await pipeline.pipeline_store.transition_mode(
            conversation.id, [ConversationMode.COMPLETED], ConversationMode.AI_MODE
        )

        assert reopened is False
        stored = await pipeline.pipeline_store.get_conversation(conversation.id)
        assert stored.mode == ConversationMode.COMPLETED

    @pytest.mark.asyncio
    async def test_ai_mode_never_returns_to_template(self, pipeline):
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Hello")

        reverted = await pipeline.pipeline_store.transition_mode(
            conversation.id, [ConversationMode.AI_MODE], ConversationMode.TEMPLATE_MODE
        )

        assert reverted is False


class TestAdaptiveReplies:

    @pytest.mark.asyncio
    async def test_reply_is_sent_once_per_inbound(self, pipeline):
        """Reply generation is idempotent per inbound message"""
        _, lead, conversation = await _started(pipeline)
        inbound = await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "What does it cost?")

        first = await pipeline.conversations.generate_reply(conversation.id, inbound.message_index)
        second = await pipeline.conversations.generate_reply(conversation.id, inbound.message_index)

        assert first.sent is True
        assert first.message.is_scripted is False
        assert second.reason == "already_replied"
        assert len(pipeline.channels[Channel.EMAIL].sent) == 1

    @pytest.mark.asyncio
    async def test_reply_bypasses_min_gap(self, pipeline, clock):
        """Reply-triggered responses are not held by the send gap"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)
        clock.advance(minutes=1)
        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Interesting, tell me more")

        reply = await pipeline.conversations.generate_reply(conversation.id)

        assert reply.sent is True
        assert len(pipeline.channels[Channel.EMAIL].sent) == 2

    @pytest.mark.asyncio
    async def test_template_echo_is_regenerated(self, pipeline):
        """A draft repeating a scripted message is replaced"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)

        provider = MagicMock()
        provider.generate = AsyncMock(side_effect=[
            "Hi Dana, welcome to Solar Savings",
            "Great question! Most homes save around a third on their bill.",
        ])
        text_service = TextGenerationService(provider, CircuitBreaker("llm"))
        channel = RecordingChannel(text_service, Channel.EMAIL)
        pipeline.channels[Channel.EMAIL] = channel

        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "How much would I save?")
        reply = await pipeline.conversations.generate_reply(conversation.id)

        assert reply.message.content.startswith("Great question")
        assert provider.generate.await_count == 2
        assert channel.sent[-1]["subject"] == "Re: Solar Savings"

    @pytest.mark.asyncio
    async def test_no_reply_outside_ai_mode(self, pipeline):
        """Template-mode conversations are never answered adaptively"""
        _, _, conversation = await _started(pipeline)

        outcome = await pipeline.conversations.generate_reply(conversation.id)

        assert outcome.sent is False
        assert outcome.reason == "mode_template_mode"

    @pytest.mark.asyncio
    async def test_reply_history_is_ordered(self, pipeline):
        """Messages keep arrival order across roles"""
        _, lead, conversation = await _started(pipeline)
        await pipeline.conversations.send_template_step(conversation.id, 0)
        await pipeline.conversations.receive_inbound(lead.id, Channel.EMAIL, "Hi")
        await pipeline.conversations.generate_reply(conversation.id)

        stored = await pipeline.pipeline_store.get_conversation(conversation.id)

        assert [m.role for m in stored.messages] == [MessageRole.AGENT, MessageRole.LEAD, MessageRole.AGENT]
