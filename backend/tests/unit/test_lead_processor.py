"""
Unit Tests for the Lead Processor and Job Worker
End-to-end flows through the queue: ingestion, routing, template
sequencing, replies, handover delivery, breaker fallback and
multi-agent coordination.
"""
from datetime import timedelta

import pytest

from leadflow.core.exceptions import DeliveryError, LeadValidationError, NotFoundError
from leadflow.domain.models.agent_decision import DecisionAction
from leadflow.domain.models.campaign import AgentAssignment, DestinationType, HandoverCriteria
from leadflow.domain.models.communication import DeliveryStatus
from leadflow.domain.models.conversation import ConversationMode
from leadflow.domain.models.coordination import CoordinationEntryStatus
from leadflow.domain.models.job import JobStatus, JobType
from leadflow.domain.models.lead import Channel, LeadStatus
from leadflow.domain.services.circuit_breaker import CircuitState

from conftest import make_campaign, make_destination, make_lead


async def _campaign(pipeline, **overrides):
    campaign = make_campaign(**overrides)
    await pipeline.pipeline_store.save_campaign(campaign)
    return campaign


class TestIngestion:

    @pytest.mark.asyncio
    async def test_valid_lead_is_stored_and_queued(self, pipeline):
        await _campaign(pipeline)

        lead = await pipeline.processor.ingest_lead(
            {"id": "lead-1", "campaign_id": "camp-1", "email": "dana@example.com", "first_name": "Dana"}
        )

        assert (await pipeline.pipeline_store.get_lead("lead-1")).email == "dana@example.com"
        assert lead.status == LeadStatus.NEW
        jobs = pipeline.queue.pending_jobs()
        assert [(j.job_type, j.payload) for j in jobs] == [(JobType.PROCESS_LEAD, {"lead_id": "lead-1"})]

    @pytest.mark.asyncio
    async def test_malformed_lead_is_rejected(self, pipeline):
        """Validation errors are rejected immediately, not queued"""
        await _campaign(pipeline)

        with pytest.raises(LeadValidationError, match="invalid lead"):
            await pipeline.processor.ingest_lead({"campaign_id": "camp-1", "email": "dana@example.com"})

        assert pipeline.queue.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_unknown_campaign_is_rejected(self, pipeline):
        with pytest.raises(LeadValidationError, match="unknown campaign"):
            await pipeline.processor.ingest_lead(make_lead(campaign_id="nope"))

    @pytest.mark.asyncio
    async def test_unreachable_lead_is_rejected(self, pipeline):
        await _campaign(pipeline)

        with pytest.raises(LeadValidationError, match="no contact channel"):
            await pipeline.processor.ingest_lead(make_lead(email=None))


class TestOrchestrationFlows:

    @pytest.mark.asyncio
    async def test_email_only_lead_starts_email_sequence(self, pipeline, worker, clock):
        """Email-only lead on an email campaign: assigned email, first step sent"""
        await _campaign(pipeline)
        await pipeline.processor.ingest_lead(make_lead())

        processed = await worker.run_until_idle()

        assert processed == 2
        decisions = await pipeline.pipeline_store.list_decisions("lead-1")
        assert decisions[0].action == DecisionAction.ASSIGN_CHANNEL
        assert decisions[0].data["channel"] == "email"
        assert pipeline.channels[Channel.EMAIL].sent[0]["content"] == "Hi Dana, welcome to Solar Savings"

        next_step = pipeline.queue.pending_jobs()
        assert len(next_step) == 1
        assert next_step[0].payload["expected_stage"] == 1
        assert next_step[0].scheduled_for == clock() + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_reply_before_next_step_switches_to_ai(self, pipeline, worker, clock):
        """A reply cancels the script; the queued stage-1 job later no-ops"""
        await _campaign(pipeline)
        await pipeline.processor.ingest_lead(make_lead())
        await worker.run_until_idle()

        clock.advance(minutes=10)
        inbound = await pipeline.processor.handle_inbound("lead-1", Channel.EMAIL, "Tell me more please")
        await worker.run_until_idle()

        conversation = await pipeline.pipeline_store.get_conversation(inbound.conversation_id)
        assert conversation.mode == ConversationMode.AI_MODE
        email = pipeline.channels[Channel.EMAIL]
        assert len(email.sent) == 2
        assert email.sent[1]["subject"] == "Re: Solar Savings"

        clock.advance(minutes=60)
        processed = await worker.run_until_idle()

        assert processed == 1
        assert len(email.sent) == 2
        assert pipeline.queue.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_handover_survives_one_destination_timing_out(self, pipeline, worker, clock, handover_clients):
        """CRM keeps timing out; the webhook still succeeds; the lead is handed over"""
        await _campaign(
            pipeline,
            handover=HandoverCriteria(score_threshold=7),
            destinations=[
                make_destination("crm-main", DestinationType.CRM, endpoint="https://crm.test/leads"),
                make_destination("hook", DestinationType.WEBHOOK, endpoint="https://hooks.test/in"),
            ],
        )
        handover_clients[DestinationType.CRM].error = DeliveryError("crm-main timed out")
        await pipeline.processor.ingest_lead(make_lead())
        await worker.run_until_idle()

        clock.advance(minutes=5)
        inbound = await pipeline.processor.handle_inbound(
            "lead-1", Channel.EMAIL, "I'm interested, when can you call?"
        )

        assert inbound.reason == "handover_triggered"
        assert "qualification_score" in inbound.handover.reason
        assert (await pipeline.pipeline_store.get_lead("lead-1")).status == LeadStatus.SENT_TO_HANDOVER

        await worker.run_until_idle()
        for seconds in (30, 60):
            clock.advance(seconds=seconds)
            await worker.run_until_idle()

        status = await pipeline.processor.get_handover_status("lead-1")
        assert status["hook"]["success"] is True
        assert status["hook"]["attempts"] == 1
        assert status["crm-main"]["success"] is False
        assert status["crm-main"]["attempts"] == 3

        failed = await pipeline.queue.get_failed_jobs()
        assert [j.payload["destination_id"] for j in failed] == ["crm-main"]
        assert failed[0].status == JobStatus.FAILED
        assert (await pipeline.pipeline_store.get_lead("lead-1")).status == LeadStatus.SENT_TO_HANDOVER

    @pytest.mark.asyncio
    async def test_open_email_breaker_completes_job_as_simulated(self, pipeline, worker):
        """After five email failures the sixth send is a simulated success"""
        await _campaign(pipeline)
        email = pipeline.channels[Channel.EMAIL]
        email.fail_with = DeliveryError("mailgun 503", status_code=503)
        for n in range(1, 6):
            await pipeline.processor.ingest_lead(make_lead(id=f"lead-{n}", email=f"p{n}@example.com"))
        await worker.run_until_idle()

        assert pipeline.breakers.get("channel.email").state == CircuitState.OPEN
        assert worker.get_stats()["jobs_retried"] == 5

        await pipeline.processor.ingest_lead(make_lead(id="lead-6", email="p6@example.com"))
        await worker.run_until_idle()

        communication = (await pipeline.pipeline_store.list_communications("lead-6", "email"))[-1]
        assert communication.status == DeliveryStatus.SENT
        assert communication.metadata["simulated"] is True
        assert email.sent == []
        assert await pipeline.queue.get_failed_jobs() == []
        assert (await pipeline.pipeline_store.get_lead("lead-6")).status == LeadStatus.CONTACTED

    @pytest.mark.asyncio
    async def test_round_robin_agents_start_an_hour_apart(self, pipeline, worker, clock):
        """Two agents: agent-a now on email, agent-b an hour later on SMS"""
        await _campaign(pipeline, agents=[AgentAssignment(agent_id="agent-a"), AgentAssignment(agent_id="agent-b")])
        await pipeline.processor.ingest_lead(make_lead(phone="+15550001111"))
        await worker.run_until_idle()

        email = pipeline.channels[Channel.EMAIL]
        sms = pipeline.channels[Channel.SMS]
        assert len(email.sent) == 1
        assert sms.sent == []

        schedule = await pipeline.hub.get_schedule("camp-1", "lead-1")
        assert [(e.agent_id, e.channel, e.scheduled_time) for e in schedule.entries] == [
            ("agent-a", Channel.EMAIL, clock()),
            ("agent-b", Channel.SMS, clock() + timedelta(minutes=60)),
        ]

        clock.advance(minutes=60)
        await worker.run_until_idle()

        assert len(sms.sent) == 1
        assert sms.sent[0]["content"] == "Hi Dana, reply YES for a quote"
        schedule = await pipeline.hub.get_schedule("camp-1", "lead-1")
        assert {e.status for e in schedule.entries} == {CoordinationEntryStatus.SENT}
        conversations = await pipeline.pipeline_store.list_conversations("lead-1")
        assert {(c.agent_id, c.channel) for c in conversations} == {
            ("agent-a", Channel.EMAIL),
            ("agent-b", Channel.SMS),
        }

    @pytest.mark.asyncio
    async def test_archived_lead_starts_nothing(self, pipeline, worker):
        await _campaign(pipeline)
        await pipeline.pipeline_store.save_lead(make_lead(status=LeadStatus.ARCHIVED))

        decision = await pipeline.processor.process_lead("lead-1")

        assert decision.action == DecisionAction.ARCHIVE
        assert await pipeline.pipeline_store.list_conversations("lead-1") == []


class TestJobWorker:

    @pytest.mark.asyncio
    async def test_missing_lead_fails_without_retry(self, pipeline, worker):
        """NotFoundError is not retryable"""
        await pipeline.queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "ghost"})

        await worker.run_until_idle()

        failed = await pipeline.queue.get_failed_jobs()
        assert failed[0].attempts == 1
        assert failed[0].last_error == "lead not found: ghost"
        assert worker.get_stats()["jobs_failed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_retried_with_backoff(self, pipeline, worker, clock):
        """Unknown exceptions retry with doubling delays, then dead-letter"""
        await worker.initialize()

        async def broken(payload):
            raise RuntimeError("bad state")

        worker._handlers[JobType.PROCESS_LEAD] = broken
        job = await pipeline.queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "lead-1"})

        await worker.run_until_idle()
        assert pipeline.queue.pending_jobs()[0].scheduled_for == clock() + timedelta(seconds=30)

        clock.advance(seconds=30)
        await worker.run_until_idle()
        assert pipeline.queue.pending_jobs()[0].scheduled_for == clock() + timedelta(seconds=60)

        clock.advance(seconds=60)
        await worker.run_until_idle()

        failed = await pipeline.queue.get_failed_jobs()
        assert [j.job_id for j in failed] == [job.job_id]
        assert failed[0].attempts == 3
        assert worker.get_stats()["jobs_retried"] == 2

    @pytest.mark.asyncio
    async def test_job_abandoned_mid_processing_runs_again(self, pipeline, worker, clock):
        """Scheduled checks hand stuck jobs to a live worker"""
        await worker.initialize()
        seen = []

        async def record(payload):
            seen.append(payload)

        worker._handlers[JobType.PROCESS_LEAD] = record
        await pipeline.queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "lead-1"})
        # claimed by a worker that never settles it
        await pipeline.queue.dequeue_job()

        assert await worker.run_until_idle() == 0

        clock.advance(seconds=worker.VISIBILITY_TIMEOUT)
        processed = await worker.run_until_idle()

        assert processed == 1
        assert seen == [{"lead_id": "lead-1"}]
        assert worker.get_stats()["jobs_processed"] == 1

    @pytest.mark.asyncio
    async def test_inbound_for_unknown_lead_raises(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.processor.handle_inbound("ghost", Channel.SMS, "hello")

    @pytest.mark.asyncio
    async def test_stats_include_breakers(self, pipeline, worker):
        await _campaign(pipeline)
        await pipeline.processor.ingest_lead(make_lead())
        await worker.run_until_idle()

        stats = worker.get_stats()

        assert stats["jobs_processed"] == 2
        assert stats["breakers"]["channel.email"]["state"] == "closed"
