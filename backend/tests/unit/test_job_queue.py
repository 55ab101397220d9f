"""
Unit Tests for the Job Queue
Tests for the Job model retry logic, the in-memory queue and the
Redis-backed queue service (against a mocked Redis client).
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadflow.core.exceptions import DependencyError
from leadflow.domain.models.job import Job, JobStatus, JobType
from leadflow.domain.services.queue_service import InMemoryJobQueue, JobQueueService

from conftest import FakeClock


class TestJobRetryLogic:
    """Tests for Job.should_retry and backoff"""

    def test_retry_allowed_below_max_attempts(self):
        """A retryable failure with attempts left is retried"""
        job = Job(job_type=JobType.PROCESS_LEAD, attempts=1, max_attempts=3)

        should_retry, reason = job.should_retry()

        assert should_retry is True
        assert reason == "retrying_attempt_2"

    def test_no_retry_at_max_attempts(self):
        """Attempts exhausted means dead-letter"""
        job = Job(job_type=JobType.PROCESS_LEAD, attempts=3, max_attempts=3)

        should_retry, reason = job.should_retry()

        assert should_retry is False
        assert reason == "max_attempts_reached"

    def test_no_retry_for_non_retryable_error(self):
        """Validation-style errors are never retried"""
        job = Job(job_type=JobType.PROCESS_LEAD, attempts=1, max_attempts=3)

        should_retry, reason = job.should_retry(retryable=False)

        assert should_retry is False
        assert reason == "non_retryable_error"

    def test_exponential_backoff_is_capped(self):
        """Delay doubles per attempt up to the cap"""
        delays = [
            Job(job_type=JobType.PROCESS_LEAD, attempts=n, max_attempts=10).get_retry_delay(30, 200)
            for n in (1, 2, 3, 4)
        ]

        assert delays == [30, 60, 120, 200]

    def test_redis_dict_keeps_payload_and_timestamps(self):
        """Serialized jobs restore with aware timestamps"""
        job = Job(job_type=JobType.DELIVER_HANDOVER, payload={"lead_id": "l1"}, priority=8)

        restored = Job.from_redis_dict(json.loads(json.dumps(job.to_redis_dict())))

        assert restored.job_id == job.job_id
        assert restored.payload == {"lead_id": "l1"}
        assert restored.scheduled_for == job.scheduled_for
        assert restored.started_at is None


class TestInMemoryJobQueue:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def queue(self, clock):
        return InMemoryJobQueue(max_attempts=3, clock=clock)

    @pytest.mark.asyncio
    async def test_high_priority_dequeued_first(self, queue):
        """Priority >= 8 jumps the normal queue"""
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"}, priority=5)
        await queue.enqueue(JobType.GENERATE_AI_REPLY, {"conversation_id": "c"}, priority=9)

        first = await queue.dequeue_job()
        second = await queue.dequeue_job()

        assert first.job_type == JobType.GENERATE_AI_REPLY
        assert second.payload == {"lead_id": "a"}
        assert first.attempts == 1
        assert first.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_delayed_job_waits_for_scheduled_time(self, queue, clock):
        """scheduled_for is a lower bound on execution"""
        await queue.enqueue(JobType.SEND_TEMPLATE_STEP, {"conversation_id": "c"}, delay_seconds=3600)

        assert await queue.process_scheduled_jobs() == 0
        assert await queue.dequeue_job() is None

        clock.advance(hours=1)

        assert await queue.process_scheduled_jobs() == 1
        job = await queue.dequeue_job()
        assert job.payload == {"conversation_id": "c"}

    @pytest.mark.asyncio
    async def test_retry_then_dead_letter(self, queue, clock):
        """A job out of attempts is kept for operators, not dropped"""
        await queue.enqueue(JobType.DELIVER_HANDOVER, {"destination_id": "crm"})

        job = await queue.dequeue_job()
        await queue.schedule_retry(job, delay_seconds=30, error="timeout")
        assert job.last_error == "timeout"

        clock.advance(seconds=30)
        await queue.process_scheduled_jobs()
        job = await queue.dequeue_job()
        assert job.attempts == 2

        await queue.mark_failed(job, "still failing")

        failed = await queue.get_failed_jobs()
        assert [j.job_id for j in failed] == [job.job_id]
        assert failed[0].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_requeue_failed_job_resets_attempts(self, queue):
        """Operators can give a failed job a fresh budget"""
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"})
        job = await queue.dequeue_job()
        await queue.mark_failed(job, "boom")

        assert await queue.requeue_failed_job(job.job_id) is True
        assert await queue.requeue_failed_job(job.job_id) is False

        again = await queue.dequeue_job()
        assert again.job_id == job.job_id
        assert again.attempts == 1
        assert await queue.get_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_queue_stats(self, queue):
        """Stats expose queue depth and totals"""
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"})
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "b"}, priority=9)
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "c"}, delay_seconds=60)
        job = await queue.dequeue_job()
        await queue.mark_completed(job)

        stats = await queue.get_queue_stats()

        assert stats["priority_queue_length"] == 0
        assert stats["normal_queue_length"] == 1
        assert stats["scheduled_jobs"] == 1
        assert stats["total_enqueued"] == 3
        assert stats["total_completed"] == 1

    @pytest.mark.asyncio
    async def test_abandoned_job_is_requeued_after_visibility_timeout(self, queue, clock):
        """A worker that dies mid-handler does not strand its job"""
        await queue.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"})
        abandoned = await queue.dequeue_job()

        clock.advance(seconds=299)
        assert await queue.recover_stale_jobs(300) == 0
        assert await queue.dequeue_job() is None

        clock.advance(seconds=1)
        assert await queue.recover_stale_jobs(300) == 1

        again = await queue.dequeue_job()
        assert again.job_id == abandoned.job_id
        assert again.attempts == 2
        assert again.last_error == "no result within 300s of dequeue"
        assert (await queue.get_queue_stats())["total_recovered"] == 1

    @pytest.mark.asyncio
    async def test_abandoned_job_out_of_attempts_is_failed(self, queue, clock):
        await queue.enqueue(JobType.DELIVER_HANDOVER, {"destination_id": "crm"}, max_attempts=1)
        job = await queue.dequeue_job()

        clock.advance(minutes=10)
        assert await queue.recover_stale_jobs(300) == 1

        failed = await queue.get_failed_jobs()
        assert [j.job_id for j in failed] == [job.job_id]
        assert failed[0].status == JobStatus.FAILED
        assert await queue.dequeue_job() is None


class TestJobQueueService:
    """Tests for the Redis queue with a mocked client"""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        for name in (
            "rpush", "lpop", "zadd", "zrem", "zrangebyscore", "hset", "hdel",
            "hget", "hvals", "hincrby", "hgetall", "llen", "zcard", "hlen", "aclose", "ping",
        ):
            setattr(client, name, AsyncMock())
        return client

    @pytest.fixture
    def service(self, redis_client):
        return JobQueueService(redis_client=redis_client, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_enqueue_routes_by_priority(self, service, redis_client):
        """High priority goes to the priority list, the rest to the normal list"""
        await service.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"}, priority=8)
        await service.enqueue(JobType.PROCESS_LEAD, {"lead_id": "b"}, priority=3)

        keys = [call.args[0] for call in redis_client.rpush.call_args_list]
        assert keys == [JobQueueService.PRIORITY_QUEUE, JobQueueService.NORMAL_QUEUE]

    @pytest.mark.asyncio
    async def test_delayed_enqueue_uses_sorted_set(self, service, redis_client):
        """Delayed jobs are scored by due time"""
        job = await service.enqueue(JobType.SEND_TEMPLATE_STEP, {"conversation_id": "c"}, delay_seconds=120)

        redis_client.rpush.assert_not_called()
        key, mapping = redis_client.zadd.call_args.args
        assert key == JobQueueService.SCHEDULED_ZSET
        assert list(mapping.values()) == [job.scheduled_for.timestamp()]

    @pytest.mark.asyncio
    async def test_enqueue_failure_raises_dependency_error(self, service, redis_client):
        """A Redis outage surfaces as a retryable dependency error"""
        redis_client.rpush.side_effect = ConnectionError("redis down")

        with pytest.raises(DependencyError) as exc_info:
            await service.enqueue(JobType.PROCESS_LEAD, {"lead_id": "a"})

        assert exc_info.value.dependency == "redis"

    @pytest.mark.asyncio
    async def test_dequeue_checks_priority_queue_first(self, service, redis_client):
        """Dequeued jobs are marked processing with an attempt counted"""
        job = Job(job_type=JobType.GENERATE_AI_REPLY, payload={"conversation_id": "c"}, priority=9)
        redis_client.lpop.side_effect = [json.dumps(job.to_redis_dict())]

        dequeued = await service.dequeue_job()

        assert dequeued.job_id == job.job_id
        assert dequeued.attempts == 1
        assert redis_client.lpop.call_args_list[0].args[0] == JobQueueService.PRIORITY_QUEUE
        redis_client.hset.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scheduled_job_moved_only_by_the_worker_that_removes_it(self, service, redis_client):
        """ZREM decides ownership when several workers poll"""
        first = Job(job_type=JobType.PROCESS_LEAD, payload={"lead_id": "a"})
        second = Job(job_type=JobType.PROCESS_LEAD, payload={"lead_id": "b"})
        redis_client.zrangebyscore.return_value = [
            json.dumps(first.to_redis_dict()),
            json.dumps(second.to_redis_dict()),
        ]
        redis_client.zrem.side_effect = [1, 0]

        moved = await service.process_scheduled_jobs()

        assert moved == 1
        assert redis_client.rpush.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_processing_job_is_requeued(self, redis_client):
        """Only entries past the visibility timeout are taken back"""
        clock = FakeClock()
        service = JobQueueService(redis_client=redis_client, clock=clock)
        stale = Job(job_type=JobType.PROCESS_LEAD, payload={"lead_id": "a"}, attempts=1, started_at=clock())
        clock.advance(minutes=4)
        fresh = Job(job_type=JobType.PROCESS_LEAD, payload={"lead_id": "b"}, attempts=1, started_at=clock())
        clock.advance(minutes=2)
        redis_client.hgetall.return_value = {
            stale.job_id: json.dumps(stale.to_redis_dict()),
            fresh.job_id: json.dumps(fresh.to_redis_dict()),
        }
        redis_client.hdel.return_value = 1

        recovered = await service.recover_stale_jobs(300)

        assert recovered == 1
        redis_client.hdel.assert_awaited_once_with(JobQueueService.PROCESSING_HASH, stale.job_id)
        key, payload = redis_client.rpush.call_args.args
        assert key == JobQueueService.NORMAL_QUEUE
        requeued = Job.from_redis_dict(json.loads(payload))
        assert requeued.status == JobStatus.QUEUED
        assert requeued.attempts == 1
        assert requeued.started_at is None

    @pytest.mark.asyncio
    async def test_stale_job_claimed_by_another_worker_is_skipped(self, redis_client):
        """HDEL decides ownership when several workers recover"""
        clock = FakeClock()
        service = JobQueueService(redis_client=redis_client, clock=clock)
        stale = Job(job_type=JobType.PROCESS_LEAD, payload={"lead_id": "a"}, attempts=1, started_at=clock())
        clock.advance(hours=1)
        redis_client.hgetall.return_value = {stale.job_id: json.dumps(stale.to_redis_dict())}
        redis_client.hdel.return_value = 0

        assert await service.recover_stale_jobs(300) == 0
        redis_client.rpush.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, service, redis_client):
        """A shared client belongs to whoever created it"""
        await service.close()

        redis_client.aclose.assert_not_called()
