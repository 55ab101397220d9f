"""
Job Queue Service
Redis-based job queue with priority support and delayed retries
"""
import asyncio
import json
import logging
from collections import Counter, deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

import redis.asyncio as redis

from leadflow.core.exceptions import DependencyError
from leadflow.domain.interfaces.job_queue import JobQueue
from leadflow.domain.models.job import DEFAULT_MAX_ATTEMPTS, Job, JobStatus, JobType
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)

# Priority >= threshold goes to the priority queue
HIGH_PRIORITY_THRESHOLD = 8


class JobQueueService(JobQueue):
    """
    Redis-based job queue.

    Uses Redis Lists for FIFO queuing with priority support:
    - High priority jobs (>= threshold) go to the priority queue
    - Everything else goes to the normal queue
    - Delayed jobs and retries wait in a sorted set scored by due time
    - Jobs out of retries are kept in the failed hash for operators

    Queue Keys:
    - leadflow:jobs:priority   - high priority jobs (checked first)
    - leadflow:jobs:queue      - normal FIFO queue
    - leadflow:jobs:scheduled  - sorted set for delayed jobs
    - leadflow:jobs:processing - hash job_id -> job JSON
    - leadflow:jobs:failed     - hash job_id -> job JSON
    - leadflow:jobs:stats      - counters
    """

    PRIORITY_QUEUE = "leadflow:jobs:priority"
    NORMAL_QUEUE = "leadflow:jobs:queue"
    SCHEDULED_ZSET = "leadflow:jobs:scheduled"
    PROCESSING_HASH = "leadflow:jobs:processing"
    FAILED_HASH = "leadflow:jobs:failed"
    STATS_KEY = "leadflow:jobs:stats"

    def __init__(
        self,
        redis_client=None,
        redis_url: str = "redis://localhost:6379",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utc_now
    ):
        """
        Args:
            redis_client: Optional pre-configured Redis client
            redis_url: Used when no client is given
            max_attempts: Default attempt budget for new jobs
        """
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._redis_url = redis_url
        self._max_attempts = max_attempts
        self._clock = clock
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize Redis connection if not provided."""
        if self._redis is not None:
            self._initialized = True
            return

        try:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._initialized = True
            logger.info(f"JobQueueService connected to Redis: {self._redis_url}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise DependencyError("redis", str(e)) from e

    async def _ensure(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def enqueue(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        priority: int = 5,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None
    ) -> Job:
        """
        Create and enqueue a job.

        Delayed jobs go to the scheduled set; the rest go straight to a
        ready queue chosen by priority.
        """
        await self._ensure()
        now = self._clock()
        job = Job(
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts or self._max_attempts,
            scheduled_for=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )
        try:
            if delay_seconds > 0:
                await self._redis.zadd(
                    self.SCHEDULED_ZSET,
                    {json.dumps(job.to_redis_dict()): job.scheduled_for.timestamp()}
                )
                logger.debug(f"Scheduled job {job.job_id} ({job_type.value}) in {delay_seconds}s")
            else:
                await self._push(job)
            await self._redis.hincrby(self.STATS_KEY, "total_enqueued", 1)
        except Exception as e:
            logger.error(f"Failed to enqueue job {job.job_id}: {e}")
            raise DependencyError("redis", f"enqueue failed: {e}") from e
        return job

    async def _push(self, job: Job) -> None:
        job_data = json.dumps(job.to_redis_dict())
        if job.priority >= HIGH_PRIORITY_THRESHOLD:
            await self._redis.rpush(self.PRIORITY_QUEUE, job_data)
            logger.info(f"Enqueued high-priority job {job.job_id} (priority={job.priority})")
        else:
            await self._redis.rpush(self.NORMAL_QUEUE, job_data)
            logger.debug(f"Enqueued job {job.job_id} ({job.job_type.value})")

    async def dequeue_job(self) -> Optional[Job]:
        """
        Dequeue the next job to process.

        Priority order:
        1. Priority queue (high-priority jobs)
        2. Normal queue
        """
        await self._ensure()

        for queue_key in (self.PRIORITY_QUEUE, self.NORMAL_QUEUE):
            job_data = await self._redis.lpop(queue_key)
            if job_data:
                job = Job.from_redis_dict(json.loads(job_data))
                await self._mark_processing(job)
                return job
        return None

    async def _mark_processing(self, job: Job) -> None:
        job.attempts += 1
        job.status = JobStatus.PROCESSING
        job.started_at = self._clock()
        await self._redis.hset(self.PROCESSING_HASH, job.job_id, json.dumps(job.to_redis_dict()))
        await self._redis.hincrby(self.STATS_KEY, "total_dequeued", 1)

    async def schedule_retry(self, job: Job, delay_seconds: int, error: Optional[str] = None) -> bool:
        """
        Schedule a job for another attempt after a delay.

        Args:
            job: Job to retry
            delay_seconds: Delay before it becomes runnable again
            error: Error of the failed attempt
        """
        await self._ensure()
        try:
            job.status = JobStatus.QUEUED
            job.last_error = error
            job.scheduled_for = self._clock() + timedelta(seconds=delay_seconds)

            await self._redis.zadd(
                self.SCHEDULED_ZSET,
                {json.dumps(job.to_redis_dict()): job.scheduled_for.timestamp()}
            )
            await self._redis.hdel(self.PROCESSING_HASH, job.job_id)
            await self._redis.hincrby(self.STATS_KEY, "total_retried", 1)

            logger.info(
                f"Scheduled retry for job {job.job_id} "
                f"(attempt {job.attempts}/{job.max_attempts}) in {delay_seconds}s"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to schedule retry for job {job.job_id}: {e}")
            return False

    async def process_scheduled_jobs(self) -> int:
        """
        Move due scheduled jobs to the ready queues.

        Should be called periodically by the worker. ZREM decides which
        worker moves a job when several poll at once.
        """
        await self._ensure()
        try:
            now = self._clock().timestamp()
            due_jobs = await self._redis.zrangebyscore(self.SCHEDULED_ZSET, 0, now)

            count = 0
            for job_data in due_jobs:
                removed = await self._redis.zrem(self.SCHEDULED_ZSET, job_data)
                if not removed:
                    continue
                await self._push(Job.from_redis_dict(json.loads(job_data)))
                count += 1

            if count > 0:
                logger.info(f"Moved {count} scheduled jobs to queues")
            return count
        except Exception as e:
            logger.error(f"Failed to process scheduled jobs: {e}")
            return 0

    async def recover_stale_jobs(self, visibility_timeout_seconds: int) -> int:
        """
        Return jobs whose worker died or was cancelled mid-handler.

        A processing entry older than the visibility timeout belongs to
        whichever worker removes it (HDEL). Jobs with attempts left go
        back on the ready queues, the rest are failed.
        """
        await self._ensure()
        cutoff = self._clock() - timedelta(seconds=visibility_timeout_seconds)
        try:
            entries = await self._redis.hgetall(self.PROCESSING_HASH) or {}
            recovered = 0
            for job_id, job_data in entries.items():
                job = Job.from_redis_dict(json.loads(job_data))
                if job.started_at is not None and job.started_at > cutoff:
                    continue
                if not await self._redis.hdel(self.PROCESSING_HASH, job_id):
                    continue
                error = f"no result within {visibility_timeout_seconds}s of dequeue"
                if job.attempts >= job.max_attempts:
                    await self.mark_failed(job, error)
                else:
                    await self._push(_reset_stale(job, error))
                    await self._redis.hincrby(self.STATS_KEY, "total_recovered", 1)
                recovered += 1

            if recovered > 0:
                logger.warning(f"Recovered {recovered} stale processing jobs")
            return recovered
        except Exception as e:
            logger.error(f"Failed to recover stale jobs: {e}")
            return 0

    async def mark_completed(self, job: Job) -> bool:
        await self._ensure()
        job.status = JobStatus.COMPLETED
        job.completed_at = self._clock()
        await self._redis.hdel(self.PROCESSING_HASH, job.job_id)
        await self._redis.hincrby(self.STATS_KEY, "total_completed", 1)
        await self._redis.hincrby(self.STATS_KEY, f"completed_{job.job_type.value}", 1)
        logger.debug(f"Job {job.job_id} marked completed")
        return True

    async def mark_failed(self, job: Job, error: str) -> bool:
        """Terminal failure; the job is kept for inspection and requeue."""
        await self._ensure()
        job.status = JobStatus.FAILED
        job.last_error = error
        job.completed_at = self._clock()
        await self._redis.hset(self.FAILED_HASH, job.job_id, json.dumps(job.to_redis_dict()))
        await self._redis.hdel(self.PROCESSING_HASH, job.job_id)
        await self._redis.hincrby(self.STATS_KEY, "total_failed", 1)
        logger.warning(f"Job {job.job_id} ({job.job_type.value}) failed permanently: {error}")
        return True

    async def get_failed_jobs(self, limit: int = 100) -> List[Job]:
        await self._ensure()
        values = await self._redis.hvals(self.FAILED_HASH)
        jobs = [Job.from_redis_dict(json.loads(v)) for v in values]
        jobs.sort(key=lambda j: j.completed_at or j.created_at, reverse=True)
        return jobs[:limit]

    async def requeue_failed_job(self, job_id: str) -> bool:
        """Give a failed job a fresh attempt budget and put it back in line."""
        await self._ensure()
        job_data = await self._redis.hget(self.FAILED_HASH, job_id)
        if not job_data:
            return False
        job = _reset_for_requeue(Job.from_redis_dict(json.loads(job_data)), self._clock)
        await self._redis.hdel(self.FAILED_HASH, job_id)
        await self._push(job)
        logger.info(f"Requeued failed job {job_id}")
        return True

    async def get_queue_stats(self) -> Dict[str, Any]:
        await self._ensure()
        try:
            stats = await self._redis.hgetall(self.STATS_KEY) or {}
            return {
                "priority_queue_length": await self._redis.llen(self.PRIORITY_QUEUE),
                "normal_queue_length": await self._redis.llen(self.NORMAL_QUEUE),
                "scheduled_jobs": await self._redis.zcard(self.SCHEDULED_ZSET),
                "processing_jobs": await self._redis.hlen(self.PROCESSING_HASH),
                "failed_jobs": await self._redis.hlen(self.FAILED_HASH),
                "total_enqueued": int(stats.get("total_enqueued", 0)),
                "total_dequeued": int(stats.get("total_dequeued", 0)),
                "total_completed": int(stats.get("total_completed", 0)),
                "total_retried": int(stats.get("total_retried", 0)),
                "total_recovered": int(stats.get("total_recovered", 0)),
                "total_failed": int(stats.get("total_failed", 0)),
            }
        except Exception as e:
            logger.error(f"Failed to get queue stats: {e}")
            return {}

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
        self._initialized = False


def _reset_for_requeue(job: Job, clock: Clock) -> Job:
    job.status = JobStatus.QUEUED
    job.attempts = 0
    job.started_at = None
    job.completed_at = None
    job.scheduled_for = clock()
    return job


def _reset_stale(job: Job, error: str) -> Job:
    job.status = JobStatus.QUEUED
    job.last_error = error
    job.started_at = None
    return job


class InMemoryJobQueue(JobQueue):
    """
    Process-local queue with the same semantics as JobQueueService.
    Used for single-process runs and tests.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, clock: Clock = utc_now):
        self._max_attempts = max_attempts
        self._clock = clock
        self._lock = asyncio.Lock()
        self._priority: Deque[Job] = deque()
        self._normal: Deque[Job] = deque()
        self._scheduled: List[Tuple[float, Job]] = []
        self._processing: Dict[str, Job] = {}
        self._failed: Dict[str, Job] = {}
        self._stats: Counter = Counter()

    async def initialize(self) -> None:
        pass

    def _push(self, job: Job) -> None:
        if job.priority >= HIGH_PRIORITY_THRESHOLD:
            self._priority.append(job)
        else:
            self._normal.append(job)

    async def enqueue(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        priority: int = 5,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None
    ) -> Job:
        now = self._clock()
        job = Job(
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts or self._max_attempts,
            scheduled_for=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )
        async with self._lock:
            if delay_seconds > 0:
                self._scheduled.append((job.scheduled_for.timestamp(), job))
            else:
                self._push(job)
            self._stats["total_enqueued"] += 1
        logger.debug(f"Enqueued job {job.job_id} ({job_type.value}, delay={delay_seconds}s)")
        return job

    async def dequeue_job(self) -> Optional[Job]:
        async with self._lock:
            for queue in (self._priority, self._normal):
                if queue:
                    job = queue.popleft()
                    job.attempts += 1
                    job.status = JobStatus.PROCESSING
                    job.started_at = self._clock()
                    self._processing[job.job_id] = job
                    self._stats["total_dequeued"] += 1
                    return job
        return None

    async def schedule_retry(self, job: Job, delay_seconds: int, error: Optional[str] = None) -> bool:
        async with self._lock:
            job.status = JobStatus.QUEUED
            job.last_error = error
            job.scheduled_for = self._clock() + timedelta(seconds=delay_seconds)
            self._scheduled.append((job.scheduled_for.timestamp(), job))
            self._processing.pop(job.job_id, None)
            self._stats["total_retried"] += 1
        logger.info(f"Scheduled retry for job {job.job_id} (attempt {job.attempts}/{job.max_attempts}) in {delay_seconds}s")
        return True

    async def process_scheduled_jobs(self) -> int:
        now = self._clock().timestamp()
        async with self._lock:
            due = sorted((item for item in self._scheduled if item[0] <= now), key=lambda item: item[0])
            self._scheduled = [item for item in self._scheduled if item[0] > now]
            for _, job in due:
                self._push(job)
        return len(due)

    async def recover_stale_jobs(self, visibility_timeout_seconds: int) -> int:
        cutoff = self._clock() - timedelta(seconds=visibility_timeout_seconds)
        error = f"no result within {visibility_timeout_seconds}s of dequeue"
        async with self._lock:
            stale = [
                job for job in self._processing.values()
                if job.started_at is None or job.started_at <= cutoff
            ]
            for job in stale:
                del self._processing[job.job_id]
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED
                    job.last_error = error
                    job.completed_at = self._clock()
                    self._failed[job.job_id] = job
                    self._stats["total_failed"] += 1
                else:
                    self._push(_reset_stale(job, error))
                    self._stats["total_recovered"] += 1
        if stale:
            logger.warning(f"Recovered {len(stale)} stale processing jobs")
        return len(stale)

    async def mark_completed(self, job: Job) -> bool:
        async with self._lock:
            job.status = JobStatus.COMPLETED
            job.completed_at = self._clock()
            self._processing.pop(job.job_id, None)
            self._stats["total_completed"] += 1
            self._stats[f"completed_{job.job_type.value}"] += 1
        return True

    async def mark_failed(self, job: Job, error: str) -> bool:
        async with self._lock:
            job.status = JobStatus.FAILED
            job.last_error = error
            job.completed_at = self._clock()
            self._processing.pop(job.job_id, None)
            self._failed[job.job_id] = job
            self._stats["total_failed"] += 1
        logger.warning(f"Job {job.job_id} ({job.job_type.value}) failed permanently: {error}")
        return True

    async def get_failed_jobs(self, limit: int = 100) -> List[Job]:
        jobs = sorted(self._failed.values(), key=lambda j: j.completed_at or j.created_at, reverse=True)
        return jobs[:limit]

    async def requeue_failed_job(self, job_id: str) -> bool:
        async with self._lock:
            job = self._failed.pop(job_id, None)
            if job is None:
                return False
            self._push(_reset_for_requeue(job, self._clock))
        return True

    def pending_jobs(self) -> List[Job]:
        """Every job not yet completed or failed, ready ones first."""
        return list(self._priority) + list(self._normal) + [job for _, job in sorted(self._scheduled, key=lambda i: i[0])]

    async def get_queue_stats(self) -> Dict[str, Any]:
        return {
            "priority_queue_length": len(self._priority),
            "normal_queue_length": len(self._normal),
            "scheduled_jobs": len(self._scheduled),
            "processing_jobs": len(self._processing),
            "failed_jobs": len(self._failed),
            "total_enqueued": self._stats["total_enqueued"],
            "total_dequeued": self._stats["total_dequeued"],
            "total_completed": self._stats["total_completed"],
            "total_retried": self._stats["total_retried"],
            "total_recovered": self._stats["total_recovered"],
            "total_failed": self._stats["total_failed"],
        }
