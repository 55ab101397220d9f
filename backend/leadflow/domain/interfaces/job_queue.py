"""
Job Queue Interface
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from leadflow.domain.models.job import Job, JobType


class JobQueue(ABC):

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def enqueue(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        priority: int = 5,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None
    ) -> Job:
        """Create and enqueue a job, returning its handle."""
        pass

    @abstractmethod
    async def dequeue_job(self) -> Optional[Job]:
        pass

    @abstractmethod
    async def schedule_retry(self, job: Job, delay_seconds: int, error: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    async def process_scheduled_jobs(self) -> int:
        """Move due scheduled jobs to the ready queues; return how many moved."""
        pass

    @abstractmethod
    async def recover_stale_jobs(self, visibility_timeout_seconds: int) -> int:
        """Requeue (or fail) jobs stuck in processing past the timeout; return how many."""
        pass

    @abstractmethod
    async def mark_completed(self, job: Job) -> bool:
        pass

    @abstractmethod
    async def mark_failed(self, job: Job, error: str) -> bool:
        pass

    @abstractmethod
    async def get_failed_jobs(self, limit: int = 100) -> List[Job]:
        pass

    @abstractmethod
    async def requeue_failed_job(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def get_queue_stats(self) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass
