"""
Job Model
Represents a unit of slow or unreliable work in the job queue
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid

from leadflow.utils.time_utils import utc_now, parse_timestamp


class JobType(str, Enum):
    """Work the queue knows how to run"""
    PROCESS_LEAD = "process_lead"
    SEND_TEMPLATE_STEP = "send_template_step"
    GENERATE_AI_REPLY = "generate_ai_reply"
    DELIVER_HANDOVER = "deliver_handover"


class JobStatus(str, Enum):
    """Status of a job. Mutated only by the queue runtime."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Module-level constants for retry logic
BASE_RETRY_DELAY_SECONDS = 30
MAX_RETRY_DELAY_SECONDS = 3600
DEFAULT_MAX_ATTEMPTS = 3


class Job(BaseModel):
    """
    A queued job.

    The payload is a snapshot only; processors re-read current lead and
    conversation state at execution time. scheduled_for is a lower bound
    on when the job may run, not an ordering guarantee.
    """

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)

    priority: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Priority 1-10 (higher = more urgent). Priority >= 8 goes to priority queue."
    )

    status: JobStatus = Field(default=JobStatus.QUEUED)
    attempts: int = Field(default=0, ge=0, description="Executions started so far")
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)

    scheduled_for: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    last_error: Optional[str] = None

    def should_retry(self, retryable: bool = True) -> tuple[bool, str]:
        """
        Determine if this job should be retried after a failure.

        Returns:
            (should_retry, reason)
        """
        if not retryable:
            return False, "non_retryable_error"

        if self.attempts >= self.max_attempts:
            return False, "max_attempts_reached"

        return True, f"retrying_attempt_{self.attempts + 1}"

    def get_retry_delay(
        self,
        base_seconds: int = BASE_RETRY_DELAY_SECONDS,
        max_seconds: int = MAX_RETRY_DELAY_SECONDS
    ) -> int:
        """Exponential backoff: base * 2^(attempts-1), capped."""
        exponent = max(self.attempts - 1, 0)
        return int(min(base_seconds * (2 ** exponent), max_seconds))

    def to_redis_dict(self) -> dict:
        """Serialize for Redis storage."""
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_redis_dict(cls, data: dict) -> "Job":
        """Deserialize from Redis storage."""
        data = dict(data)
        for dt_field in ["scheduled_for", "created_at", "started_at", "completed_at"]:
            if data.get(dt_field) and isinstance(data[dt_field], str):
                data[dt_field] = parse_timestamp(data[dt_field])
            elif data.get(dt_field) is None:
                data.pop(dt_field, None)

        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.job_id[:8]}..., "
            f"type={self.job_type.value}, "
            f"priority={self.priority}, "
            f"status={self.status.value}, "
            f"attempts={self.attempts}/{self.max_attempts})"
        )
