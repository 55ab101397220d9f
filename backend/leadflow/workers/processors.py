"""
Job handlers: one coroutine per job type, all backed by the lead processor.
"""
from typing import Any, Awaitable, Callable, Dict

from leadflow.domain.models.job import JobType
from leadflow.services.lead_processor import LeadProcessor

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def build_job_handlers(processor: LeadProcessor) -> Dict[JobType, JobHandler]:

    async def process_lead(payload: Dict[str, Any]) -> Any:
        return await processor.process_lead(payload["lead_id"])

    handlers: Dict[JobType, JobHandler] = {
        JobType.PROCESS_LEAD: process_lead,
        JobType.SEND_TEMPLATE_STEP: processor.run_template_step,
        JobType.GENERATE_AI_REPLY: processor.generate_reply,
        JobType.DELIVER_HANDOVER: processor.deliver_handover,
    }
    missing = [t.value for t in JobType if t not in handlers]
    if missing:
        raise ValueError(f"No handler for job types: {', '.join(missing)}")
    return handlers
