"""
Job Worker
Background worker that runs queued orchestration jobs

Run as separate process:
    python -m leadflow.workers.job_worker
"""
import asyncio
import logging
import signal
from datetime import datetime
from typing import Dict, Optional

from dotenv import load_dotenv

from leadflow.core.exceptions import LeadflowError
from leadflow.domain.models.job import Job, JobType
from leadflow.services.pipeline import PipelineContext
from leadflow.utils.time_utils import Clock, utc_now
from leadflow.workers.processors import JobHandler, build_job_handlers

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class JobWorker:
    """
    Background worker for orchestration jobs.

    Responsibilities:
    - Move due scheduled jobs onto the ready queues
    - Dequeue jobs and dispatch them to their handler
    - Retry retryable failures with exponential backoff, fail the rest

    Several workers may run against the same Redis; handlers are
    idempotent and take the per-lead lock themselves.
    """

    # Worker configuration
    POLL_INTERVAL = 1.0  # Seconds between queue checks when empty
    SCHEDULED_CHECK_INTERVAL = 15  # Seconds between scheduled job checks
    VISIBILITY_TIMEOUT = 300  # Seconds before an unfinished job is handed to another worker
    MAX_CONSECUTIVE_ERRORS = 10

    def __init__(self, pipeline: Optional[PipelineContext] = None, clock: Clock = utc_now):
        self.pipeline = pipeline
        self._owns_pipeline = pipeline is None
        self._clock = clock
        self._handlers: Dict[JobType, JobHandler] = {}

        self.running = False
        self._base_retry_delay = 30
        self._max_retry_delay = 3600

        # Stats
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._jobs_retried = 0
        self._last_scheduled_check: Optional[datetime] = None

    async def initialize(self) -> None:
        """Connect the pipeline (unless one was given) and load handlers."""
        logger.info("Initializing Job Worker...")

        if self.pipeline is None:
            self.pipeline = await PipelineContext.create()

        queue_settings = self.pipeline.config.get_queue_settings()
        self.POLL_INTERVAL = queue_settings["poll_interval_seconds"]
        self.SCHEDULED_CHECK_INTERVAL = queue_settings["scheduled_check_interval_seconds"]
        self.VISIBILITY_TIMEOUT = queue_settings["visibility_timeout_seconds"]
        self._base_retry_delay = queue_settings["base_retry_delay_seconds"]
        self._max_retry_delay = queue_settings["max_retry_delay_seconds"]

        self._handlers = build_job_handlers(self.pipeline.processor)
        logger.info("Job Worker initialized successfully")

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Process any due scheduled jobs
        2. Dequeue and process jobs
        3. Handle errors gracefully
        """
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info("Job Worker started - listening for jobs")

        while self.running:
            try:
                await self._check_scheduled()

                job = await self.pipeline.queue.dequeue_job()

                if job:
                    await self.process_job(job)
                    consecutive_errors = 0
                else:
                    await asyncio.sleep(self.POLL_INTERVAL)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    async def _check_scheduled(self, force: bool = False) -> int:
        now = self._clock()
        if (
            not force
            and self._last_scheduled_check is not None
            and (now - self._last_scheduled_check).total_seconds() < self.SCHEDULED_CHECK_INTERVAL
        ):
            return 0
        moved = await self.pipeline.queue.process_scheduled_jobs()
        if moved > 0:
            logger.info(f"Moved {moved} scheduled jobs to queue")
        recovered = await self.pipeline.queue.recover_stale_jobs(self.VISIBILITY_TIMEOUT)
        if recovered > 0:
            logger.info(f"Recovered {recovered} jobs abandoned mid-processing")
        self._last_scheduled_check = now
        return moved + recovered

    async def run_until_idle(self, max_jobs: int = 1000) -> int:
        """
        Process every runnable job, including scheduled jobs that are due,
        then return. Used for one-shot runs and tests.
        """
        if not self._handlers:
            await self.initialize()

        processed = 0
        while processed < max_jobs:
            await self._check_scheduled(force=True)
            job = await self.pipeline.queue.dequeue_job()
            if job is None:
                break
            await self.process_job(job)
            processed += 1
        return processed

    async def process_job(self, job: Job) -> None:
        """
        Run a single job and settle it.

        Errors flagged non-retryable fail the job at once; anything else
        is retried with exponential backoff until attempts run out.
        """
        logger.info(f"Processing job {job.job_id} ({job.job_type.value}, attempt {job.attempts}/{job.max_attempts})")

        handler = self._handlers.get(job.job_type)
        if handler is None:
            self._jobs_failed += 1
            await self.pipeline.queue.mark_failed(job, f"no handler for {job.job_type.value}")
            return

        try:
            await handler(job.payload)
        except Exception as e:
            retryable = e.retryable if isinstance(e, LeadflowError) else True
            should_retry, reason = job.should_retry(retryable=retryable)

            if should_retry:
                delay = job.get_retry_delay(self._base_retry_delay, self._max_retry_delay)
                logger.warning(f"Job {job.job_id} failed ({e}), {reason} in {delay}s")
                self._jobs_retried += 1
                await self.pipeline.queue.schedule_retry(job, delay_seconds=delay, error=str(e))
            else:
                logger.error(f"Job {job.job_id} failed permanently ({reason}): {e}", exc_info=not isinstance(e, LeadflowError))
                self._jobs_failed += 1
                await self.pipeline.queue.mark_failed(job, str(e))
            return

        await self.pipeline.queue.mark_completed(job)
        self._jobs_processed += 1

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Job Worker...")
        self.running = False

        if self._owns_pipeline and self.pipeline is not None:
            await self.pipeline.close()
            self.pipeline = None

        logger.info(
            f"Job Worker shutdown complete. "
            f"Processed: {self._jobs_processed}, Retried: {self._jobs_retried}, Failed: {self._jobs_failed}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "jobs_processed": self._jobs_processed,
            "jobs_retried": self._jobs_retried,
            "jobs_failed": self._jobs_failed,
            "breakers": self.pipeline.breakers.snapshot() if self.pipeline else {},
        }


async def main():
    """Entry point for running the job worker as separate process."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    worker = JobWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
