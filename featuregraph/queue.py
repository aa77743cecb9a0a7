"""
Durable job queue for document processing.

Jobs live in storage, not in memory: any number of `JobQueue` instances (in
this process or others) can share one job store, and each pending job is
claimed by exactly one of them. A job attempt runs under a timeout; transient
failures put the job back to pending until `max_retries` is used up.

Job lifecycle::

    pending -> processing -> completed
                          -> pending     (retryable failure, retry_count < max_retries)
                          -> failed      (non-retryable failure, or retries used up)

With `max_retries = 3` an always-failing job is attempted exactly 4 times.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from featuregraph.config import QueueConfig
from featuregraph.errors import DocumentNotFoundError, JobTimeoutError, NonRetryableError
from featuregraph.job import DocumentStatus, JobStatus, JobType, ProcessingJob, utc_now
from featuregraph.storage.interfaces import JobStorageInterface

logger = logging.getLogger(__name__)

JobProcessor = Callable[[str, str], Awaitable[Any]]
"""Work function called as `processor(document_id, job_id)`."""


class JobQueue:
    """Claims and executes processing jobs against a shared job store.

    `concurrency_limit` caps the jobs this instance has in flight; the
    exactly-once claim guarantee comes from the store.
    """

    def __init__(self, jobs: JobStorageInterface, config: QueueConfig | None = None):
        self.jobs = jobs
        self.config = config or QueueConfig()
        self._claimed: set[str] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._claimed)

    async def create_job(self, document_id: str, job_type: JobType = JobType.EXTRACT) -> str:
        """Insert a pending job for a document and return its id."""
        job = await self.jobs.create_job(document_id, JobType(job_type), self.config.max_retries)
        logger.info("Created %s job %s for document %s", job.job_type.value, job.job_id, document_id)
        return job.job_id

    async def claim_next(self) -> ProcessingJob | None:
        """Claim the oldest pending job, or return None.

        Returns None without touching storage when this instance is already
        at its concurrency limit, and None when nothing is pending. A claimed
        job holds a concurrency slot until it is passed to `execute`.
        """
        if len(self._claimed) >= self.config.concurrency_limit:
            return None
        job = await self.jobs.claim_next_pending(utc_now())
        if job is not None:
            self._claimed.add(job.job_id)
            logger.debug("Claimed job %s (attempt %d)", job.job_id, job.retry_count + 1)
        return job

    async def execute(self, job: ProcessingJob, processor: JobProcessor) -> ProcessingJob:
        """Run one claimed job to completion, retry, or failure.

        Returns the job as stored afterwards.
        """
        try:
            document = await self.jobs.update_document(job.document_id, status=DocumentStatus.PROCESSING, error_message=None)
            if document is None:
                raise DocumentNotFoundError(f"Document {job.document_id} not found")
            try:
                await asyncio.wait_for(processor(job.document_id, job.job_id), timeout=self.config.timeout_seconds)
            except asyncio.TimeoutError as e:
                raise JobTimeoutError(job.job_id, self.config.timeout_seconds) from e
        except NonRetryableError as e:
            logger.error("Job %s failed permanently: %s", job.job_id, e)
            return await self._fail(job, str(e))
        except Exception as e:
            return await self._handle_failure(job, e)
        else:
            completed = await self.jobs.update_job(job.job_id, status=JobStatus.COMPLETED, completed_at=utc_now(), error_message=None)
            await self.jobs.update_document(job.document_id, status=DocumentStatus.COMPLETED, processed_at=utc_now())
            logger.info("Job %s completed", job.job_id)
            return completed or job
        finally:
            self._claimed.discard(job.job_id)

    async def _handle_failure(self, job: ProcessingJob, error: Exception) -> ProcessingJob:
        message = str(error) or type(error).__name__
        if job.can_retry:
            logger.warning(
                "Job %s failed (attempt %d/%d), retrying: %s",
                job.job_id,
                job.retry_count + 1,
                job.max_retries + 1,
                message,
            )
            retried = await self.jobs.update_job(
                job.job_id,
                status=JobStatus.PENDING,
                retry_count=job.retry_count + 1,
                error_message=message,
                started_at=None,
            )
            await self.jobs.update_document(job.document_id, status=DocumentStatus.UPLOADED)
            return retried or job
        logger.error("Job %s failed after %d attempts: %s", job.job_id, job.retry_count + 1, message)
        return await self._fail(job, message)

    async def _fail(self, job: ProcessingJob, message: str) -> ProcessingJob:
        failed = await self.jobs.update_job(job.job_id, status=JobStatus.FAILED, completed_at=utc_now(), error_message=message)
        await self.jobs.update_document(job.document_id, status=DocumentStatus.FAILED, error_message=message)
        return failed or job

    async def process_next(self, processor: JobProcessor) -> str | None:
        """Claim and execute one job; return its id, or None if none was claimed."""
        job = await self.claim_next()
        if job is None:
            return None
        await self.execute(job, processor)
        return job.job_id

    async def process_available(self, processor: JobProcessor, max_jobs: int = 10) -> int:
        """Drain up to `max_jobs` jobs one after another; return how many ran."""
        processed = 0
        while processed < max_jobs:
            if await self.process_next(processor) is None:
                break
            processed += 1
        if processed:
            logger.info("Processed %d job(s)", processed)
        return processed

    async def resume_jobs(self) -> int:
        """Return jobs stuck in processing (e.g. after a crash) to pending."""
        count = await self.jobs.reset_processing_jobs()
        if count:
            logger.info("Resumed %d interrupted job(s)", count)
        return count

    async def job_counts(self) -> dict[str, int]:
        return await self.jobs.count_jobs_by_status()


class QueueWorker:
    """Background tasks that keep draining a JobQueue."""

    def __init__(self, queue: JobQueue, poll_interval: float | None = None):
        self.queue = queue
        self.poll_interval = poll_interval if poll_interval is not None else queue.config.poll_interval_seconds
        self._tasks: list[asyncio.Task] = []
        self._shutdown = False

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self, processor: JobProcessor, workers: int = 1) -> None:
        """Resume interrupted jobs, then start `workers` polling tasks."""
        self._shutdown = False
        await self.queue.resume_jobs()
        for _ in range(workers):
            self._tasks.append(asyncio.create_task(self._worker_loop(processor)))
        logger.info("Started %s queue worker(s)", workers)

    async def stop(self) -> None:
        """Cancel worker tasks and stop processing new jobs."""
        self._shutdown = True
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Stopped queue workers")

    async def _worker_loop(self, processor: JobProcessor) -> None:
        while not self._shutdown:
            try:
                job_id = await self.queue.process_next(processor)
                if job_id is None:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Worker loop error: %s", e)
                await asyncio.sleep(self.poll_interval)
