"""
Job Orchestrator
Drives one avatar job from upload to a terminal state.

    start_job: create record (uploading) -> upload -> pending -> submit -> poll
    redrive:   pending -> submit -> poll        (feed sweep)
    retry:     error -> pending -> submit -> poll
    resume:    processing -> poll               (after a restart)

Each job runs in its own detached asyncio task, tracked by job id. The job
record is the only state shared between tasks and processes, so any step can
be picked up again from the last status written.
"""

import asyncio
import base64
import logging
import time
import uuid
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from avatargen.core.config import settings
from avatargen.core.exceptions import (
    AvatarPipelineError,
    InvalidInputError,
    InvalidTransitionError,
    PayloadTooLargeError,
    PollError,
    PollTimeoutError,
    RecordError,
    RecordNotFoundError,
    SubmissionError,
    TransferError,
)
from avatargen.schemas.job import AvatarJob, JobStatus, PredictionState
from avatargen.services.job_records import JobRecordManager
from avatargen.services.prediction_client import PredictionClient, PredictionInput
from avatargen.services.uploader import BlobUploader
from avatargen.workers.base import with_retry

logger = logging.getLogger(__name__)

Notifier = Callable[[Optional[str], str], None]


class SubmissionMode(str, Enum):
    """Which representation of the image is sent to the prediction service."""
    AUTO = "auto"        # Stored inline payload if under the ceiling, else the locator
    INLINE = "inline"    # Always the stored inline payload
    LOCATOR = "locator"  # Always the blob store locator


def to_data_uri(payload: bytes, content_type: str = "image/jpeg") -> str:
    return f"data:{content_type};base64,{base64.b64encode(payload).decode('ascii')}"


def data_uri_length(size: int, content_type: str = "image/jpeg") -> int:
    """Length of ``to_data_uri`` output for a payload of ``size`` bytes."""
    return len(f"data:{content_type};base64,") + 4 * ((size + 2) // 3)


class JobOrchestrator:
    """Runs avatar jobs against injected uploader, records and prediction client."""

    def __init__(
        self,
        uploader: BlobUploader,
        records: JobRecordManager,
        predictions: PredictionClient,
        submission_mode: Optional[str] = None,
        poll_interval: Optional[float] = None,
        poll_max_attempts: Optional[int] = None,
        poll_error_retries: Optional[int] = None,
        max_inline_size: Optional[int] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.uploader = uploader
        self.records = records
        self.predictions = predictions
        self.submission_mode = SubmissionMode(submission_mode or settings.SUBMISSION_MODE)
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.poll_max_attempts = poll_max_attempts or settings.POLL_MAX_ATTEMPTS
        self.poll_error_retries = settings.POLL_ERROR_RETRIES if poll_error_retries is None else poll_error_retries
        self.max_inline_size = max_inline_size or settings.MAX_INLINE_PAYLOAD_SIZE
        self.notifier = notifier
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Task tracking
    # ------------------------------------------------------------------

    def is_active(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    @property
    def active_jobs(self) -> List[str]:
        return [job_id for job_id in self._tasks if self.is_active(job_id)]

    def _spawn(self, job_id: str, step) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(job_id, step), name=f"avatar-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, job_id=job_id: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _guarded(self, job_id: str, step) -> None:
        """Run a job step; nothing escapes except cancellation."""
        try:
            await step
        except asyncio.CancelledError:
            logger.info(f"[Orchestrator] Job {job_id} task cancelled")
            raise
        except Exception as e:
            logger.exception(f"[Orchestrator] Unexpected failure in job {job_id}: {e}")
            await self._fail(job_id, AvatarPipelineError(str(e) or type(e).__name__, code="internal_error"))

    async def wait(self, job_id: str) -> None:
        """Wait for the job's current task, if any, to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})

    def cancel(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def prune(self, live_ids: Iterable[str]) -> List[str]:
        """Cancel tasks whose job record no longer exists."""
        live = set(live_ids)
        cancelled = []
        for job_id in [j for j in self.active_jobs if j not in live]:
            try:
                exists = await self.records.find(job_id) is not None
            except RecordError as e:
                logger.warning(f"[Orchestrator] Could not check job {job_id} before pruning: {e}")
                continue
            if not exists and self.cancel(job_id):
                logger.info(f"[Orchestrator] Job {job_id} was deleted; stopped its task")
                cancelled.append(job_id)
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every running job task and wait for them to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"[Orchestrator] Shut down ({len(tasks)} tasks cancelled)")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_job(
        self,
        payload: bytes,
        content_type: str = "image/jpeg",
        owner: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Optional[str]:
        """
        Create the job record and continue the pipeline in the background.

        Returns:
            The job id, or None if the record could not be created
        """
        owner = owner or self.uploader.default_owner
        fields = {
            "user_id": owner,
            "platform": platform,
            "prompt": self.predictions.prompt,
            "upload_id": f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}",
        }
        try:
            job_id = await self.records.create(fields)
        except (RecordError, InvalidTransitionError) as e:
            logger.error(f"[Orchestrator] Could not create job record: {e}")
            self._notify(None, "Could not save upload details. Please try again.")
            return None

        inline = None
        if self.submission_mode != SubmissionMode.LOCATOR:
            payload = payload or b""
            if (
                self.submission_mode == SubmissionMode.INLINE
                or data_uri_length(len(payload), content_type) <= self.max_inline_size
            ):
                inline = to_data_uri(payload, content_type)

        self._spawn(job_id, self._run_new_job(job_id, payload, content_type, owner, inline))
        return job_id

    async def run_job(self, payload: bytes, content_type: str = "image/jpeg", **kwargs) -> Optional[str]:
        """``start_job`` and wait for the job to reach a resting state."""
        job_id = await self.start_job(payload, content_type, **kwargs)
        if job_id:
            await self.wait(job_id)
        return job_id

    async def redrive(self, job_id: str) -> bool:
        """Submit a pending job again. No-op while a task for it is running."""
        if self.is_active(job_id):
            return False
        self._spawn(job_id, self._resubmit(job_id))
        return True

    async def retry(self, job_id: str) -> bool:
        """Move a failed job back to pending and resubmit it from its stored locator."""
        if self.is_active(job_id):
            return False
        try:
            job = await self.records.transition(job_id, JobStatus.PENDING)
        except (InvalidTransitionError, RecordError) as e:
            logger.warning(f"[Orchestrator] Retry refused for job {job_id}: {e}")
            self._notify(job_id, "This avatar cannot be retried.")
            return False

        logger.info(f"[Orchestrator] Retrying job {job_id} (attempts so far: {job.attempts})")
        self._spawn(job_id, self._submit_and_poll(job))
        return True

    async def resume(self, job_id: str) -> bool:
        """Restart polling for a processing job without resubmitting it."""
        if self.is_active(job_id):
            return False
        self._spawn(job_id, self._resume(job_id))
        return True

    async def recover(self) -> int:
        """Resume polling for every processing job not already tracked."""
        try:
            jobs = await self.records.list_jobs(JobStatus.PROCESSING)
        except RecordError as e:
            logger.error(f"[Orchestrator] Could not list jobs to recover: {e}")
            return 0
        resumed = 0
        for job in jobs:
            if job.prediction_id and await self.resume(job.id):
                resumed += 1
        if resumed:
            logger.info(f"[Orchestrator] Resumed polling for {resumed} jobs")
        return resumed

    async def delete_job(self, job_id: str) -> bool:
        removed = await self.records.delete(job_id)
        self.cancel(job_id)
        return removed

    async def delete_all(self) -> int:
        """Delete every job record, then stop every task. Tasks keep running if the delete fails."""
        removed = await self.records.delete_all()
        await self.shutdown()
        return removed

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    async def _run_new_job(
        self,
        job_id: str,
        payload: bytes,
        content_type: str,
        owner: str,
        inline: Optional[str],
    ) -> None:
        try:
            locator, path = await self.uploader.upload(payload, content_type, owner)
        except TransferError as e:
            logger.error(f"[Orchestrator] Upload failed for job {job_id}: {e}")
            await self._fail(job_id, e)
            return

        try:
            job = await self.records.transition(
                job_id,
                JobStatus.PENDING,
                original_image_url=locator,
                original_image_storage_path=path,
                image_data=inline,
            )
        except (RecordError, InvalidTransitionError) as e:
            await self._record_failure(job_id, e)
            return

        await self._submit_and_poll(job)

    async def _resubmit(self, job_id: str) -> None:
        try:
            job = await self.records.find(job_id)
        except RecordError as e:
            logger.error(f"[Orchestrator] Could not load job {job_id} for re-drive: {e}")
            return
        if job is None or job.status != JobStatus.PENDING or job.generated_image_url:
            logger.debug(f"[Orchestrator] Job {job_id} no longer pending; skipping re-drive")
            return
        logger.info(f"[Orchestrator] Re-driving pending job {job_id}")
        await self._submit_and_poll(job)

    async def _resume(self, job_id: str) -> None:
        try:
            job = await self.records.find(job_id)
        except RecordError as e:
            logger.error(f"[Orchestrator] Could not load job {job_id} to resume: {e}")
            return
        if job is None or job.status != JobStatus.PROCESSING or not job.prediction_id:
            return
        logger.info(f"[Orchestrator] Resuming poll for job {job_id} ({job.prediction_id})")
        await self._poll_until_done(job)

    def select_input(self, job: AvatarJob) -> PredictionInput:
        """Pick exactly one representation of the source image for submission."""
        if self.submission_mode == SubmissionMode.LOCATOR:
            return PredictionInput.locator(job.original_image_url or "")
        if self.submission_mode == SubmissionMode.INLINE:
            return PredictionInput.inline(job.image_data or "")
        if job.image_data and len(job.image_data) <= self.max_inline_size:
            return PredictionInput.inline(job.image_data)
        return PredictionInput.locator(job.original_image_url or "")

    async def _submit_and_poll(self, job: AvatarJob) -> None:
        prediction_input = self.select_input(job)
        logger.info(f"[Orchestrator] Processing job {job.id} with {prediction_input.kind} image")

        try:
            handle = await self.predictions.submit(prediction_input, prompt=job.prompt)
        except (PayloadTooLargeError, InvalidInputError) as e:
            # Rejected locally; nothing was sent, so no attempt is counted
            logger.error(f"[Orchestrator] Job {job.id} rejected before submission: {e}")
            await self._fail(job.id, e)
            return
        except SubmissionError as e:
            logger.error(f"[Orchestrator] Submission failed for job {job.id}: {e}")
            await self._fail(job.id, e, attempts=job.attempts + 1)
            return

        try:
            job = await self.records.transition(
                job.id,
                JobStatus.PROCESSING,
                prediction_id=handle,
                attempts=job.attempts + 1,
            )
        except (RecordError, InvalidTransitionError) as e:
            await self._record_failure(job.id, e)
            return

        await self._poll_until_done(job)

    async def _poll_until_done(self, job: AvatarJob) -> None:
        handle = job.prediction_id
        poll = with_retry(
            max_retries=self.poll_error_retries,
            retry_delay=self.poll_interval,
            exponential_backoff=False,
            retryable_exceptions=(PollError,),
        )(self.predictions.poll)

        for attempt in range(1, self.poll_max_attempts + 1):
            try:
                result = await poll(handle)
            except PollError as e:
                logger.error(f"[Orchestrator] Giving up on status checks for job {job.id}: {e}")
                await self._fail(job.id, e)
                return

            if result.status == PredictionState.SUCCEEDED:
                output = result.output_url
                if not output:
                    await self._fail(job.id, AvatarPipelineError("Prediction returned no output", code="missing_output"))
                    return
                try:
                    await self.records.transition(job.id, JobStatus.COMPLETED, generated_image_url=output)
                except (RecordError, InvalidTransitionError) as e:
                    await self._record_failure(job.id, e)
                    return
                logger.info(f"[Orchestrator] Job {job.id} completed after {attempt} status checks")
                return

            if result.status == PredictionState.FAILED:
                logger.error(f"[Orchestrator] Prediction {handle} failed: {result.error}")
                await self._fail(job.id, AvatarPipelineError(result.error or "Unknown error", code="prediction_failed"))
                return

            # Still running: nothing is written
            if attempt < self.poll_max_attempts:
                await asyncio.sleep(self.poll_interval)

        await self._fail(job.id, PollTimeoutError(handle, self.poll_max_attempts))

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _fail(self, job_id: str, error: AvatarPipelineError, **fields) -> None:
        """Record ``error`` on the job (best effort) and notify once."""
        await self.records.mark_error(job_id, error.message, error.code, **fields)
        self._notify(job_id, error.message)

    async def _record_failure(self, job_id: str, error: AvatarPipelineError) -> None:
        if isinstance(error, RecordNotFoundError):
            logger.warning(f"[Orchestrator] Job {job_id} was deleted; stopping")
            return
        if isinstance(error, InvalidTransitionError):
            # Another writer moved the job; its status wins
            logger.warning(f"[Orchestrator] {error}; stopping")
            return
        logger.error(f"[Orchestrator] Record update failed for job {job_id}: {error}")
        await self._fail(job_id, error)

    def _notify(self, job_id: Optional[str], message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(job_id, message)
        except Exception as e:
            logger.warning(f"[Orchestrator] Notifier failed: {e}")


__all__ = ["SubmissionMode", "to_data_uri", "data_uri_length", "JobOrchestrator"]
