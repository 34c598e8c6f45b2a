"""
Job Record Manager
Creates, reads and mutates avatar job records; the only writer of job state.

Status changes go through ``transition`` which enforces the job state machine:

    uploading -> pending -> processing -> completed
        |           |            |
        +-----------+------------+----> error -> pending (retry)
"""

import logging
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from avatargen.core.config import settings
from avatargen.core.exceptions import ChangeFeedError, InvalidTransitionError, RecordError, RecordNotFoundError
from avatargen.schemas.job import AvatarJob, JobStatus
from avatargen.services.document_store import DocumentStore

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    JobStatus.UPLOADING: {JobStatus.PENDING, JobStatus.ERROR},
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.ERROR},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.ERROR},
    JobStatus.ERROR: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
}

# snake_case attribute -> stored document key
FIELD_KEYS = {
    name: (field.alias or name) for name, field in AvatarJob.model_fields.items()
}


def _document_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Accept attribute or document names; return document keys with plain values."""
    out = {}
    for key, value in fields.items():
        doc_key = FIELD_KEYS.get(key, key)
        if doc_key not in FIELD_KEYS.values():
            raise ValueError(f"Unknown job field: {key}")
        out[doc_key] = value.value if isinstance(value, Enum) else value
    return out


def check_invariants(job: AvatarJob) -> Optional[str]:
    """Return a reason string if ``job`` breaks a record invariant."""
    if job.status in (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED):
        if not job.original_image_url or not job.original_image_storage_path:
            return "source image locator and storage path are required"
    if job.status == JobStatus.PROCESSING and not job.prediction_id:
        return "prediction handle is required"
    if (job.status == JobStatus.COMPLETED) != bool(job.generated_image_url):
        return "generated image is set if and only if completed"
    if job.status == JobStatus.ERROR and not job.error:
        return "error message is required"
    if job.status != JobStatus.ERROR and (job.error or job.error_code):
        return "error fields are only allowed in error status"
    return None


class JobRecordManager:
    """Job persistence on top of a document store."""

    def __init__(self, store: DocumentStore, collection: Optional[str] = None):
        self.store = store
        self.collection = collection or settings.JOBS_COLLECTION

    async def create(self, initial_fields: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a job record and return its id.

        Raises:
            InvalidTransitionError: the initial fields break a record invariant
            RecordError: the write failed; no record exists
        """
        job = AvatarJob.model_validate({"status": JobStatus.UPLOADING, **(initial_fields or {})})
        if job.status not in (JobStatus.UPLOADING, JobStatus.PENDING):
            raise InvalidTransitionError("<new>", None, job.status.value, "jobs start as uploading or pending")
        reason = check_invariants(job)
        if reason:
            raise InvalidTransitionError("<new>", None, job.status.value, reason)

        doc = _document_fields(job.to_document())
        doc.pop("createdAt", None)  # Stamped by the store
        doc.pop("updatedAt", None)
        try:
            job_id = await self.store.create(self.collection, doc)
        except Exception as e:
            logger.error(f"[Records] Create failed: {e}")
            raise RecordError(f"Could not create job record: {e}", operation="create") from e

        logger.info(f"[Records] Created job {job_id} ({job.status.value})")
        return job_id

    async def find(self, job_id: str) -> Optional[AvatarJob]:
        """Read a job; ``None`` when it does not exist."""
        try:
            doc = await self.store.get(self.collection, job_id)
        except Exception as e:
            raise RecordError(f"Could not read job record: {e}", job_id=job_id, operation="get") from e
        return AvatarJob.from_document(doc) if doc is not None else None

    async def get(self, job_id: str) -> AvatarJob:
        job = await self.find(job_id)
        if job is None:
            raise RecordNotFoundError(job_id, operation="get")
        return job

    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge ``fields`` into the record; unnamed fields keep their values.

        Raises:
            RecordNotFoundError: the record does not exist
            RecordError: the write failed
        """
        doc = _document_fields(fields)
        try:
            await self.store.update(self.collection, job_id, doc)
        except KeyError as e:
            raise RecordNotFoundError(job_id, operation="update") from e
        except Exception as e:
            raise RecordError(f"Could not update job record: {e}", job_id=job_id, operation="update") from e

    async def transition(self, job_id: str, status: JobStatus, **fields: Any) -> AvatarJob:
        """
        Move a job to ``status`` and write ``fields`` in the same update.

        Error fields are cleared whenever the target is not ``error``.

        Raises:
            InvalidTransitionError: the edge is not allowed or a precondition fails
            RecordNotFoundError / RecordError: read or write failed
        """
        status = JobStatus(status)
        current = await self.get(job_id)

        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(job_id, current.status.value, status.value)

        changes: Dict[str, Any] = {**fields, "status": status}
        if status != JobStatus.ERROR:
            changes["error"] = None
            changes["error_code"] = None

        target = current.model_copy(update=changes)
        reason = check_invariants(target)
        if reason:
            raise InvalidTransitionError(job_id, current.status.value, status.value, reason)

        await self.update(job_id, changes)
        logger.info(f"[Records] Job {job_id}: {current.status.value} -> {status.value}")
        return target

    async def mark_error(self, job_id: str, message: str, code: Optional[str] = None, **fields: Any) -> bool:
        """
        Best-effort move to ``error``. Never raises; failures are logged.

        Returns:
            True if the error was recorded
        """
        try:
            await self.transition(job_id, JobStatus.ERROR, error=message or "Unknown error", error_code=code, **fields)
            return True
        except InvalidTransitionError as e:
            logger.warning(f"[Records] Not marking job {job_id} as error: {e}")
        except RecordError as e:
            logger.error(f"[Records] Could not record error for job {job_id}: {e}")
        return False

    async def delete(self, job_id: str) -> bool:
        try:
            return await self.store.delete(self.collection, job_id)
        except Exception as e:
            raise RecordError(f"Could not delete job record: {e}", job_id=job_id, operation="delete") from e

    async def delete_all(self) -> int:
        try:
            removed = await self.store.delete_all(self.collection)
        except Exception as e:
            raise RecordError(f"Could not delete job records: {e}", operation="delete_all") from e
        logger.info(f"[Records] Deleted {removed} job records")
        return removed

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[AvatarJob]:
        """All jobs, newest first, optionally filtered by status."""
        where = {"status": JobStatus(status).value} if status else None
        try:
            docs = await self.store.query(self.collection, where=where, order_by="createdAt", descending=True)
        except Exception as e:
            raise RecordError(f"Could not list job records: {e}", operation="query") from e
        return [AvatarJob.from_document(doc) for doc in docs]

    async def watch(self) -> AsyncIterator[List[AvatarJob]]:
        """Full snapshots of all jobs, newest first, on every change."""
        try:
            async for docs in self.store.watch(self.collection, order_by="createdAt", descending=True):
                yield [AvatarJob.from_document(doc) for doc in docs]
        except ChangeFeedError:
            raise
        except Exception as e:
            raise RecordError(f"Could not watch job records: {e}", operation="watch") from e
