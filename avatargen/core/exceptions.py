"""
Pipeline Exceptions
Error taxonomy for the avatar generation pipeline.

Every error carries a machine ``code`` which the orchestrator writes to the
job's ``errorCode`` field, and a ``retryable`` flag used by ``with_retry``.
"""

from typing import Any, Dict, Optional


class AvatarPipelineError(Exception):
    """Base exception for pipeline errors."""

    code = "pipeline_error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        if code:
            self.code = code

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransferError(AvatarPipelineError):
    """Blob write did not reach a verified success state."""

    code = "upload_failed"

    def __init__(self, message: str, path: Optional[str] = None, state: Optional[str] = None):
        details = {}
        if path:
            details["path"] = path
        if state:
            details["state"] = state
        super().__init__(message, details=details)
        self.path = path
        self.state = state


class RecordError(AvatarPipelineError):
    """Document store write or read failed."""

    code = "record_error"

    def __init__(self, message: str, job_id: Optional[str] = None, operation: Optional[str] = None):
        details = {}
        if job_id:
            details["job_id"] = job_id
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)
        self.job_id = job_id
        self.operation = operation


class RecordNotFoundError(RecordError):
    """The job record does not exist (never created or deleted)."""

    code = "record_not_found"

    def __init__(self, job_id: str, operation: Optional[str] = None):
        super().__init__(f"Job record not found: {job_id}", job_id=job_id, operation=operation)


class InvalidTransitionError(AvatarPipelineError):
    """A status change violates the job state machine or its preconditions."""

    code = "invalid_transition"

    def __init__(self, job_id: str, from_status: Optional[str], to_status: str, reason: str = ""):
        message = f"Invalid transition for job {job_id}: {from_status} -> {to_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, details={"job_id": job_id})
        self.from_status = from_status
        self.to_status = to_status


class SubmissionError(AvatarPipelineError):
    """Prediction service rejected the submission or returned no handle."""

    code = "submission_failed"

    def __init__(self, message: str, status_code: Optional[int] = None, upstream_message: Optional[str] = None):
        details = {}
        if status_code is not None:
            details["status_code"] = status_code
        if upstream_message:
            details["upstream"] = upstream_message[:500]
        super().__init__(message, details=details)
        self.status_code = status_code
        self.upstream_message = upstream_message


class PayloadTooLargeError(AvatarPipelineError):
    """Inline payload exceeds the configured ceiling; never sent upstream."""

    code = "payload_too_large"

    def __init__(self, size: int, limit: int):
        super().__init__("Image too large for processing", details={"size": size, "limit": limit})
        self.size = size
        self.limit = limit


class InvalidInputError(AvatarPipelineError):
    """Missing image or the placeholder sentinel; never sent upstream."""

    code = "invalid_input"


class PollError(AvatarPipelineError):
    """Transient failure reading prediction status."""

    code = "poll_error"

    def __init__(self, message: str, handle: Optional[str] = None, status_code: Optional[int] = None):
        details = {}
        if handle:
            details["handle"] = handle
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, retryable=True, details=details)
        self.handle = handle
        self.status_code = status_code


class ChangeFeedError(AvatarPipelineError):
    """The change subscription behind a live query was lost."""

    code = "change_feed_lost"

    def __init__(self, collection: str, cause: Optional[BaseException] = None):
        message = f"Change subscription for {collection} was lost"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, retryable=True, details={"collection": collection})
        self.collection = collection
        self.cause = cause


class PollTimeoutError(AvatarPipelineError):
    """Prediction did not reach a terminal state within the poll cap."""

    code = "poll_timeout"

    def __init__(self, handle: str, attempts: int):
        super().__init__(
            f"Prediction {handle} did not finish after {attempts} status checks",
            details={"handle": handle, "attempts": attempts},
        )
        self.handle = handle
        self.attempts = attempts


__all__ = [
    "AvatarPipelineError",
    "TransferError",
    "RecordError",
    "RecordNotFoundError",
    "InvalidTransitionError",
    "SubmissionError",
    "PayloadTooLargeError",
    "InvalidInputError",
    "PollError",
    "PollTimeoutError",
    "ChangeFeedError",
]
