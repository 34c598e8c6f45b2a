# Workers package - async job orchestration on the event loop

from avatargen.workers.base import (
    is_retryable,
    with_retry,
)
from avatargen.workers.orchestrator import (
    SubmissionMode,
    JobOrchestrator,
)
from avatargen.workers.feed import JobFeed

__all__ = [
    # Base
    "is_retryable",
    "with_retry",
    # Orchestration
    "SubmissionMode",
    "JobOrchestrator",
    "JobFeed",
]
