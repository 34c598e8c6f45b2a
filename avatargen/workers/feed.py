"""
Job Feed
Live view of all jobs (newest first) and the re-drive sweep for pending jobs.

Every emission is a complete snapshot; consumers replace their state with it.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from avatargen.core.config import settings
from avatargen.core.exceptions import ChangeFeedError, RecordError
from avatargen.schemas.job import AvatarJob, JobStatus
from avatargen.services.job_records import JobRecordManager
from avatargen.workers.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class JobFeed:
    """Subscribes to job records and re-drives stale pending jobs."""

    def __init__(
        self,
        records: JobRecordManager,
        orchestrator: Optional[JobOrchestrator] = None,
        redrive: Optional[bool] = None,
        restart_delay: Optional[float] = None,
    ):
        self.records = records
        self.orchestrator = orchestrator
        self.redrive_enabled = settings.REDRIVE_ENABLED if redrive is None else redrive
        self.restart_delay = settings.FEED_RESTART_DELAY if restart_delay is None else restart_delay

    async def subscribe(self) -> AsyncIterator[List[AvatarJob]]:
        async for jobs in self.records.watch():
            yield jobs

    @staticmethod
    def redrive_candidates(jobs: List[AvatarJob]) -> List[AvatarJob]:
        return [
            job for job in jobs
            if job.status == JobStatus.PENDING and not job.generated_image_url
        ]

    async def sweep(self, jobs: List[AvatarJob]) -> List[str]:
        """
        Handle one emission: re-drive each pending job once and stop
        poll loops whose records are gone.

        Returns:
            Ids of the jobs that were re-driven
        """
        if self.orchestrator is None:
            return []

        redriven = []
        if self.redrive_enabled:
            for job in self.redrive_candidates(jobs):
                if await self.orchestrator.redrive(job.id):
                    redriven.append(job.id)
        if redriven:
            logger.info(f"[Feed] Re-driving {len(redriven)} pending jobs")

        await self.orchestrator.prune([job.id for job in jobs])
        return redriven

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Sweep every emission until ``stop_event`` is set or the task is cancelled.

        A lost subscription is logged and reopened after ``restart_delay``
        seconds; the first snapshot of the new subscription is swept as usual.
        """
        logger.info("[Feed] Watching job records")
        while True:
            try:
                async for jobs in self.subscribe():
                    if stop_event is not None and stop_event.is_set():
                        logger.info("[Feed] Stopped")
                        return
                    await self.sweep(jobs)
            except ChangeFeedError as e:
                logger.error(f"[Feed] {e}; resubscribing in {self.restart_delay}s")
            except RecordError as e:
                logger.error(f"[Feed] Could not read job records: {e}; resubscribing in {self.restart_delay}s")
            await asyncio.sleep(self.restart_delay)


__all__ = ["JobFeed"]
