"""
Avatar API Routes
Upload trigger, job queries, retry and administrative deletes.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status

from avatargen.api.deps import get_orchestrator, get_records
from avatargen.core.exceptions import RecordError
from avatargen.schemas.job import AvatarJob, AvatarJobResponse, AvatarSubmitResponse, JobStatus
from avatargen.services.job_records import JobRecordManager
from avatargen.workers.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


async def find_job(records: JobRecordManager, job_id: str) -> Optional[AvatarJob]:
    try:
        return await records.find(job_id)
    except RecordError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("", response_model=AvatarSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_avatar(
    image: UploadFile = File(...),
    user_id: Optional[str] = Form(None),
    platform: Optional[str] = Form(None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Upload a source image and start an avatar generation job.
    The job continues in the background; poll ``GET /{job_id}`` for progress.
    """
    payload = await image.read()
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Image file is empty"
        )

    job_id = await orchestrator.start_job(
        payload,
        content_type=image.content_type or "image/jpeg",
        owner=user_id,
        platform=platform,
    )
    if job_id is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not save upload details. Please try again."
        )

    return AvatarSubmitResponse(
        job_id=job_id,
        status=JobStatus.UPLOADING.value,
        message="Avatar generation started",
    )


@router.get("", response_model=List[AvatarJobResponse])
async def list_avatars(
    job_status: Optional[JobStatus] = None,
    records: JobRecordManager = Depends(get_records),
):
    """List jobs, newest first."""
    try:
        jobs = await records.list_jobs(job_status)
    except RecordError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [AvatarJobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=AvatarJobResponse)
async def get_avatar(
    job_id: str,
    records: JobRecordManager = Depends(get_records),
):
    """Get job status and result."""
    job = await find_job(records, job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return AvatarJobResponse.from_job(job)


@router.post("/{job_id}/retry", response_model=AvatarSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_avatar(
    job_id: str,
    records: JobRecordManager = Depends(get_records),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Resubmit a failed job from its stored source image."""
    job = await find_job(records, job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    if job.status != JobStatus.ERROR or not await orchestrator.retry(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job cannot be retried from status '{job.status.value}'"
        )

    return AvatarSubmitResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Retry started",
    )


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_avatar(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Delete one job and stop its background task."""
    try:
        removed = await orchestrator.delete_job(job_id)
    except RecordError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("")
async def delete_all_avatars(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Delete every job. Administrative."""
    try:
        removed = await orchestrator.delete_all()
    except RecordError as e:
        logger.error(f"[API] Bulk delete failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    logger.info(f"[API] Deleted all jobs ({removed})")
    return {"deleted": removed}
