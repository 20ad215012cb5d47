"""
Jobs API Routes
Handles music generation submission, status polling and library reads.
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_owner_id, get_reconciler, get_transcode_manager
from app.core.config import settings
from app.core.errors import (
    DuplicateSubmission,
    JobNotFound,
    NonRetryableError,
    QuotaExceeded,
    RemoteSubmissionFailed,
)
from app.models.job import GenerationJob, JobState
from app.schemas.generate import GenerateRequest, GenerateResponse
from app.schemas.job import JobResponse, JobStatus, StatusResponse, TranscodeJobResponse, TranscodeRequest
from app.services.job_store import JobStore
from app.services.reconciler import GenerationReconciler
from app.workers.transcode import TranscodeJobManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _owned_job(reconciler: GenerationReconciler, job_id: str, owner_id: str) -> GenerationJob:
    try:
        job = reconciler.get_job(job_id)
    except JobNotFound:
        job = None

    if not job or job.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return job


@router.post("", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_generation(
    request: GenerateRequest,
    owner_id: str = Depends(get_owner_id),
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """
    Submit a music generation request.

    The job is handed to the provider immediately; poll
    ``/jobs/{id}/status`` or wait for the webhook to see it complete.
    """
    try:
        job = await reconciler.submit_job(owner_id, request.model_dump())
    except DuplicateSubmission as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "existing_job_id": e.existing_job_id}
        )
    except QuotaExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e)
        )
    except RemoteSubmissionFailed as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(e), "job_id": e.job_id}
        )
    except NonRetryableError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    return GenerateResponse(
        job_id=job.id,
        state=job.state,
        remote_task_id=job.remote_task_id,
        message="Generation started",
    )


@router.get("/{job_id}/status", response_model=StatusResponse)
async def check_job_status(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """
    Poll path: asks the provider for the task status and reconciles it.

    Clients are expected to call this every ``poll_after_seconds`` until the
    job reaches a terminal state.
    """
    _owned_job(reconciler, job_id, owner_id)
    job = await reconciler.poll(job_id)

    response = StatusResponse.model_validate(job)
    if not job.is_terminal:
        response.poll_after_seconds = settings.STATUS_POLL_INTERVAL_SECONDS
    return response


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """Get a stored job without contacting the provider."""
    return _owned_job(reconciler, job_id, owner_id)


@router.get("", response_model=List[JobResponse])
async def list_jobs(
    job_status: Optional[JobStatus] = None,
    limit: int = 20,
    offset: int = 0,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
):
    """List the owner's library, newest first."""
    return JobStore(db).list_for_owner(
        owner_id,
        state=job_status.value if job_status else None,
        limit=min(max(limit, 1), 100),
        offset=max(offset, 0),
    )


@router.post("/{job_id}/transcode", response_model=TranscodeJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def transcode_job(
    job_id: str,
    request: Optional[TranscodeRequest] = None,
    owner_id: str = Depends(get_owner_id),
    reconciler: GenerationReconciler = Depends(get_reconciler),
    manager: TranscodeJobManager = Depends(get_transcode_manager),
):
    """Queue the stored artifact of a completed job for streaming packaging."""
    job = _owned_job(reconciler, job_id, owner_id)
    if job.state != JobState.COMPLETED or not job.durable_url:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.state}, only completed jobs can be transcoded"
        )

    artifact_url = (request.artifact_url if request else None) or job.durable_url
    tracked = manager.enqueue(job.id, artifact_url)
    if tracked is None:
        return TranscodeJobResponse(source_job_id=job.id, state="skipped", attempts=0)

    return TranscodeJobResponse(
        source_job_id=tracked.source_job_id,
        state=tracked.state,
        attempts=tracked.attempts,
        remote_asset_id=tracked.remote_asset_id,
        playback_ref=tracked.playback_ref,
    )
