"""
Admin API Routes
Operator views of stuck generations and the transcode loop.
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_reconciler, get_transcode_manager
from app.core.errors import JobNotFound
from app.schemas.job import JobResponse, TranscodeJobResponse
from app.services.reconciler import GenerationReconciler
from app.workers.transcode import TranscodeJobManager

router = APIRouter()


@router.get("/jobs/stale", response_model=List[JobResponse])
async def list_stale_jobs(
    max_age_seconds: Optional[int] = None,
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """Jobs still generating past the maximum age. Reported only, never auto-failed."""
    return reconciler.find_stale_jobs(max_age_seconds)


@router.post("/jobs/{job_id}/timeout", response_model=JobResponse)
async def timeout_job(
    job_id: str,
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """Fail a generating job. Terminal jobs are returned unchanged."""
    try:
        return reconciler.timeout_job(job_id)
    except JobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )


@router.get("/transcode", response_model=List[TranscodeJobResponse])
async def list_transcode_jobs(
    manager: TranscodeJobManager = Depends(get_transcode_manager),
):
    """Entries currently tracked by the transcode loop."""
    return manager.snapshot()
