"""
Callback API Routes
Inbound webhook from the music generation provider.

A 2xx response tells the provider the delivery is done. Anything that should
be redelivered (artifact could not be stored yet, completion still in flight
on another path) answers 503.
"""

import logging
import secrets
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_reconciler
from app.core.config import settings
from app.core.errors import IngestionFailed, JobNotFound
from app.models.job import JobState
from app.schemas.callback import RemoteOutcome
from app.services.kie_music import parse_callback
from app.services.reconciler import GenerationReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generation")
async def generation_callback(
    request: Request,
    token: Optional[str] = None,
    reconciler: GenerationReconciler = Depends(get_reconciler),
):
    """Receive a task status push and reconcile it."""
    if settings.CALLBACK_TOKEN and not secrets.compare_digest(token or "", settings.CALLBACK_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid callback token"
        )

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON")

    try:
        task_id, remote_status = parse_callback(payload if isinstance(payload, dict) else {})
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"[Callback] Task {task_id}: {remote_status.outcome.value} ({len(remote_status.results)} results)")

    try:
        job = await reconciler.handle_callback(task_id, remote_status)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except IngestionFailed as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Result not stored yet, redeliver: {e}"
        )

    if remote_status.outcome == RemoteOutcome.SUCCESS and job.state == JobState.GENERATING:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Completion in progress, redeliver"
        )

    return {"status": "ok", "job_id": job.id, "state": job.state}
