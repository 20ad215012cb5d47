"""
Job Schemas
Pydantic models for job API requests and responses.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel


class JobStatus(str, Enum):
    """Externally reported job status."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class PrimaryResult(BaseModel):
    """Durable result of a completed job."""
    durable_url: str
    preview_url: Optional[str] = None
    title: Optional[str] = None
    duration_seconds: Optional[float] = None


class JobResponse(BaseModel):
    """Schema for job response."""
    id: str
    owner_id: str
    parent_job_id: Optional[str] = None
    kind: str
    params: Dict[str, Any] = {}
    remote_task_id: Optional[str] = None
    state: JobStatus
    failure_reason: Optional[str] = None
    primary_result: Optional[PrimaryResult] = None
    transcode_status: Optional[str] = None
    transcode_playback_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StatusResponse(JobResponse):
    """Poll-path response; tells the client when to ask again."""
    poll_after_seconds: Optional[int] = None


class TranscodeRequest(BaseModel):
    """Optional override of the artifact handed to the transcode provider."""
    artifact_url: Optional[str] = None


class TranscodeJobResponse(BaseModel):
    """Tracked transcode entry."""
    source_job_id: str
    state: str
    attempts: int
    remote_asset_id: Optional[str] = None
    playback_ref: Optional[str] = None
