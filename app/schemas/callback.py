"""
Remote Status Schemas
Normalized view of what a provider says about a task, shared by the webhook
and the status-poll paths.
"""

from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, Field


class RemoteOutcome(str, Enum):
    """Normalized remote task outcome."""
    SUCCESS = "success"
    FAILURE = "failure"
    IN_PROGRESS = "inProgress"


class ResultDescriptor(BaseModel):
    """One output artifact of a remote task, addressed by a short-lived URL."""
    url: str
    preview_url: Optional[str] = Field(None, alias="previewUrl")
    title: Optional[str] = None
    duration_seconds: Optional[float] = Field(None, alias="durationSeconds")
    remote_id: Optional[str] = Field(None, alias="remoteId")

    class Config:
        populate_by_name = True


class RemoteStatus(BaseModel):
    """Normalized ``{outcome, results[]}`` status."""
    outcome: RemoteOutcome
    results: List[ResultDescriptor] = []
    error: Optional[str] = None


class CallbackPayload(RemoteStatus):
    """Normalized webhook body: ``{taskId, outcome, results[]}``."""
    task_id: str = Field(..., alias="taskId")

    class Config:
        populate_by_name = True
