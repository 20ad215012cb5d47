# Pydantic schemas package
from app.schemas.job import JobResponse, JobStatus, PrimaryResult, StatusResponse, TranscodeRequest, TranscodeJobResponse
from app.schemas.generate import GenerateRequest, GenerateResponse
from app.schemas.callback import RemoteOutcome, ResultDescriptor, RemoteStatus, CallbackPayload

__all__ = [
    "JobResponse", "JobStatus", "PrimaryResult", "StatusResponse",
    "TranscodeRequest", "TranscodeJobResponse",
    "GenerateRequest", "GenerateResponse",
    "RemoteOutcome", "ResultDescriptor", "RemoteStatus", "CallbackPayload",
]
