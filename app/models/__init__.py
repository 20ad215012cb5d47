# Database models package
from app.models.job import GenerationJob, JobState, TranscodeStatus
from app.models.usage import UsageRecord

__all__ = [
    "GenerationJob",
    "JobState",
    "TranscodeStatus",
    "UsageRecord",
]
