"""
Error Taxonomy
Exceptions raised by the reconciliation core. Every error carries whether the
caller may retry it, so the webhook and poll paths can decide between
"try again later" and "give up".
"""

from typing import Optional


class GenerationError(Exception):
    """Base exception for generation and reconciliation errors."""

    def __init__(self, message: str, retryable: bool = True, details: Optional[dict] = None):
        super().__init__(message)
        self.retryable = retryable
        self.details = details or {}


class NonRetryableError(GenerationError):
    """Error that should NOT be retried (e.g., invalid input)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, retryable=False, details=details)


class RetryableError(GenerationError):
    """Error that SHOULD be retried (e.g., API timeout)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, retryable=True, details=details)


class JobNotFound(NonRetryableError):
    """No job matches the given id or remote task id."""


class DuplicateSubmission(NonRetryableError):
    """An identical request from the same owner is already in flight."""

    def __init__(self, existing_job_id: str):
        super().__init__(
            f"Duplicate submission, already in flight as {existing_job_id}",
            details={"existing_job_id": existing_job_id},
        )
        self.existing_job_id = existing_job_id


class QuotaExceeded(NonRetryableError):
    """Owner has no remaining generation quota."""


class SubmissionError(GenerationError):
    """The remote generation provider rejected or failed a submission."""


class RemoteSubmissionFailed(NonRetryableError):
    """Submission failed; the job was moved to failed and may be resubmitted."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"Remote submission failed for {job_id}: {reason}", details={"job_id": job_id})
        self.job_id = job_id


class StatusCheckError(GenerationError):
    """Could not read a task's status from the remote provider."""


class IngestionFailed(GenerationError):
    """Fetching or storing a remote artifact failed."""


class ArtifactTooLarge(NonRetryableError):
    """Remote artifact exceeds the configured maximum size."""

    def __init__(self, source_url: str, limit: int):
        super().__init__(
            f"Artifact at {source_url} exceeds {limit} bytes",
            details={"source_url": source_url, "limit": limit},
        )


class TranscodeProviderError(GenerationError):
    """Transcode provider call failed."""


class TranscodeExhausted(NonRetryableError):
    """A transcode job used up its attempt ceiling."""


__all__ = [
    "GenerationError",
    "NonRetryableError",
    "RetryableError",
    "JobNotFound",
    "DuplicateSubmission",
    "QuotaExceeded",
    "SubmissionError",
    "RemoteSubmissionFailed",
    "StatusCheckError",
    "IngestionFailed",
    "ArtifactTooLarge",
    "TranscodeProviderError",
    "TranscodeExhausted",
]
