# Workers package - retry helpers and the background transcode loop

from app.workers.base import with_retry
from app.workers.transcode import (
    ArtifactJob,
    ArtifactJobState,
    TranscodeJobManager,
)

__all__ = [
    # Base
    "with_retry",
    # Transcode
    "ArtifactJob",
    "ArtifactJobState",
    "TranscodeJobManager",
]
