"""
Generation Job Model
Database model for music generation jobs and the library entries they produce.
"""

from sqlalchemy import Column, String, Text, DateTime, Integer, Float, JSON, Index

from app.core.database import Base, utcnow


class JobState:
    """Lifecycle states. Only ever moves forward: pending -> generating -> completed|failed."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class TranscodeStatus:
    """Write-back status of the streaming asset derived from a completed job."""
    PREPARING = "preparing"
    READY = "ready"
    ERRORED = "errored"


class GenerationJob(Base):
    """
    Music generation job.

    A submitted request becomes one record. When the provider returns several
    takes, the first completes this record and every further take becomes an
    independent completed record (``parent_job_id`` points back at the original).
    """

    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True)  # gen_xxxx format
    owner_id = Column(String, nullable=False, index=True)
    parent_job_id = Column(String, nullable=True, index=True)  # Set on alternate takes only

    # Request
    kind = Column(String, default="text-to-music")
    params = Column(JSON, default=dict)
    request_fingerprint = Column(String, nullable=False, index=True)

    # Remote correlation key, set once at pending -> generating
    remote_task_id = Column(String, nullable=True, unique=True)

    # Status: pending, generating, completed, failed
    state = Column(String, default=JobState.PENDING, index=True)
    failure_reason = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    # Completion lease (conditional-write claim held while ingesting)
    lease_token = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    # Result
    source_url = Column(String, nullable=True, index=True)  # Transient provider URL that was ingested
    result_index = Column(Integer, default=0)
    durable_url = Column(String, nullable=True)
    preview_url = Column(String, nullable=True)
    title = Column(String, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Streaming asset (written back by the transcode manager)
    transcode_asset_id = Column(String, nullable=True)
    transcode_playback_id = Column(String, nullable=True)
    transcode_status = Column(String, nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_generation_jobs_owner_fingerprint", "owner_id", "request_fingerprint"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in JobState.TERMINAL

    @property
    def primary_result(self):
        """Structured result, present only once completed."""
        if self.state != JobState.COMPLETED or not self.durable_url:
            return None
        return {
            "durable_url": self.durable_url,
            "preview_url": self.preview_url,
            "title": self.title,
            "duration_seconds": self.duration_seconds,
        }

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id} state={self.state} task={self.remote_task_id}>"
