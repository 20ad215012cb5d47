"""
Transcode Job Manager
Background loop that turns stored artifacts into streamable assets.

Jobs live in an in-process map owned by the manager. Entries are added by
``enqueue`` and advanced only by the tick, both on the event loop.
Results are written back onto the source GenerationJob; the map holds no
long-term history.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import SessionLocal, utcnow
from app.core.errors import GenerationError, TranscodeExhausted
from app.models.job import TranscodeStatus
from app.services.job_store import JobStore

logger = logging.getLogger(__name__)


class ArtifactJobState:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = (PENDING, PROCESSING)


@dataclass
class ArtifactJob:
    """One tracked transcode of a completed job's artifact."""
    source_job_id: str
    artifact_url: str
    state: str = ArtifactJobState.PENDING
    attempts: int = 0
    remote_asset_id: Optional[str] = None
    playback_ref: Optional[str] = None
    asset_recorded: bool = False  # Asset id written back to the source job
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ArtifactJobState.ACTIVE


class TranscodeJobManager:
    """
    Polls the transcode provider on a fixed interval.

    Args:
        provider: Client with ``create_asset`` / ``get_asset_status``; None disables the manager
        session_factory: Opens database sessions for write-back
        interval_seconds: Seconds between ticks
        max_attempts: Failed provider calls allowed before a job is failed
        retention_seconds: How long terminal jobs stay tracked
    """

    def __init__(
        self,
        provider=None,
        session_factory: Callable = SessionLocal,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retention_seconds: Optional[float] = None,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.interval = interval_seconds if interval_seconds is not None else settings.TRANSCODE_POLL_INTERVAL_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else settings.TRANSCODE_MAX_ATTEMPTS
        self.retention = timedelta(
            seconds=retention_seconds if retention_seconds is not None else settings.TRANSCODE_RETENTION_SECONDS
        )
        self.jobs: Dict[str, ArtifactJob] = {}
        self._task: Optional[asyncio.Task] = None
        self._ticking = False

    @property
    def is_enabled(self) -> bool:
        return self.provider is not None and self.provider.is_configured

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get(self, source_job_id: str) -> Optional[ArtifactJob]:
        return self.jobs.get(source_job_id)

    def enqueue(self, source_job_id: str, artifact_url: str) -> Optional[ArtifactJob]:
        """
        Track a new transcode; picked up by the next tick.

        Returns None when no provider is configured. Enqueueing a source job
        that is already tracked returns the existing entry, unless that entry
        failed, in which case it is replaced.
        """
        if not self.is_enabled:
            logger.info(f"[Transcode] Provider not configured, skipping {source_job_id}")
            return None

        existing = self.jobs.get(source_job_id)
        if existing and existing.state != ArtifactJobState.FAILED:
            return existing

        job = ArtifactJob(source_job_id=source_job_id, artifact_url=artifact_url)
        self.jobs[source_job_id] = job
        logger.info(f"[Transcode] Job added for {source_job_id}")
        return job

    def snapshot(self) -> List[dict]:
        return [
            {
                "source_job_id": job.source_job_id,
                "state": job.state,
                "attempts": job.attempts,
                "remote_asset_id": job.remote_asset_id,
                "playback_ref": job.playback_ref,
            }
            for job in self.jobs.values()
        ]

    def resume_from_store(self) -> int:
        """Re-track assets the store still reports as preparing. Returns how many were added."""
        db = self.session_factory()
        try:
            rows = [
                (row.id, row.durable_url, row.transcode_asset_id, row.transcode_playback_id)
                for row in JobStore(db).find_by_transcode_status(TranscodeStatus.PREPARING)
            ]
        finally:
            db.close()

        resumed = 0
        for job_id, durable_url, asset_id, playback_id in rows:
            if job_id in self.jobs or not asset_id:
                continue
            self.jobs[job_id] = ArtifactJob(
                source_job_id=job_id,
                artifact_url=durable_url or "",
                state=ArtifactJobState.PROCESSING,
                remote_asset_id=asset_id,
                playback_ref=playback_id,
                asset_recorded=True,
            )
            resumed += 1

        if resumed:
            logger.info(f"[Transcode] Resumed {resumed} in-flight asset(s)")
        return resumed

    # --------------------------------------------------------------- the loop

    def start(self):
        """Schedule the polling loop on the running event loop."""
        if self.is_running:
            return
        if not self.is_enabled:
            logger.info("[Transcode] Provider not configured, polling loop not started")
            return

        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(self._log_task_failure)
        logger.info(f"[Transcode] Polling every {self.interval}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Transcode] Polling loop stopped")

    async def _run(self):
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    @staticmethod
    def _log_task_failure(task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Transcode] Polling loop died: {error}", exc_info=error)

    async def tick(self):
        """
        Process every active job once. Never raises.

        A tick that starts while another is still running is skipped.
        """
        if self._ticking:
            logger.debug("[Transcode] Previous tick still running, skipping")
            return

        self._ticking = True
        try:
            self._drop_expired()
            active = [job for job in self.jobs.values() if job.is_active]
            if active:
                logger.info(f"[Transcode] Processing {len(active)} job(s)")

            for job in active:
                try:
                    await self._process(job)
                except Exception as e:
                    self._record_failure(job, e)
        finally:
            self._ticking = False

    async def _process(self, job: ArtifactJob):
        if job.state == ArtifactJobState.PENDING:
            asset = await self.provider.create_asset(job.artifact_url)
            job.remote_asset_id = asset.get("asset_id")
            job.playback_ref = asset.get("playback_id")
            # From here on the entry is only ever polled, never re-created
            job.state = ArtifactJobState.PROCESSING
            logger.info(f"[Transcode] Asset {job.remote_asset_id} created for {job.source_job_id}")
            self._record_asset(job)
            return

        if not job.asset_recorded:
            self._record_asset(job)

        status = await self.provider.get_asset_status(job.remote_asset_id)
        remote_state = status.get("status")

        if remote_state == "ready":
            job.playback_ref = status.get("playback_id") or job.playback_ref
            self._write_back(
                job.source_job_id,
                transcode_playback_id=job.playback_ref,
                transcode_status=TranscodeStatus.READY,
            )
            self._finish(job, ArtifactJobState.COMPLETED)
            logger.info(f"[Transcode] Asset ready for {job.source_job_id}")

        elif remote_state == "errored":
            job.last_error = "; ".join(status.get("errors") or []) or "asset errored"
            self._write_back(job.source_job_id, transcode_status=TranscodeStatus.ERRORED)
            self._finish(job, ArtifactJobState.FAILED)
            logger.error(f"[Transcode] Asset failed for {job.source_job_id}: {job.last_error}")

        else:
            logger.debug(f"[Transcode] Asset for {job.source_job_id} still {remote_state}")

    def _record_asset(self, job: ArtifactJob):
        self._write_back(
            job.source_job_id,
            transcode_asset_id=job.remote_asset_id,
            transcode_playback_id=job.playback_ref,
            transcode_status=TranscodeStatus.PREPARING,
        )
        job.asset_recorded = True

    def _record_failure(self, job: ArtifactJob, error: Exception):
        job.attempts += 1
        job.last_error = str(error)
        permanent = isinstance(error, GenerationError) and not error.retryable

        if not permanent and job.attempts < self.max_attempts:
            logger.warning(
                f"[Transcode] Attempt {job.attempts}/{self.max_attempts} for {job.source_job_id} failed: {error}"
            )
            return

        self._finish(job, ArtifactJobState.FAILED)
        exhausted = TranscodeExhausted(
            f"Transcode for {job.source_job_id} gave up after {job.attempts} attempt(s): {error}",
            details={"source_job_id": job.source_job_id, "attempts": job.attempts},
        )
        logger.error(f"[Transcode] {exhausted}")

        try:
            self._write_back(job.source_job_id, transcode_status=TranscodeStatus.ERRORED)
        except SQLAlchemyError as e:
            logger.error(f"[Transcode] Could not record failure for {job.source_job_id}: {e}")

    def _finish(self, job: ArtifactJob, state: str):
        job.state = state
        job.finished_at = utcnow()

    def _drop_expired(self):
        cutoff = utcnow() - self.retention
        expired = [
            job_id for job_id, job in self.jobs.items()
            if not job.is_active and job.finished_at and job.finished_at < cutoff
        ]
        for job_id in expired:
            del self.jobs[job_id]

    def _write_back(self, source_job_id: str, **values):
        db = self.session_factory()
        try:
            if not JobStore(db).update_transcode(source_job_id, **values):
                logger.warning(f"[Transcode] Source job {source_job_id} no longer exists")
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()
