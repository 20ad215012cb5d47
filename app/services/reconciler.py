"""
Generation Reconciler
Moves generation jobs from submission to a terminal state.

Webhook deliveries and client status polls both end up in ``reconcile``.
Whichever path observes completion first wins the completion lease, ingests
the artifacts and completes the job. Later calls see a terminal job and return
it unchanged, apart from storing alternate takes an earlier pass missed.
"""

import asyncio
import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import utcnow
from app.core.errors import (
    ArtifactTooLarge,
    DuplicateSubmission,
    GenerationError,
    IngestionFailed,
    JobNotFound,
    NonRetryableError,
    QuotaExceeded,
    RemoteSubmissionFailed,
    StatusCheckError,
    SubmissionError,
)
from app.models.job import GenerationJob, JobState
from app.schemas.callback import RemoteOutcome, RemoteStatus, ResultDescriptor
from app.services.ingestion import guess_extension
from app.services.job_store import JobStore

logger = logging.getLogger(__name__)

# Share of the completion lease ingestion may use before it is abandoned
INGEST_LEASE_FRACTION = 0.8


def normalize_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Canonical form of a generation request; identical requests normalize identically."""
    tags = " ".join(str(params.get("tags") or "").split())
    if not tags:
        raise NonRetryableError("tags must not be empty")

    return {
        "tags": tags,
        "lyrics": (params.get("lyrics") or "").strip(),
        "title": (params.get("title") or "").strip() or None,
        "instrumental": bool(params.get("instrumental", False)),
        "vocal_gender": params.get("vocal_gender") or None,
        "negative_tags": " ".join(str(params.get("negative_tags") or "").split()),
        "input_audio_url": params.get("input_audio_url") or None,
    }


def compute_fingerprint(normalized: Dict[str, Any]) -> str:
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def destination_prefix(job_id: str, result_index: int = 0) -> str:
    if result_index == 0:
        return f"outputs/tracks/{job_id}"
    return f"outputs/tracks/{job_id}/alt{result_index}"


class GenerationReconciler:
    """
    Single authority for generation job transitions.

    Args:
        db: Session used for every read and conditional write
        provider: Remote generation client (``submit`` / ``get_status``)
        ingestor: Artifact ingestion pipeline (``ingest``)
        quota: Optional quota collaborator (``try_consume`` / ``commit``)
    """

    def __init__(
        self,
        db: Session,
        provider,
        ingestor,
        quota=None,
        duplicate_window_seconds: Optional[int] = None,
        lease_seconds: Optional[float] = None,
    ):
        self.store = JobStore(db)
        self.provider = provider
        self.ingestor = ingestor
        self.quota = quota
        self.duplicate_window = timedelta(
            seconds=duplicate_window_seconds
            if duplicate_window_seconds is not None
            else settings.DUPLICATE_WINDOW_SECONDS
        )
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.COMPLETION_LEASE_SECONDS
        self.ingest_deadline = self.lease_seconds * INGEST_LEASE_FRACTION

    def get_job(self, job_id: str) -> GenerationJob:
        job = self.store.get(job_id)
        if not job:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    # ------------------------------------------------------------- submission

    async def submit_job(self, owner_id: str, params: Dict[str, Any]) -> GenerationJob:
        """
        Create a job and hand it to the remote provider.

        Raises:
            DuplicateSubmission: identical request from this owner inside the window
            QuotaExceeded: quota collaborator refused
            RemoteSubmissionFailed: provider rejected the task; the job is failed
        """
        normalized = normalize_params(params)
        fingerprint = compute_fingerprint(normalized)
        since = utcnow() - self.duplicate_window

        existing = self.store.earliest_duplicate(owner_id, fingerprint, since)
        if existing:
            logger.info(f"[Reconciler] Duplicate submission from {owner_id}, in flight as {existing.id}")
            raise DuplicateSubmission(existing.id)

        if self.quota is not None:
            decision = self.quota.try_consume(owner_id)
            if not decision.allowed:
                raise QuotaExceeded(decision.reason or "Generation quota exhausted")

        kind = "audio-to-music" if normalized["input_audio_url"] else "text-to-music"
        job = self.store.create(owner_id, normalized, fingerprint, kind=kind)

        # A concurrent identical submission may have inserted between the check and our insert
        earliest = self.store.earliest_duplicate(owner_id, fingerprint, since)
        if earliest and earliest.id != job.id:
            self.store.delete_pending(job.id)
            logger.info(f"[Reconciler] Lost duplicate race to {earliest.id}, dropped {job.id}")
            raise DuplicateSubmission(earliest.id)

        try:
            task_id = await self.provider.submit(normalized)
        except SubmissionError as e:
            logger.error(f"[Reconciler] Submission failed for {job.id}: {e}")
            self.store.transition(
                job.id,
                JobState.PENDING,
                JobState.FAILED,
                failure_reason="submission_failed",
                error_message=str(e),
            )
            raise RemoteSubmissionFailed(job.id, str(e)) from e

        if self.store.transition(job.id, JobState.PENDING, JobState.GENERATING, remote_task_id=task_id):
            if self.quota is not None:
                self.quota.commit(owner_id, job.id)
        else:
            logger.warning(f"[Reconciler] {job.id} left pending before task {task_id} was recorded")

        return self.store.get(job.id)

    # ---------------------------------------------------------- reconciliation

    async def reconcile(self, job_id: str, remote_status: RemoteStatus) -> GenerationJob:
        """
        Apply a normalized remote status to a job.

        Safe to call repeatedly and concurrently for the same job. Terminal
        jobs keep their state; a redelivered success only fills in missing
        alternate takes.

        Raises:
            JobNotFound: unknown job id
            IngestionFailed: primary artifact could not be stored; job stays generating
        """
        job = self.get_job(job_id)
        outcome = remote_status.outcome

        if job.is_terminal:
            if job.state == JobState.COMPLETED and outcome == RemoteOutcome.FAILURE:
                logger.warning(f"[Reconciler] Ignoring failure for completed job {job.id}")
            elif (
                job.state == JobState.COMPLETED
                and outcome == RemoteOutcome.SUCCESS
                and job.parent_job_id is None
                and len(remote_status.results) > 1
            ):
                # Redelivery: pick up alternate takes an earlier pass could not store
                await self._fan_out(job, remote_status.results[1:])
                return self.store.get(job.id)
            return job

        if job.state != JobState.GENERATING:
            logger.warning(f"[Reconciler] Status for {job.id} arrived while {job.state}, ignoring")
            return job

        if outcome == RemoteOutcome.IN_PROGRESS:
            self.store.touch(job.id)
            return self.store.get(job.id)

        if outcome == RemoteOutcome.FAILURE:
            if not self.store.fail(job.id, "remote_failure", remote_status.error):
                logger.info(f"[Reconciler] Failure for {job.id} not applied, completion in flight")
            return self.store.get(job.id)

        if not remote_status.results:
            logger.warning(f"[Reconciler] Success without results for {job.id}, waiting for a full status")
            self.store.touch(job.id)
            return self.store.get(job.id)

        return await self._complete(job, remote_status.results)

    async def _complete(self, job: GenerationJob, results: List[ResultDescriptor]) -> GenerationJob:
        token = self.store.claim_completion(job.id, self.lease_seconds)
        if token is None:
            logger.info(f"[Reconciler] Completion of {job.id} already claimed, skipping ingestion")
            return self.store.get(job.id)

        primary = results[0]
        try:
            values = await self._ingest_within_lease(job.id, 0, primary)
        except ArtifactTooLarge as e:
            logger.error(f"[Reconciler] {job.id}: {e}")
            self.store.fail(job.id, "artifact_too_large", str(e), token=token)
            return self.store.get(job.id)
        except IngestionFailed as e:
            logger.warning(f"[Reconciler] Ingestion failed for {job.id} (retryable={e.retryable}): {e}")
            self.store.release_claim(job.id, token)
            raise

        if not self.store.complete(job.id, token, source_url=primary.url, result_index=0, **values):
            logger.warning(f"[Reconciler] Lease on {job.id} lost before completion, discarding write")
            return self.store.get(job.id)

        completed = self.store.get(job.id)
        await self._fan_out(completed, results[1:])
        return self.store.get(job.id)

    async def _ingest_within_lease(self, job_id: str, result_index: int, descriptor: ResultDescriptor) -> Dict[str, Any]:
        """
        Ingest one result, abandoning it before the caller's lease can expire.

        Raises a retryable ``IngestionFailed`` when the deadline passes.
        """
        try:
            return await asyncio.wait_for(
                self._ingest_result(job_id, result_index, descriptor),
                timeout=self.ingest_deadline,
            )
        except asyncio.TimeoutError as e:
            raise IngestionFailed(
                f"Ingestion of result {result_index} for {job_id} exceeded {self.ingest_deadline:g}s",
                retryable=True,
                details={"job_id": job_id, "result_index": result_index},
            ) from e

    async def _ingest_result(self, job_id: str, result_index: int, descriptor: ResultDescriptor) -> Dict[str, Any]:
        prefix = destination_prefix(job_id, result_index)
        durable_url = await self.ingestor.ingest(
            descriptor.url, f"{prefix}/audio{guess_extension(descriptor.url, '.mp3')}"
        )

        preview_url = None
        if descriptor.preview_url:
            try:
                preview_url = await self.ingestor.ingest(
                    descriptor.preview_url,
                    f"{prefix}/cover{guess_extension(descriptor.preview_url, '.jpg')}",
                )
            except (IngestionFailed, ArtifactTooLarge) as e:
                logger.warning(f"[Reconciler] Preview for {job_id} not stored: {e}")

        return {
            "durable_url": durable_url,
            "preview_url": preview_url,
            "title": descriptor.title,
            "duration_seconds": descriptor.duration_seconds,
        }

    async def _fan_out(self, parent: GenerationJob, alternates: List[ResultDescriptor]):
        """
        Turn alternate takes into independent completed library entries.

        Takes already stored for the owner are skipped, so a redelivered
        success only ingests the ones an earlier pass missed. The fan-out
        lease on the parent keeps a single caller ingesting at a time.
        """
        missing = [
            (index, descriptor)
            for index, descriptor in enumerate(alternates, start=1)
            if not self.store.find_by_source_url(parent.owner_id, descriptor.url)
        ]
        if not missing:
            return

        token = self.store.claim_fan_out(parent.id, self.lease_seconds)
        if token is None:
            logger.info(f"[Reconciler] Alternate takes of {parent.id} already being stored, skipping")
            return

        try:
            for index, descriptor in missing:
                if self.store.find_by_source_url(parent.owner_id, descriptor.url):
                    logger.info(f"[Reconciler] Alternate take {index} of {parent.id} already stored")
                    continue
                if not self.store.renew_claim(parent.id, token, self.lease_seconds):
                    logger.warning(f"[Reconciler] Fan-out lease on {parent.id} lost, stopping")
                    return

                try:
                    values = await self._ingest_within_lease(parent.id, index, descriptor)
                    entry = self.store.create_alternate(parent, index, descriptor.url, values)
                except GenerationError as e:
                    logger.error(f"[Reconciler] Alternate take {index} of {parent.id} failed: {e}")
                    continue
                except SQLAlchemyError as e:
                    self.store.db.rollback()
                    logger.error(f"[Reconciler] Could not record alternate take {index} of {parent.id}: {e}")
                    continue

                logger.info(f"[Reconciler] Alternate take {index} of {parent.id} stored as {entry.id}")
        finally:
            self.store.release_claim(parent.id, token)

    # ------------------------------------------------------------ entry points

    async def poll(self, job_id: str) -> GenerationJob:
        """
        Status-check path: ask the provider and reconcile.

        Transient problems are logged and the current snapshot returned; the
        client's next poll retries.
        """
        job = self.get_job(job_id)
        if job.is_terminal or not job.remote_task_id:
            return job

        try:
            remote_status = await self.provider.get_status(job.remote_task_id)
        except StatusCheckError as e:
            logger.warning(f"[Reconciler] Status check for {job.id} failed: {e}")
            return job

        try:
            return await self.reconcile(job.id, remote_status)
        except IngestionFailed:
            return self.store.get(job.id)

    async def handle_callback(self, task_id: str, remote_status: RemoteStatus) -> GenerationJob:
        """
        Webhook path. Propagates ``IngestionFailed`` so the route can ask the
        provider to redeliver.
        """
        job = self.store.get_by_remote_task_id(task_id)
        if not job:
            raise JobNotFound(f"No job for remote task {task_id}")
        if job.is_terminal:
            logger.info(f"[Reconciler] Late callback for {job.id} ({remote_status.outcome.value}), already {job.state}")
        return await self.reconcile(job.id, remote_status)

    # ----------------------------------------------------------------- operator

    def timeout_job(self, job_id: str) -> GenerationJob:
        """Operator action: fail a job stuck in generating. No-op once terminal."""
        job = self.get_job(job_id)
        if self.store.fail(job.id, "timed_out", "Timed out by operator"):
            logger.warning(f"[Reconciler] {job.id} timed out by operator")
        return self.store.get(job.id)

    def find_stale_jobs(self, max_age_seconds: Optional[int] = None) -> List[GenerationJob]:
        max_age = max_age_seconds if max_age_seconds is not None else settings.STALE_JOB_MAX_AGE_SECONDS
        return self.store.find_stale(max_age)
