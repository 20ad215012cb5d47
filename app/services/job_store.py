"""
Job Store
Persistence for generation jobs.

Every state transition is a conditional UPDATE keyed on the current state
(compare-and-swap). The row count tells the caller whether it won; no
in-process locks are involved, so this holds across worker processes.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.models.job import GenerationJob, JobState

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"gen_{uuid.uuid4().hex[:16]}"


class JobStore:
    """Repository for GenerationJob records."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------ reads

    def get(self, job_id: str) -> Optional[GenerationJob]:
        self.db.expire_all()
        return self.db.query(GenerationJob).filter(GenerationJob.id == job_id).first()

    def get_by_remote_task_id(self, remote_task_id: str) -> Optional[GenerationJob]:
        self.db.expire_all()
        return (
            self.db.query(GenerationJob)
            .filter(GenerationJob.remote_task_id == remote_task_id)
            .first()
        )

    def list_for_owner(
        self,
        owner_id: str,
        state: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[GenerationJob]:
        query = self.db.query(GenerationJob).filter(GenerationJob.owner_id == owner_id)
        if state:
            query = query.filter(GenerationJob.state == state)
        return query.order_by(GenerationJob.created_at.desc()).offset(offset).limit(limit).all()

    def earliest_duplicate(self, owner_id: str, fingerprint: str, since: datetime) -> Optional[GenerationJob]:
        """Oldest non-failed original job with this fingerprint created since ``since``."""
        return (
            self.db.query(GenerationJob)
            .filter(
                GenerationJob.owner_id == owner_id,
                GenerationJob.request_fingerprint == fingerprint,
                GenerationJob.parent_job_id.is_(None),
                GenerationJob.state != JobState.FAILED,
                GenerationJob.created_at >= since,
            )
            .order_by(GenerationJob.created_at.asc(), GenerationJob.id.asc())
            .first()
        )

    def find_by_source_url(self, owner_id: str, source_url: str) -> Optional[GenerationJob]:
        """Completed job of this owner that already ingested ``source_url``."""
        return (
            self.db.query(GenerationJob)
            .filter(
                GenerationJob.owner_id == owner_id,
                GenerationJob.source_url == source_url,
                GenerationJob.state == JobState.COMPLETED,
            )
            .first()
        )

    def find_stale(self, max_age_seconds: int) -> List[GenerationJob]:
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        return (
            self.db.query(GenerationJob)
            .filter(GenerationJob.state == JobState.GENERATING, GenerationJob.created_at < cutoff)
            .order_by(GenerationJob.created_at.asc())
            .all()
        )

    def find_by_transcode_status(self, status: str) -> List[GenerationJob]:
        return (
            self.db.query(GenerationJob)
            .filter(GenerationJob.transcode_status == status)
            .all()
        )

    # ----------------------------------------------------------------- writes

    def create(
        self,
        owner_id: str,
        params: Dict[str, Any],
        fingerprint: str,
        kind: str = "text-to-music",
    ) -> GenerationJob:
        now = utcnow()
        job = GenerationJob(
            id=new_job_id(),
            owner_id=owner_id,
            kind=kind,
            params=params,
            request_fingerprint=fingerprint,
            state=JobState.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def delete_pending(self, job_id: str) -> bool:
        deleted = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id, GenerationJob.state == JobState.PENDING)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted == 1

    def create_alternate(
        self,
        parent: GenerationJob,
        result_index: int,
        source_url: str,
        values: Dict[str, Any],
    ) -> GenerationJob:
        """Insert an independent, already-completed library entry for an alternate take."""
        now = utcnow()
        job = GenerationJob(
            id=new_job_id(),
            owner_id=parent.owner_id,
            parent_job_id=parent.id,
            kind=parent.kind,
            params=dict(parent.params or {}),
            request_fingerprint=parent.request_fingerprint,
            state=JobState.COMPLETED,
            source_url=source_url,
            result_index=result_index,
            created_at=now,
            updated_at=now,
            completed_at=now,
            **values,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def transition(self, job_id: str, from_state: str, to_state: str, **values) -> bool:
        """Move ``job_id`` from ``from_state`` to ``to_state``; False if it was not in ``from_state``."""
        now = utcnow()
        values.update(state=to_state, updated_at=now)
        if to_state in JobState.TERMINAL:
            values.setdefault("completed_at", now)

        updated = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id, GenerationJob.state == from_state)
            .update(values, synchronize_session=False)
        )
        self.db.commit()

        if updated:
            logger.info(f"[JobStore] {job_id}: {from_state} -> {to_state}")
        return updated == 1

    def touch(self, job_id: str) -> bool:
        """Refresh updated_at on a job still generating."""
        updated = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id, GenerationJob.state == JobState.GENERATING)
            .update({"updated_at": utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def _lease_free(self, now: datetime):
        return or_(GenerationJob.lease_token.is_(None), GenerationJob.lease_expires_at < now)

    def claim_completion(self, job_id: str, lease_seconds: float) -> Optional[str]:
        """
        Claim the right to complete a generating job.

        Returns a lease token, or None when the job is terminal or another
        caller holds an unexpired lease.
        """
        return self._claim(job_id, lease_seconds, GenerationJob.state == JobState.GENERATING)

    def claim_fan_out(self, job_id: str, lease_seconds: float) -> Optional[str]:
        """Claim the right to store alternate takes of a completed primary job."""
        return self._claim(
            job_id,
            lease_seconds,
            GenerationJob.state == JobState.COMPLETED,
            GenerationJob.parent_job_id.is_(None),
        )

    def _claim(self, job_id: str, lease_seconds: float, *conditions) -> Optional[str]:
        now = utcnow()
        token = uuid.uuid4().hex
        updated = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id, self._lease_free(now), *conditions)
            .update(
                {
                    "lease_token": token,
                    "lease_expires_at": now + timedelta(seconds=lease_seconds),
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return token if updated == 1 else None

    def renew_claim(self, job_id: str, token: str, lease_seconds: float) -> bool:
        """Push a held lease's expiry forward; False once another caller has taken it."""
        updated = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id, GenerationJob.lease_token == token)
            .update(
                {"lease_expires_at": utcnow() + timedelta(seconds=lease_seconds)},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def release_claim(self, job_id: str, token: str) -> None:
        self.db.query(GenerationJob).filter(
            GenerationJob.id == job_id,
            GenerationJob.lease_token == token,
        ).update({"lease_token": None, "lease_expires_at": None}, synchronize_session=False)
        self.db.commit()

    def complete(self, job_id: str, token: str, **values) -> bool:
        """The single write that flips generating -> completed; requires the caller's lease."""
        now = utcnow()
        values.update(
            state=JobState.COMPLETED,
            lease_token=None,
            lease_expires_at=None,
            updated_at=now,
            completed_at=now,
        )
        updated = (
            self.db.query(GenerationJob)
            .filter(
                GenerationJob.id == job_id,
                GenerationJob.state == JobState.GENERATING,
                GenerationJob.lease_token == token,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if updated:
            logger.info(f"[JobStore] {job_id}: generating -> completed")
        return updated == 1

    def fail(self, job_id: str, reason: str, message: Optional[str] = None, token: Optional[str] = None) -> bool:
        """
        Move a generating job to failed.

        Without a token the write only applies while no one holds the
        completion lease, so a failure can never overtake an in-flight success.
        """
        now = utcnow()
        conditions = [GenerationJob.id == job_id, GenerationJob.state == JobState.GENERATING]
        if token:
            conditions.append(GenerationJob.lease_token == token)
        else:
            conditions.append(self._lease_free(now))

        updated = (
            self.db.query(GenerationJob)
            .filter(*conditions)
            .update(
                {
                    "state": JobState.FAILED,
                    "failure_reason": reason,
                    "error_message": message,
                    "lease_token": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                    "completed_at": now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated:
            logger.info(f"[JobStore] {job_id}: generating -> failed ({reason})")
        return updated == 1

    def update_transcode(self, job_id: str, **values) -> bool:
        """Write streaming-asset identifiers back onto a job. Never touches ``state``."""
        values["updated_at"] = utcnow()
        updated = (
            self.db.query(GenerationJob)
            .filter(GenerationJob.id == job_id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1
