"""
Usage Quota Service
Rolling-window generation quota backed by the usage_records ledger.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import utcnow
from app.models.usage import UsageRecord

logger = logging.getLogger(__name__)


@dataclass
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None


class UsageQuotaService:
    """
    Checks and records generation usage per owner.

    ``try_consume`` only checks; nothing is recorded until ``commit``, which
    is keyed by job id so a repeated commit for the same job counts once.
    """

    def __init__(self, db: Session, limit: Optional[int] = None, window_days: Optional[int] = None):
        self.db = db
        self.limit = limit if limit is not None else settings.GENERATION_QUOTA_PER_WINDOW
        self.window = timedelta(days=window_days if window_days is not None else settings.GENERATION_QUOTA_WINDOW_DAYS)

    def used(self, owner_id: str) -> int:
        since = utcnow() - self.window
        return (
            self.db.query(UsageRecord)
            .filter(UsageRecord.owner_id == owner_id, UsageRecord.created_at >= since)
            .count()
        )

    def try_consume(self, owner_id: str) -> QuotaDecision:
        if self.limit <= 0:
            return QuotaDecision(allowed=True)

        used = self.used(owner_id)
        if used >= self.limit:
            return QuotaDecision(
                allowed=False,
                reason=f"Generation limit of {self.limit} per {self.window.days} days reached",
                remaining=0,
            )
        return QuotaDecision(allowed=True, remaining=self.limit - used)

    def commit(self, owner_id: str, job_id: str) -> bool:
        """Record one usage event for ``job_id``. Returns False if it was already recorded."""
        self.db.add(UsageRecord(owner_id=owner_id, job_id=job_id))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"[Quota] Usage for job {job_id} already recorded, ignoring")
            return False
        logger.info(f"[Quota] Recorded usage for {owner_id} (job {job_id})")
        return True
