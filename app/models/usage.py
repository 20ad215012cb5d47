"""
Usage Record Model
One row per generation that reached the provider; the quota ledger.
"""

from sqlalchemy import Column, String, DateTime, Integer

from app.core.database import Base, utcnow


class UsageRecord(Base):
    """Quota consumption event, unique per job so it can only be counted once."""

    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow, index=True)
