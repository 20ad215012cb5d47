"""
API Dependencies
Common dependencies for FastAPI routes (database sessions, service wiring, etc.)
"""

from functools import lru_cache
from typing import Generator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.services.ingestion import ArtifactIngestor
from app.services.kie_music import KieMusicService
from app.services.quota import UsageQuotaService
from app.services.reconciler import GenerationReconciler
from app.services.storage import StorageService
from app.workers.transcode import TranscodeJobManager


def get_db() -> Generator:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache()
def get_storage() -> StorageService:
    return StorageService()


def get_ingestor(storage: StorageService = Depends(get_storage)) -> ArtifactIngestor:
    return ArtifactIngestor(storage)


@lru_cache()
def get_music_provider() -> KieMusicService:
    return KieMusicService()


def get_quota(db: Session = Depends(get_db)) -> UsageQuotaService:
    return UsageQuotaService(db)


def get_reconciler(
    db: Session = Depends(get_db),
    provider=Depends(get_music_provider),
    ingestor=Depends(get_ingestor),
    quota=Depends(get_quota),
) -> GenerationReconciler:
    """Reconciler bound to the request's database session."""
    return GenerationReconciler(db, provider, ingestor, quota=quota)


def get_transcode_manager(request: Request) -> TranscodeJobManager:
    """The manager instance created in the application lifespan."""
    manager = getattr(request.app.state, "transcode_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Transcode manager not running"
        )
    return manager


def get_owner_id(x_owner_id: str = Header(..., alias="X-Owner-Id")) -> str:
    """Requesting principal, set by the authenticating proxy."""
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing owner"
        )
    return owner_id
