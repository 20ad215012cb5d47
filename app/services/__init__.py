# Services package - business logic and external integrations
from app.services.storage import StorageService
from app.services.ingestion import ArtifactIngestor
from app.services.job_store import JobStore
from app.services.kie_music import KieMusicService
from app.services.mux_video import MuxVideoService
from app.services.quota import UsageQuotaService
from app.services.reconciler import GenerationReconciler

__all__ = [
    "StorageService",
    "ArtifactIngestor",
    "JobStore",
    "KieMusicService",
    "MuxVideoService",
    "UsageQuotaService",
    "GenerationReconciler",
]
