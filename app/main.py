"""
Tunesmith API - Music Generation Service
FastAPI Backend Entry Point
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from app.core.config import settings
from app.core.database import init_db
from app.api import admin, callbacks, jobs
from app.api.deps import get_storage
from app.services.ingestion import guess_content_type
from app.services.mux_video import MuxVideoService
from app.workers.transcode import TranscodeJobManager

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup: Create database tables, resume transcode polling
    logger.info(f"Starting {settings.APP_NAME}...")
    init_db()

    manager = TranscodeJobManager(MuxVideoService())
    if manager.is_enabled:
        manager.resume_from_store()
    manager.start()
    app.state.transcode_manager = manager

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await manager.stop()


app = FastAPI(
    title=settings.APP_NAME,
    description="Music generation with webhook and poll reconciliation",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["Jobs"])
app.include_router(callbacks.router, prefix="/api/v1/callbacks", tags=["Callbacks"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for Cloud Run and monitoring.
    Returns detailed status of critical services.
    """
    status = {
        "status": "healthy",
        "version": "0.1.0",
        "environment": {
            "storage": get_storage().backend,
            "database": settings.DATABASE_URL.split(":", 1)[0],
        },
        "services": {}
    }

    # Check database connection
    try:
        from app.core.database import SessionLocal
        from sqlalchemy import text
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        status["services"]["database"] = "ok"
    except Exception as e:
        status["services"]["database"] = f"error: {str(e)}"
        status["status"] = "degraded"

    # Transcode loop is optional; report, never degrade
    manager = getattr(app.state, "transcode_manager", None)
    if manager is None or not manager.is_enabled:
        status["services"]["transcode"] = "disabled"
    else:
        status["services"]["transcode"] = "running" if manager.is_running else "stopped"
        status["services"]["transcode_jobs"] = len(manager.jobs)

    return status


@app.get("/files/{file_path:path}", tags=["Files"])
async def serve_file(file_path: str, storage=Depends(get_storage)):
    """
    Serve stored artifacts (audio, cover images).
    This proxies files from GCS/S3/local storage to the frontend.
    """
    try:
        stream = await storage.read(file_path)
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"File not found: {str(e)}")

    return StreamingResponse(
        stream,
        media_type=guess_content_type(file_path),
        headers={
            "Cache-Control": "public, max-age=3600",
            "Access-Control-Allow-Origin": "*"
        }
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"{settings.APP_NAME} - Music Generation Service",
        "docs": "/docs",
        "health": "/health",
    }
