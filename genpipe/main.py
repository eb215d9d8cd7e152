"""
GenPipe API - Staged Generation Job Pipeline
FastAPI Backend Entry Point
"""

import logging
import mimetypes
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from genpipe.api import jobs
from genpipe.core.config import Settings, get_settings
from genpipe.services.storage import StorageService
from genpipe.workers.pipeline import JobPipeline, build_pipeline

VERSION = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[JobPipeline] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the app; a pre-wired pipeline can be injected (tests)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info(f"Starting {settings.APP_NAME}...")
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline(settings)
        app.state.pipeline.start()
        yield
        logger.info(f"Shutting down {settings.APP_NAME}...")
        await app.state.pipeline.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Staged generation pipeline for image, video, 3D and CAD jobs",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.settings = settings
    app.state.storage = None

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(jobs.router, prefix="/api/v1", tags=["Jobs"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """
        Health check endpoint for monitoring.
        Returns detailed status of the backends in use.
        """
        status = {
            "status": "healthy",
            "version": VERSION,
            "environment": {
                "store": settings.JOB_STORE_BACKEND,
                "events": settings.EVENT_BACKEND,
                "provider": settings.PROVIDER_BACKEND,
                "stitch": settings.STITCH_BACKEND,
                "storage": "gcs" if settings.USE_GCS else "local",
            },
            "services": {},
        }

        pipeline = app.state.pipeline
        if pipeline is not None:
            status["services"]["queue"] = pipeline.queue.stats()

        # Check database connection
        if settings.JOB_STORE_BACKEND == "sql":
            try:
                from sqlalchemy import text
                from genpipe.core.database import SessionLocal
                db = SessionLocal()
                try:
                    db.execute(text("SELECT 1"))
                finally:
                    db.close()
                status["services"]["database"] = "ok"
            except Exception as e:
                status["services"]["database"] = f"error: {str(e)}"
                status["status"] = "degraded"

        # Check Redis connection
        if settings.EVENT_BACKEND == "redis":
            from genpipe.core.redis import redis_health_check
            redis_status = await redis_health_check()
            if redis_status.get("connected"):
                status["services"]["redis"] = "ok"
                status["services"]["redis_version"] = redis_status.get("redis_version")
            else:
                status["services"]["redis"] = f"error: {redis_status.get('error', 'not connected')}"
                status["status"] = "degraded"

        return status

    def get_storage() -> StorageService:
        if app.state.storage is None:
            app.state.storage = StorageService(settings)
        return app.state.storage

    @app.get("/files/{file_path:path}", tags=["Files"])
    async def serve_file(file_path: str):
        """Serve stored artifacts (stitched videos) from storage."""
        try:
            file_bytes = await get_storage().get_file(file_path)
        except Exception as e:
            raise HTTPException(status_code=404, detail=f"File not found: {str(e)}")

        content_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        return Response(
            content=file_bytes,
            media_type=content_type,
            headers={"Cache-Control": "public, max-age=3600"},
        )

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "message": f"{settings.APP_NAME} - Staged Generation Job Pipeline",
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
