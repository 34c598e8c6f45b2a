"""
Avatar Generation API
FastAPI Backend Entry Point
"""

import asyncio
import io
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from avatargen.core.config import settings
from avatargen.core.logging import configure_logging
from avatargen.api import avatars
from avatargen.pipeline import Pipeline, build_pipeline
from avatargen.services.change_bus import RedisChangeBus

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".heic": "image/heic",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME}...")

    pipeline: Pipeline = getattr(app.state, "pipeline", None) or build_pipeline(settings)
    app.state.pipeline = pipeline

    # Jobs left mid-poll by a previous process
    await pipeline.orchestrator.recover()
    feed_task = asyncio.create_task(pipeline.feed.run(), name="avatar-feed")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    feed_task.cancel()
    await asyncio.gather(feed_task, return_exceptions=True)
    await pipeline.close()


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Upload a photo, get an AI-generated avatar",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(avatars.router, prefix="/api/v1/avatars", tags=["Avatars"])

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint for monitoring."""
        pipeline: Pipeline = request.app.state.pipeline
        status = {
            "status": "healthy",
            "environment": {
                "storage": pipeline.storage.backend_name,
                "document_store": type(pipeline.store).__name__,
                "submission_mode": pipeline.orchestrator.submission_mode.value,
            },
            "services": {},
            "active_jobs": len(pipeline.orchestrator.active_jobs),
        }

        try:
            await pipeline.records.list_jobs()
            status["services"]["document_store"] = "ok"
        except Exception as e:
            status["services"]["document_store"] = f"error: {str(e)}"
            status["status"] = "degraded"

        # Check Redis connection (only when it carries change notifications)
        bus = pipeline.store.bus
        if isinstance(bus, RedisChangeBus):
            redis_status = await bus.manager.health_check()
            if redis_status.get("connected"):
                status["services"]["redis"] = "ok"
            else:
                status["services"]["redis"] = f"error: {redis_status.get('error', 'not connected')}"
                status["status"] = "degraded"

        return status

    @app.get("/files/{file_path:path}", tags=["Files"])
    async def serve_file(file_path: str, request: Request):
        """
        Serve uploaded images from storage.
        This proxies files from GCS/S3/local storage so every backend has one locator format.
        """
        storage = request.app.state.pipeline.storage
        try:
            file_bytes = await storage.get_file(file_path)
        except Exception as e:
            logger.warning(f"[Files] Could not read {file_path}: {e}")
            raise HTTPException(status_code=404, detail="File not found")

        suffix = file_path[file_path.rfind("."):].lower() if "." in file_path else ""
        return StreamingResponse(
            io.BytesIO(file_bytes),
            media_type=CONTENT_TYPES.get(suffix, "image/jpeg"),
            headers={
                "Cache-Control": "public, max-age=3600",
                "Access-Control-Allow-Origin": "*"
            }
        )

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "message": settings.APP_NAME,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
