"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from imagex.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagex.api.routes import health_router, image_router
from imagex.config import get_settings
from imagex.pipeline.handler import ImageHandler
from imagex.pipeline.pillow_engine import PillowEngine
from imagex.processing import ProcessingPool
from imagex.request.resolver import ImageRequest
from imagex.request.signature import HmacSignatureVerifier
from imagex.storage import S3Storage
from imagex.vision.rekognition import RekognitionDetector

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Wire settings and collaborators onto the application state."""
    storage = S3Storage.from_settings(settings)
    verifier = HmacSignatureVerifier(settings.signature_secret) if settings.signature_secret else None

    app.state.settings = settings
    app.state.image_request = ImageRequest(settings, storage, signature_verifier=verifier)
    app.state.image_handler = ImageHandler(
        settings,
        engine=PillowEngine(),
        storage=storage,
        detector=RekognitionDetector.from_settings(settings),
    )
    app.state.processing_pool = ProcessingPool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting imagex (buckets=%s, max_concurrent=%s, auto_webp=%s, signature=%s)",
        list(settings.allowed_buckets),
        settings.max_concurrent,
        settings.auto_webp,
        settings.enable_signature,
    )
    if not settings.allowed_buckets:
        logger.warning("No source buckets configured; every image request will fail")

    init_app_state(app, settings)

    logger.info("imagex ready")
    yield

    logger.info("Shutting down imagex")
    app.state.processing_pool.shutdown()
    logger.info("imagex shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="imagex",
        description="Image transformation service for Default, Thumbor and custom URL requests",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # Health first: the image route matches every path.
    application.include_router(health_router)
    application.include_router(image_router)
    return application


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("imagex.main:app", host=settings.host, port=settings.port)
