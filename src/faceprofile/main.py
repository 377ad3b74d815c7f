"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from faceprofile.config import Settings
    from faceprofile.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from faceprofile.api.routes import legacy_router, router
from faceprofile.config import get_settings
from faceprofile.ml.enrollment import build_matcher
from faceprofile.ml.inference import InferencePool
from faceprofile.ml.model_manager import OnnxModelManager
from faceprofile.ml.pipeline import FaceAnalyzer

logger = logging.getLogger(__name__)

# Startup work waits longer for a pool slot than requests do.
ENROLLMENT_QUEUE_TIMEOUT: float = 600.0


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def evict_idle_models(manager: ModelManager, interval: float) -> None:
    """Periodically drop sessions that have been idle longer than the TTL."""
    while True:
        await asyncio.sleep(interval)
        closed = manager.unload_idle_models()
        if closed:
            logger.debug("Idle sweep closed %d sessions", len(closed))


def load_models(settings: Settings, manager: ModelManager) -> None:
    """Download and open every configured model so the first request does not pay for it."""
    for name in settings.active_models:
        manager.get_session(name)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load models and enroll faces on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings
    configure_logging(settings)

    logger.info(
        "Starting FaceProfile (device=%s, max_concurrent=%s, detection=%s, recognition=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.face_recognition_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager

    logger.info("Loading models")
    await inference_pool.run(load_models, settings, model_manager, timeout=ENROLLMENT_QUEUE_TIMEOUT)
    analyzer = FaceAnalyzer.from_settings(settings, model_manager)

    logger.info("Enrolling faces from %s", settings.dataset_dir)
    enroll = functools.partial(
        build_matcher,
        Path(settings.dataset_dir),
        analyzer,
        max_image_pixels=settings.max_image_pixels,
        distance_threshold=settings.match_threshold,
    )
    matcher = await inference_pool.run(enroll, timeout=ENROLLMENT_QUEUE_TIMEOUT)
    app.state.analyzer = analyzer
    app.state.face_matcher = matcher

    eviction_task: asyncio.Task[None] | None = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(evict_idle_models(model_manager, settings.model_ttl / 2))
    app.state.eviction_task = eviction_task

    logger.info("FaceProfile ready (%d labels enrolled)", len(matcher.labels))
    yield

    logger.info("Shutting down FaceProfile")
    if eviction_task is not None:
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("FaceProfile shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FaceProfile",
        description="Describes the faces in an uploaded image and matches them against enrolled people",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    application.include_router(legacy_router)
    return application


app = create_app()


def serve() -> None:
    """Console entry point: run the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("faceprofile.main:app", host=settings.host, port=settings.port)
