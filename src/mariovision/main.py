"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mariovision.api.routes import router
from mariovision.config import get_settings
from mariovision.ml.inference import InferencePool
from mariovision.ml.labels import load_character_classes
from mariovision.ml.model_loader import ModelLoader

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting MarioVision (device=%s, model=%s, runtime=%s, inference=%s, max_concurrent=%s)",
        settings.device,
        settings.model_url,
        settings.model_runtime,
        settings.inference_mode,
        settings.max_concurrent,
    )

    app.state.labels = load_character_classes(settings.classes_file)
    app.state.model_loader = ModelLoader(settings)
    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    try:
        if settings.load_on_startup:
            await app.state.model_loader.load()
        logger.info("MarioVision ready (%d classes)", len(app.state.labels))
        yield
    finally:
        logger.info("Shutting down MarioVision")
        inference_pool.shutdown()
        logger.info("MarioVision shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="MarioVision",
        description="Video-game character classification API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
