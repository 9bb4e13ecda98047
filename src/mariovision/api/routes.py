"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, UploadFile, status

from mariovision.api.schemas import (
    CharacterPrediction,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
)
from mariovision.ml.character_classifier import CharacterClassifier
from mariovision.ml.model_loader import ModelNotLoadedError
from mariovision.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from mariovision.config import Settings
    from mariovision.ml.inference import InferencePool
    from mariovision.ml.model_loader import ModelLoader

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_loader(request: Request) -> ModelLoader:
    loader: ModelLoader = request.app.state.model_loader
    return loader


def _get_labels(request: Request) -> tuple[str, ...]:
    labels: tuple[str, ...] = request.app.state.labels
    return labels


@router.post(
    "/classify-character",
    response_model=CharacterPrediction,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Identify the character in an image",
)
async def classify_character(request: Request, file: UploadFile) -> CharacterPrediction:
    """Classify an uploaded image and return the recognized character."""
    settings = _get_settings(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        if settings.inference_mode == "async":
            image = await asyncio.to_thread(decode_image, data, settings.max_image_pixels)
        else:
            image = decode_image(data, settings.max_image_pixels)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    classifier = CharacterClassifier(_get_model_loader(request).handle, _get_labels(request))
    try:
        if settings.inference_mode == "async":
            result = await classifier.predict_async(image, run=_get_inference_pool(request).run)
        else:
            result = classifier.predict(image)
    except ModelNotLoadedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference capacity exhausted, retry later",
        ) from exc

    logger.debug("Classified %s as %s (%.3f)", file.filename, result.label, result.confidence)
    return CharacterPrediction(label=result.label, index=result.index, confidence=result.confidence)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    stats = _get_inference_pool(request).stats()
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=_get_model_loader(request).handle is not None,
        concurrent_requests=stats.active,
        queue_depth=stats.waiting,
        rejected_requests=stats.rejected,
    )


@router.get(
    "/model",
    response_model=ModelInfo,
    summary="Describe the configured model",
)
async def model_info(request: Request) -> ModelInfo:
    """Return the model source, runtime, and class table."""
    settings = _get_settings(request)
    handle = _get_model_loader(request).handle
    return ModelInfo(
        url=handle.url if handle is not None else settings.model_url,
        runtime=handle.runtime.value if handle is not None else None,
        path=str(handle.path) if handle is not None else None,
        loaded=handle is not None,
        device=settings.device,
        classes=list(_get_labels(request)),
    )
