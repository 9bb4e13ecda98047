"""Tests for the MarioVision HTTP API."""

from __future__ import annotations

import asyncio
import io
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
import torch
from fastapi import FastAPI, status
from PIL import Image

from mariovision.config import DEFAULT_MODEL_URL, get_settings
from mariovision.main import create_app
from mariovision.ml.inference import InferencePool
from mariovision.ml.labels import CHARACTER_CLASSES, load_character_classes
from mariovision.ml.model_loader import ModelLoader


class FakeModule:
    def forward(self, tensor: torch.Tensor) -> torch.Tensor:
        return torch.tensor([[0.1, 0.2, 3.0, 0.0, 0.4]])


async def _fake_download(url: str) -> str:
    return "/tmp/super_mario.ptl"


def _init_app_state(app: FastAPI, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    app.state.settings = settings
    app.state.labels = load_character_classes(settings.classes_file)
    app.state.inference_pool = InferencePool(settings)
    app.state.model_loader = ModelLoader(settings)


async def _load_fake_model(app: FastAPI) -> None:
    with patch("mariovision.ml.model_loader.deserialize", return_value=FakeModule()):
        await app.state.model_loader.load(_fake_download)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png(width: int = 64, height: int = 48) -> io.BytesIO:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (220, 40, 40)).save(buf, format="PNG")
    buf.seek(0)
    return buf


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings and no model loaded."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["model_loaded"] is False
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0
        assert data["rejected_requests"] == 0

    async def test_health_reports_loaded_model(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load_fake_model(app)
        response = await client.get("/api/v1/health")
        assert response.json()["model_loaded"] is True

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, MARIOVISION_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyCharacterEndpoint:
    async def test_returns_predicted_character(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load_fake_model(app)
        response = await client.post(
            "/api/v1/classify-character",
            files={"file": ("mario.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] == CHARACTER_CLASSES[2]
        assert data["index"] == 2
        assert 0.0 < data["confidence"] <= 1.0

    async def test_sync_inference_mode(self) -> None:
        sync_app = create_app()
        _init_app_state(sync_app, MARIOVISION_INFERENCE_MODE="sync")
        await _load_fake_model(sync_app)
        async for ac in _make_client(sync_app):
            response = await ac.post(
                "/api/v1/classify-character",
                files={"file": ("mario.png", _png(300, 200), "image/png")},
            )
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["label"] == CHARACTER_CLASSES[2]

    async def test_model_not_loaded_returns_503(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-character",
            files={"file": ("mario.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "model not loaded" in response.json()["detail"].lower()

    async def test_invalid_image_returns_400(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load_fake_model(app)
        response = await client.post(
            "/api/v1/classify-character",
            files={"file": ("mario.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_too_many_pixels_returns_400(self) -> None:
        small_app = create_app()
        _init_app_state(small_app, MARIOVISION_MAX_IMAGE_PIXELS="100")
        await _load_fake_model(small_app)
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/classify-character",
                files={"file": ("mario.png", _png(20, 20), "image/png")},
            )
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert "pixel limit" in response.json()["detail"]

    async def test_file_too_large_returns_413(self) -> None:
        small_app = create_app()
        _init_app_state(small_app, MARIOVISION_MAX_FILE_SIZE="10")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/classify-character",
                files={"file": ("mario.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_busy_pool_returns_503(self) -> None:
        busy_app = create_app()
        _init_app_state(
            busy_app,
            MARIOVISION_MAX_CONCURRENT="1",
            MARIOVISION_INFERENCE_TIMEOUT="0.05",
        )
        await _load_fake_model(busy_app)
        pool: InferencePool = busy_app.state.inference_pool
        release = threading.Event()
        holder = asyncio.create_task(pool.run(release.wait, 5.0))
        while pool.active_count == 0:
            await asyncio.sleep(0.005)

        try:
            async with httpx.AsyncClient(
                transport=httpx.ASGITransport(app=busy_app),
                base_url="http://testserver",
            ) as ac:
                response = await ac.post(
                    "/api/v1/classify-character",
                    files={"file": ("mario.png", _png(), "image/png")},
                )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert "capacity" in response.json()["detail"]
            assert pool.queue_depth == 0
            assert pool.stats().rejected == 1
        finally:
            release.set()
            await holder
            pool.shutdown()


class TestModelEndpoint:
    async def test_model_info_before_load(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/model")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["loaded"] is False
        assert data["url"] == DEFAULT_MODEL_URL
        assert data["runtime"] is None
        assert data["path"] is None
        assert data["classes"] == list(CHARACTER_CLASSES)

    async def test_model_info_after_load(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load_fake_model(app)
        data = (await client.get("/api/v1/model")).json()
        assert data["loaded"] is True
        assert data["runtime"] == "torchscript_lite"
        assert data["path"] == str(Path("/tmp/super_mario.ptl"))
        assert data["device"] == "cpu"


class TestLifespan:
    async def test_lifespan_loads_model(self, tmp_path: Path) -> None:
        application = create_app()
        fetch_calls: list[str] = []

        async def fetch(self: object, url: str) -> Path:
            fetch_calls.append(url)
            return tmp_path / "super_mario.ptl"

        with (
            patch.dict(os.environ, {"MARIOVISION_MODELS_DIR": str(tmp_path)}),
            patch("mariovision.ml.model_loader.HttpModelFetcher.fetch", fetch),
            patch("mariovision.ml.model_loader.deserialize", return_value=FakeModule()),
        ):
            async with application.router.lifespan_context(application):
                assert application.state.model_loader.handle is not None
                assert application.state.labels == CHARACTER_CLASSES

        assert fetch_calls == [DEFAULT_MODEL_URL]

    async def test_lifespan_skips_load_when_disabled(self) -> None:
        application = create_app()
        with patch.dict(os.environ, {"MARIOVISION_LOAD_ON_STARTUP": "false"}):
            async with application.router.lifespan_context(application):
                assert application.state.model_loader.handle is None
