"""Environment-based configuration for MarioVision."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL_URL = (
    "https://github.com/raedle/classify-super-mario/releases/download/v0.0.1-alpha.11/super_mario.ptl"
)


class Settings(BaseSettings):
    """Application settings loaded from MARIOVISION_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MARIOVISION_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # ML device
    device: Literal["cpu", "cuda"] = "cpu"

    # Model artifact
    model_url: str = DEFAULT_MODEL_URL
    model_runtime: Literal["auto", "torchscript_lite", "onnx"] = "auto"
    models_dir: str = "models"
    download_timeout: float = Field(default=60.0, gt=0)
    load_on_startup: bool = True

    # Label table override (None = packaged table)
    classes_file: str | None = None

    # Inference
    inference_mode: Literal["sync", "async"] = "async"
    intra_op_threads: int = Field(default=0, ge=0)
    max_concurrent: int = Field(default=2, ge=1)
    inference_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
