"""Pydantic response schemas for the MarioVision API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class CharacterPrediction(BaseModel):
    """The character recognized in an uploaded image."""

    label: str = Field(description="Character name from the class table")
    index: int = Field(ge=0, description="Index of the label in the class table")
    confidence: float = Field(ge=0.0, le=1.0, description="Softmax probability of the label")


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int
    rejected_requests: int = Field(ge=0, description="Requests refused because no worker freed up in time")


class ModelInfo(BaseModel):
    """The configured model and its load state."""

    url: str
    runtime: str | None = Field(description="'torchscript_lite' or 'onnx' once loaded")
    path: str | None = Field(description="Local file the model was loaded from")
    loaded: bool
    device: str
    classes: list[str]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
