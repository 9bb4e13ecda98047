"""Character classification: preprocessing, forward pass, and label lookup.

The same pipeline serves both inference strategies. ``classify`` calls the
pipeline on the calling thread; ``classify_async`` hands the whole pipeline
(tensor preparation and forward pass) to an async runner such as
``InferencePool.run`` (``asyncio.to_thread`` by default).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import torch

from mariovision.ml.labels import CHARACTER_CLASSES
from mariovision.ml.model_loader import ModelNotLoadedError
from mariovision.ml.preprocessing import preprocess_image

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from PIL import Image

    from mariovision.ml.model_loader import InferenceModule, ModelHandle

    AsyncRunner = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ClassificationResult:
    """The predicted character for one image."""

    label: str
    index: int
    confidence: float


class CharacterClassifier:
    """Classifies the character in an image with a loaded model."""

    def __init__(self, handle: ModelHandle | None, labels: Sequence[str] = CHARACTER_CLASSES) -> None:
        self._handle = handle
        self._labels = tuple(labels)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def predict(self, image: Image.Image) -> ClassificationResult:
        """Classify ``image`` running the forward pass on the calling thread.

        Raises:
            ModelNotLoadedError: If no model handle was provided.
        """
        module = self._require_module()
        tensor = preprocess_image(image)
        return self._to_result(module.forward(tensor))

    async def predict_async(self, image: Image.Image, run: AsyncRunner | None = None) -> ClassificationResult:
        """Classify ``image`` on a worker, awaiting the result through ``run``.

        Args:
            image: Decoded RGB image.
            run: ``async run(func, *args)`` executing ``predict`` off the
                event loop. Defaults to ``asyncio.to_thread``.

        Raises:
            ModelNotLoadedError: If no model handle was provided.
        """
        self._require_module()
        runner = run if run is not None else asyncio.to_thread
        return await runner(self.predict, image)

    def classify(self, image: Image.Image) -> str:
        """Return the name of the character in ``image``."""
        return self.predict(image).label

    async def classify_async(self, image: Image.Image, run: AsyncRunner | None = None) -> str:
        """Return the name of the character in ``image`` using async inference."""
        result = await self.predict_async(image, run)
        return result.label

    def _require_module(self) -> InferenceModule:
        if self._handle is None:
            raise ModelNotLoadedError
        return self._handle.module

    def _to_result(self, output: torch.Tensor) -> ClassificationResult:
        expected = (1, len(self._labels))
        if tuple(output.shape) != expected:
            raise ValueError(f"Model output has shape {list(output.shape)}, expected {list(expected)}")

        scores = output[0].float()
        # torch.argmax returns the first index among equal maxima
        index = int(torch.argmax(scores).item())
        confidence = float(torch.softmax(scores, dim=0)[index].item())
        return ClassificationResult(label=self._labels[index], index=index, confidence=confidence)


def classify_character(image: Image.Image, handle: ModelHandle | None) -> str:
    """Classify ``image`` with the model behind ``handle``."""
    return CharacterClassifier(handle).classify(image)


async def classify_character_async(
    image: Image.Image,
    handle: ModelHandle | None,
    run: AsyncRunner | None = None,
) -> str:
    """Classify ``image`` on a worker awaited through ``run``."""
    return await CharacterClassifier(handle).classify_async(image, run)
