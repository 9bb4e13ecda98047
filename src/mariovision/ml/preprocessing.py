"""Image preprocessing pipeline.

Turns a decoded RGB image into the [1, 3, 224, 224] float tensor the
character model expects:

    blob [H, W, 3] uint8 -> permute [3, H, W] -> /255 -> normalize
    -> center crop [3, S, S] (S = min(H, W)) -> unsqueeze [1, 3, S, S]
    -> resize [1, 3, 224, 224]
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import torch
from PIL import Image, UnidentifiedImageError
from torchvision.transforms import functional as F

if TYPE_CHECKING:
    from numpy.typing import NDArray

NORMALIZE_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
NORMALIZE_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)
INPUT_SIZE: int = 224


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    Raises:
        ValueError: If the bytes are not a supported image or the image has
            more than ``max_pixels`` pixels.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if width * height > max_pixels:
            raise ValueError(f"Image is {width}x{height}, exceeding the {max_pixels} pixel limit")
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc
    return image.convert("RGB")


def image_to_blob(image: Image.Image) -> NDArray[np.uint8]:
    """Return the image pixels as an HxWx3 RGB uint8 array."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    return np.array(image, dtype=np.uint8)


def _check_shape(tensor: torch.Tensor, expected: tuple[int, ...], stage: str) -> torch.Tensor:
    if tuple(tensor.shape) != expected:
        raise ValueError(f"{stage}: expected shape {list(expected)}, got {list(tensor.shape)}")
    return tensor


def to_cropped_tensor(image: Image.Image) -> torch.Tensor:
    """Convert an image into a normalized, center-cropped [3, S, S] tensor.

    S is ``min(width, height)``.

    Raises:
        ValueError: If the image has a non-positive dimension or a stage
            produces an unexpected shape.
    """
    width, height = image.width, image.height
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
    side = min(width, height)

    blob = image_to_blob(image)
    tensor = _check_shape(torch.from_numpy(blob), (height, width, 3), "blob")
    tensor = _check_shape(tensor.permute(2, 0, 1), (3, height, width), "permute")
    tensor = tensor.div(255)
    tensor = F.normalize(tensor, mean=list(NORMALIZE_MEAN), std=list(NORMALIZE_STD))
    return _check_shape(F.center_crop(tensor, [side, side]), (3, side, side), "center_crop")


def preprocess_image(image: Image.Image) -> torch.Tensor:
    """Run the full pipeline and return the [1, 3, 224, 224] model input."""
    tensor = to_cropped_tensor(image).unsqueeze(0)
    tensor = F.resize(tensor, [INPUT_SIZE, INPUT_SIZE])
    return _check_shape(tensor, (1, 3, INPUT_SIZE, INPUT_SIZE), "resize")
