"""Image to tensor pipeline matching the normalisation used at training time."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image

from .types import PreprocessingError, ValidationError

INPUT_HEIGHT = 224
INPUT_WIDTH = 224
INPUT_CHANNELS = 3
INPUT_SHAPE = (1, INPUT_CHANNELS, INPUT_HEIGHT, INPUT_WIDTH)

# ImageNet statistics the classifier was trained with.
MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

# Must stay identical to the resampler used when the model was trained.
RESAMPLE = Image.Resampling.BILINEAR


@dataclass(frozen=True)
class PreprocessedTensor:
    data: np.ndarray
    shape: tuple[int, ...] = INPUT_SHAPE

    def as_input(self) -> np.ndarray:
        return self.data.reshape(self.shape)


def decode_image(
    path: str | Path,
    height: int = INPUT_HEIGHT,
    width: int = INPUT_WIDTH,
) -> bytes:
    """Decode ``path`` to interleaved RGB bytes at the model resolution."""
    try:
        with Image.open(path) as image:
            rgb = image.convert("RGB")
            resized = rgb.resize((width, height), resample=RESAMPLE)
            return resized.tobytes()
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise PreprocessingError(f"Failed to decode image {path}: {exc}") from exc


def tensor_from_pixels(
    raw: bytes,
    height: int = INPUT_HEIGHT,
    width: int = INPUT_WIDTH,
) -> PreprocessedTensor:
    """Normalise interleaved RGB bytes into a channel-planar float tensor.

    The buffer must hold exactly ``height * width * 3`` bytes; anything else is
    rejected rather than truncated or padded.
    """
    expected = height * width * INPUT_CHANNELS
    if len(raw) != expected:
        raise PreprocessingError(
            f"Decoded buffer has {len(raw)} bytes, expected {expected}"
        )
    pixels = np.frombuffer(raw, dtype=np.uint8).reshape(height, width, INPUT_CHANNELS)
    normalized = (pixels.astype(np.float32) / 255.0 - MEAN) / STD
    planar = np.ascontiguousarray(normalized.transpose(2, 0, 1), dtype=np.float32)
    return PreprocessedTensor(
        data=planar.reshape(-1),
        shape=(1, INPUT_CHANNELS, height, width),
    )


def validate_tensor(tensor: PreprocessedTensor) -> PreprocessedTensor:
    expected = int(np.prod(tensor.shape))
    if tensor.data.size != expected:
        raise ValidationError(
            f"Tensor has {tensor.data.size} values, expected {expected}"
        )
    if not np.isfinite(tensor.data).all():
        raise ValidationError("Tensor contains non-finite values")
    return tensor


def preprocess_image(path: str | Path) -> PreprocessedTensor:
    return validate_tensor(tensor_from_pixels(decode_image(path)))


__all__ = [
    "INPUT_HEIGHT",
    "INPUT_WIDTH",
    "INPUT_CHANNELS",
    "INPUT_SHAPE",
    "MEAN",
    "STD",
    "RESAMPLE",
    "PreprocessedTensor",
    "decode_image",
    "tensor_from_pixels",
    "validate_tensor",
    "preprocess_image",
]
