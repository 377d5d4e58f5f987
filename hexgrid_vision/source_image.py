"""
Source Image – decoded RGBA raster owned by a pipeline run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from hexgrid_vision.errors import ValidationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceImage:
    """RGBA ``uint8`` pixels, shape ``(height, width, 4)``."""
    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    @classmethod
    def from_array(cls, array: np.ndarray) -> "SourceImage":
        """Wrap a grayscale, RGB or RGBA array (channel order R, G, B, A)."""
        arr = np.asarray(array)
        if arr.ndim not in (2, 3) or arr.shape[0] == 0 or arr.shape[1] == 0:
            raise ValidationError(f"Unsupported image shape {arr.shape}")
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)

        if arr.ndim == 2:
            arr = np.repeat(arr[:, :, None], 3, axis=2)
        channels = arr.shape[2]
        if channels == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=2)
        elif channels != 4:
            raise ValidationError(f"Unsupported channel count {channels}")

        return cls(np.ascontiguousarray(arr))


def load_image(path: Union[str, Path]) -> SourceImage:
    """Decode an image file with Pillow into a :class:`SourceImage`."""
    try:
        with Image.open(path) as img:
            rgba = img.convert("RGBA")
            pixels = np.array(rgba, dtype=np.uint8)
    except (OSError, UnidentifiedImageError) as exc:
        raise ValidationError(f"Could not read image {path}: {exc}") from exc

    log.info("Loaded %s (%dx%d)", path, pixels.shape[1], pixels.shape[0])
    return SourceImage(pixels)
