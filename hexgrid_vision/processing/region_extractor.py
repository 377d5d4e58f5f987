"""
Region Extractor – Hex Cell Crop, Mask, Normalise & Enhance
===========================================================

Per-cell pipeline:
  1. **Extract**   – square crop of side ``2r + 2·pad`` centred on the cell,
     ``pad = max(min_padding, padding_ratio · r)``.  Only the part that
     overlaps the image is copied; the rest stays transparent, so cells
     at the image border never raise.
  2. **Mask**      – zero every pixel outside the flat-top hexagon
     (ray-casting mask from ``geometry.hex_mask``).
  3. **Normalise** – resize to ``target_size × target_size``
     (``INTER_AREA`` when shrinking, ``INTER_CUBIC`` when enlarging).
  4. **Analyse**   – ``QualityAnalyzer`` metrics.
  5. **Enhance**   – only when quality is below the adaptive threshold:
     unsharp mask, contrast stretch and bilateral denoise.
  6. **Complete**  – share of visible pixels inside the hexagon.

Scratch buffers come from an *allocator* (a ``PoolLease`` during a run);
the normalised buffer is owned by the returned region and must be
released by the caller once recognition is done.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

from hexgrid_vision.config import ExtractionConfig
from hexgrid_vision.errors import ExtractionFailure
from hexgrid_vision.geometry import CellCoordinate, Rect, hex_mask
from hexgrid_vision.processing.quality_analyzer import QualityAnalyzer, QualityMetrics
from hexgrid_vision.source_image import SourceImage

log = logging.getLogger(__name__)


class BufferAllocator(Protocol):
    def acquire(self, width: int, height: int) -> np.ndarray: ...

    def release(self, buffer: np.ndarray) -> None: ...


class HeapAllocator:
    """Plain allocations, for use outside a pipeline run."""

    def acquire(self, width: int, height: int) -> np.ndarray:
        return np.zeros((height, width, 4), dtype=np.uint8)

    def release(self, buffer: np.ndarray) -> None:
        return None


# ── Result dataclass ──────────────────────────────────────────────────

@dataclass
class ExtractedRegion:
    """A normalised cell region ready for recognition."""
    cell_id: str
    pixels: np.ndarray         # (T, T, 4) RGBA, owned by the allocator
    quality: QualityMetrics    # measured before enhancement
    completeness: float        # visible share of the hexagon, [0, 1]
    confidence: float          # quality × completeness
    hex_radius: float          # hexagon radius in normalised pixels
    enhanced: bool
    crop_rect: Rect            # crop window in image space (may overhang)


# ── Extractor ──────────────────────────────────────────────────────────

class RegionExtractor:
    """Turn cell coordinates into normalised, quality-scored regions.

    Parameters
    ----------
    config : ExtractionConfig, optional
    analyzer : QualityAnalyzer, optional
        Shared analyzer; one is built from defaults if omitted.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        analyzer: Optional[QualityAnalyzer] = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.analyzer = analyzer or QualityAnalyzer(
            visibility_alpha=self.config.visibility_alpha,
        )

    def crop_size(self, radius: float) -> int:
        return self.config.crop_size(radius)

    # ── Stages ─────────────────────────────────────────────────────────

    def extract(
        self,
        image: SourceImage,
        coordinate: CellCoordinate,
        allocator: Optional[BufferAllocator] = None,
    ) -> np.ndarray:
        """Copy the cell's crop window; out-of-image parts stay transparent."""
        allocator = allocator or HeapAllocator()
        side = self.crop_size(coordinate.hex_radius)
        window = self._crop_window(coordinate, side)

        crop = allocator.acquire(side, side)
        overlap = window.clip_to(image.width, image.height)
        if overlap is not None:
            dy, dx = overlap.y - window.y, overlap.x - window.x
            crop[dy:dy + overlap.height, dx:dx + overlap.width] = image.pixels[
                overlap.y:overlap.bottom, overlap.x:overlap.right
            ]
        else:
            log.debug("Cell %s lies entirely outside the image", coordinate.cell_id)
        return crop

    @staticmethod
    def apply_hex_mask(crop: np.ndarray, radius: float) -> np.ndarray:
        """Zero every pixel outside the centred hexagon (in place)."""
        h, w = crop.shape[:2]
        crop[~hex_mask(w, h, radius)] = 0
        return crop

    @staticmethod
    def normalize(
        crop: np.ndarray,
        target_size: int,
        out: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Resize *crop* to ``target_size × target_size``."""
        interpolation = cv2.INTER_AREA if crop.shape[0] >= target_size else cv2.INTER_CUBIC
        resized = cv2.resize(crop, (target_size, target_size), interpolation=interpolation)
        if out is None:
            return resized
        out[...] = resized
        return out

    def enhance(self, pixels: np.ndarray, metrics: QualityMetrics) -> np.ndarray:
        """Return an enhanced copy of *pixels*; alpha is left untouched."""
        cfg = self.config
        alpha = pixels[..., 3]
        rgb = pixels[..., :3].astype(np.float32)

        if metrics.sharpness_score < cfg.unsharp_below_sharpness:
            blurred = cv2.GaussianBlur(rgb, (0, 0), cfg.unsharp_sigma)
            rgb = cv2.addWeighted(rgb, 1.0 + cfg.unsharp_amount, blurred, -cfg.unsharp_amount, 0)

        factor = cfg.contrast_bright if metrics.brightness > cfg.bright_level else cfg.contrast_default
        rgb = ((rgb / 255.0 - 0.5) * factor + 0.5) * 255.0
        rgb8 = np.clip(rgb, 0, 255).astype(np.uint8)

        if metrics.noise_score < cfg.denoise_below_noise_score:
            rgb8 = cv2.bilateralFilter(rgb8, 5, 30, 5)

        out = np.dstack([rgb8, alpha])
        out[alpha == 0] = 0
        return out

    # ── Full per-cell pipeline ─────────────────────────────────────────

    def extract_region(
        self,
        image: SourceImage,
        coordinate: CellCoordinate,
        allocator: Optional[BufferAllocator] = None,
    ) -> ExtractedRegion:
        """Extract, mask, normalise, score and (maybe) enhance one cell.

        Raises
        ------
        ExtractionFailure
            When OpenCV/numpy rejects the cell's data.
        """
        allocator = allocator or HeapAllocator()
        cfg = self.config
        radius = coordinate.hex_radius
        side = self.crop_size(radius)

        try:
            crop = self.extract(image, coordinate, allocator)
        except (cv2.error, ValueError) as exc:
            raise ExtractionFailure(str(exc), cell_id=coordinate.cell_id) from exc

        try:
            self.apply_hex_mask(crop, radius)
            pixels = allocator.acquire(cfg.target_size, cfg.target_size)
            try:
                self.normalize(crop, cfg.target_size, out=pixels)
                norm_radius = cfg.normalized_radius(radius)

                metrics = self.analyzer.analyze(pixels)
                enhanced = False
                if cfg.enhance and metrics.quality < self.analyzer.adaptive_threshold(metrics):
                    pixels[...] = self.enhance(pixels, metrics)
                    enhanced = True

                completeness = self.analyzer.completeness(pixels, norm_radius)
            except BaseException:
                allocator.release(pixels)
                raise
        except (cv2.error, ValueError) as exc:
            raise ExtractionFailure(str(exc), cell_id=coordinate.cell_id) from exc
        finally:
            allocator.release(crop)

        return ExtractedRegion(
            cell_id=coordinate.cell_id,
            pixels=pixels,
            quality=metrics,
            completeness=completeness,
            confidence=float(np.clip(metrics.quality * completeness, 0.0, 1.0)),
            hex_radius=norm_radius,
            enhanced=enhanced,
            crop_rect=self._crop_window(coordinate, side),
        )

    @staticmethod
    def _crop_window(coordinate: CellCoordinate, side: int) -> Rect:
        x0 = int(round(coordinate.center.x - side / 2.0))
        y0 = int(round(coordinate.center.y - side / 2.0))
        return Rect(x0, y0, side, side)
