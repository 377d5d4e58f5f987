"""
Quality Analyzer – Per-Region Image Quality Metrics
===================================================

Scores a normalised RGBA region on four axes and combines them into a
single quality value in [0, 1]:

  • **Sharpness** – mean Sobel gradient magnitude of luminance.
  • **Contrast**  – standard deviation of luminance.
  • **Noise**     – mean variance over non-overlapping 5×5 tiles.
  • **Artifacts** – weighted mix of 8×8 block-edge discontinuity,
    banding (staircase steps between flat runs) and the share of
    perfectly uniform 3×3 neighbourhoods.

The adaptive threshold decides whether a region is worth enhancing:
dark regions get a lower bar, already-sharp ones a higher bar.

All computations are vectorised numpy / OpenCV; luminance uses the
ITU-R BT.601 weights (0.299, 0.587, 0.114) on values scaled to [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from hexgrid_vision.config import QualityConfig
from hexgrid_vision.geometry import hex_mask

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Luminance in [0, 1] (float32) of an RGB(A) ``uint8`` array."""
    rgb = pixels[..., :3].astype(np.float32)
    return (rgb @ LUMA_WEIGHTS) / 255.0


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


# ── Result dataclass ──────────────────────────────────────────────────

@dataclass(frozen=True)
class QualityMetrics:
    sharpness: float           # raw mean gradient magnitude (luminance units)
    contrast: float            # luminance std-dev, [0, 0.5]
    noise: float               # mean tile variance
    artifacts: float           # [0, 1]
    brightness: float          # mean luminance of visible pixels
    sharpness_score: float     # min(1, sharpness / ref)
    contrast_score: float
    noise_score: float
    quality: float             # weighted combination, [0, 1]

    def to_dict(self) -> Dict[str, float]:
        return {k: round(float(v), 4) for k, v in self.__dict__.items()}


# ── Analyzer ───────────────────────────────────────────────────────────

class QualityAnalyzer:
    """Compute :class:`QualityMetrics` for normalised regions."""

    def __init__(self, config: Optional[QualityConfig] = None, visibility_alpha: int = 50) -> None:
        self.config = config or QualityConfig()
        self.visibility_alpha = visibility_alpha

    # ── Public API ─────────────────────────────────────────────────────

    def analyze(self, pixels: np.ndarray) -> QualityMetrics:
        """Score an RGBA ``uint8`` region.

        Parameters
        ----------
        pixels : np.ndarray
            ``(H, W, 4)`` region, typically the normalised cell.

        Returns
        -------
        QualityMetrics
        """
        cfg = self.config
        lum = luminance(pixels)

        sharpness = self._sharpness(lum)
        contrast = float(lum.std())
        noise = self._noise(lum)
        artifacts = self._artifacts(pixels)

        visible = pixels[..., 3] > self.visibility_alpha
        brightness = float(lum[visible].mean()) if visible.any() else 0.0

        sharpness_score = _clamp01(sharpness / cfg.sharpness_ref)
        contrast_score = _clamp01(contrast / cfg.contrast_ref)
        noise_score = _clamp01(1.0 - noise / cfg.noise_ceiling)

        w_sharp, w_contrast, w_noise, w_artifact = cfg.weights
        quality = _clamp01(
            w_sharp * sharpness_score
            + w_contrast * contrast_score
            + w_noise * noise_score
            + w_artifact * (1.0 - artifacts)
        )

        return QualityMetrics(
            sharpness=sharpness,
            contrast=contrast,
            noise=noise,
            artifacts=artifacts,
            brightness=brightness,
            sharpness_score=sharpness_score,
            contrast_score=contrast_score,
            noise_score=noise_score,
            quality=quality,
        )

    def adaptive_threshold(self, metrics: QualityMetrics) -> float:
        """Quality bar below which a region is enhanced."""
        cfg = self.config
        threshold = cfg.base_threshold
        if metrics.brightness < cfg.dark_brightness:
            threshold -= cfg.threshold_step
        if metrics.sharpness_score > cfg.sharp_score:
            threshold += cfg.threshold_step
        return float(min(cfg.max_threshold, max(cfg.min_threshold, threshold)))

    def completeness(self, pixels: np.ndarray, radius: float) -> float:
        """Fraction of the centred hexagon's pixels that are visible."""
        h, w = pixels.shape[:2]
        inside = hex_mask(w, h, radius)
        total = int(inside.sum())
        if total == 0:
            return 0.0
        visible = (pixels[..., 3] > self.visibility_alpha) & inside
        return _clamp01(visible.sum() / total)

    # ── Metrics ────────────────────────────────────────────────────────

    @staticmethod
    def _sharpness(lum: np.ndarray) -> float:
        if lum.shape[0] < 3 or lum.shape[1] < 3:
            return 0.0
        gx = cv2.Sobel(lum, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(lum, cv2.CV_32F, 0, 1, ksize=3)
        magnitude = cv2.magnitude(gx, gy)[1:-1, 1:-1]
        return float(magnitude.mean())

    def _noise(self, lum: np.ndarray) -> float:
        n = self.config.noise_window
        h, w = lum.shape
        th, tw = h // n, w // n
        if th == 0 or tw == 0:
            return float(lum.var())
        tiles = lum[:th * n, :tw * n].reshape(th, n, tw, n)
        return float(tiles.var(axis=(1, 3)).mean())

    def _artifacts(self, pixels: np.ndarray) -> float:
        w_block, w_band, w_uniform = self.config.artifact_weights
        rgb = pixels[..., :3]
        return _clamp01(
            w_block * self._block_discontinuity(rgb)
            + w_band * self._banding(rgb)
            + w_uniform * self._uniformity(rgb)
        )

    def _block_discontinuity(self, rgb: np.ndarray) -> float:
        """Mean absolute step across 8×8 block boundaries, in [0, 1]."""
        b = self.config.block_size
        img = rgb.astype(np.int16)
        h, w = img.shape[:2]
        cols = np.arange(b - 1, w - 1, b)
        rows = np.arange(b - 1, h - 1, b)
        steps = []
        if cols.size:
            steps.append(np.abs(img[:, cols] - img[:, cols + 1]).ravel())
        if rows.size:
            steps.append(np.abs(img[rows] - img[rows + 1]).ravel())
        if not steps:
            return 0.0
        return _clamp01(np.concatenate(steps).mean() / 255.0)

    @staticmethod
    def _banding(rgb: np.ndarray) -> float:
        """Share of small quantisation steps sitting between two flat runs."""
        lum = (luminance(rgb) * 255.0)
        if lum.shape[1] < 4:
            return 0.0
        prev_step = np.abs(lum[:, 1:-2] - lum[:, :-3])
        step = np.abs(lum[:, 2:-1] - lum[:, 1:-2])
        next_step = np.abs(lum[:, 3:] - lum[:, 2:-1])
        bands = (prev_step < 2) & (next_step < 2) & (step >= 3) & (step <= 12)
        return float(bands.mean())

    def _uniformity(self, rgb: np.ndarray) -> float:
        """Share of interior pixels whose 3×3 neighbourhood is uniform."""
        h, w = rgb.shape[:2]
        if h < 3 or w < 3:
            return 0.0
        tol = self.config.uniform_tolerance
        rgb = np.ascontiguousarray(rgb)
        kernel = np.ones((3, 3), dtype=np.uint8)
        hi = cv2.dilate(rgb, kernel).astype(np.int16)
        lo = cv2.erode(rgb, kernel).astype(np.int16)
        center = rgb.astype(np.int16)
        uniform = ((hi - center) <= tol) & ((center - lo) <= tol)
        uniform = uniform.all(axis=2)[1:-1, 1:-1]
        return float(uniform.mean())
