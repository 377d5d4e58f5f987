"""
Edge-based Grid Region Detection
================================

Two candidate generators feed one scorer:

  Candidate A – **External contours**
      Canny edges (dilated) → external contours → bounding rectangles
      filtered by absolute area, aspect ratio and share of the image.

  Candidate B – **Brightness-discontinuity projection**
      Column and row mean brightness are differentiated; the outermost
      significant jumps bound the grid, and the regularity of the jumps
      in between (hex boundaries repeat at a fixed pitch) feeds the
      content score.

Score = 0.3·size + 0.2·aspect + 0.2·position + 0.3·content.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

from hexgrid_vision.config import RoiConfig
from hexgrid_vision.detection.scoring import (
    RoiProposal,
    aspect_score,
    clamp01,
    dark_ratio_score,
    position_score,
    size_score,
)
from hexgrid_vision.geometry import Rect
from hexgrid_vision.processing.quality_analyzer import luminance
from hexgrid_vision.source_image import SourceImage

log = logging.getLogger(__name__)

Candidate = Tuple[Rect, float, str]      # (rect, content score, strategy)


class EdgeRoiDetector:
    """Locate the grid from edges and brightness discontinuities."""

    name = "edge"
    priority = 1

    def __init__(
        self,
        config: Optional[RoiConfig] = None,
        canny_low: int = 50,
        canny_high: int = 150,
        min_area: int = 10_000,
        max_area: int = 2_000_000,
        aspect_range: Tuple[float, float] = (1.2, 2.5),
        relative_area_range: Tuple[float, float] = (0.1, 0.8),
    ) -> None:
        self.config = config or RoiConfig()
        self.canny_low = canny_low
        self.canny_high = canny_high
        self.min_area = min_area
        self.max_area = max_area
        self.aspect_range = aspect_range
        self.relative_area_range = relative_area_range

    # ── Public API ─────────────────────────────────────────────────────

    def detect(self, image: SourceImage) -> Optional[RoiProposal]:
        gray = np.clip(luminance(image.pixels) * 255.0, 0, 255).astype(np.uint8)
        h, w = gray.shape

        candidates = self._contour_candidates(gray) + self._projection_candidates(gray)
        best: Optional[RoiProposal] = None
        for rect, content, strategy in candidates:
            score = clamp01(
                0.3 * size_score(rect, w, h, self.config.optimal_relative_area)
                + 0.2 * aspect_score(rect, self.config.expected_aspect)
                + 0.2 * position_score(rect, w, h)
                + 0.3 * content
            )
            if best is None or score > best.confidence:
                best = RoiProposal(rect, score, self.name, {"strategy": strategy})

        if best is not None:
            log.debug("Edge ROI %s (conf=%.3f, %d candidates)",
                      best.bounds, best.confidence, len(candidates))
        return best

    # ── Candidate A: contours ──────────────────────────────────────────

    def _contour_candidates(self, gray: np.ndarray) -> List[Candidate]:
        h, w = gray.shape
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, self.canny_low, self.canny_high)
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        edges = cv2.dilate(edges, kernel, iterations=2)

        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        out: List[Candidate] = []
        for cnt in contours:
            x, y, cw, ch = cv2.boundingRect(cnt)
            rect = Rect(int(x), int(y), int(cw), int(ch))
            if self._plausible(rect, w, h):
                out.append((rect, dark_ratio_score(gray, rect), "contour"))
        return out

    # ── Candidate B: projection discontinuities ────────────────────────

    def _projection_candidates(self, gray: np.ndarray) -> List[Candidate]:
        h, w = gray.shape
        xs = _discontinuities(gray.mean(axis=0))
        ys = _discontinuities(gray.mean(axis=1))
        if len(xs) < 2 or len(ys) < 2:
            return []

        x0, x1 = int(xs[0]) + 1, int(xs[-1]) + 1
        y0, y1 = int(ys[0]) + 1, int(ys[-1]) + 1
        rect = Rect(x0, y0, x1 - x0, y1 - y0)
        if not self._plausible(rect, w, h):
            return []

        regularity = (_spacing_regularity(xs) + _spacing_regularity(ys)) / 2.0
        content = 0.5 * dark_ratio_score(gray, rect) + 0.5 * regularity
        return [(rect, content, "projection")]

    def _plausible(self, rect: Rect, w: int, h: int) -> bool:
        if rect.is_empty():
            return False
        relative = rect.area / float(w * h)
        lo_aspect, hi_aspect = self.aspect_range
        lo_rel, hi_rel = self.relative_area_range
        return (
            self.min_area <= rect.area <= self.max_area
            and lo_aspect <= rect.aspect_ratio <= hi_aspect
            and lo_rel <= relative <= hi_rel
        )


def _discontinuities(profile: np.ndarray, min_step: float = 4.0) -> np.ndarray:
    """Indices *i* where ``profile[i] → profile[i+1]`` jumps significantly."""
    steps = np.abs(np.diff(profile.astype(np.float64)))
    if steps.size == 0:
        return np.array([], dtype=int)
    threshold = max(min_step, float(steps.mean() + 2.0 * steps.std()))
    idx = np.flatnonzero(steps > threshold)
    if idx.size == 0:
        return idx

    merged = [int(idx[0])]
    for i in idx[1:]:
        if i - merged[-1] > 2:
            merged.append(int(i))
    return np.array(merged, dtype=int)


def _spacing_regularity(peaks: np.ndarray) -> float:
    if len(peaks) < 3:
        return 0.5
    gaps = np.diff(peaks).astype(np.float64)
    return clamp01(1.0 - gaps.std() / gaps.mean())
