"""
Colour-based Grid Region Detection
==================================

The game screen has a recognisable palette: a dark "space" background
behind the grid, blue-grey UI panels around it and light hex borders.

Strategy:
  1. Sample every ``sample_step``-th pixel and label it with the nearest
     colour signature (perceptually weighted RGB distance) within that
     signature's tolerance.
  2. Connected components per label (``cv2.connectedComponentsWithStats``).
  3. Candidates:
       • *space-region* – a large background component of plausible
         size and aspect;
       • *ui-framed*    – the area enclosed by UI panels found near the
         left/right/top/bottom image edges.
  4. Score = type bonus (ui-framed 0.4, space 0.2) + 0.2·size +
     0.15·aspect + 0.15·position + 0.1·content mix.

The 16-level dominant colour histogram is attached as proposal metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from hexgrid_vision.config import RoiConfig
from hexgrid_vision.detection.scoring import (
    RoiProposal,
    aspect_score,
    clamp01,
    position_score,
    size_score,
)
from hexgrid_vision.geometry import Rect
from hexgrid_vision.source_image import SourceImage

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColorSignature:
    name: str
    rgb: Tuple[int, int, int]
    tolerance: float


DEFAULT_SIGNATURES: Tuple[ColorSignature, ...] = (
    ColorSignature("space", (20, 25, 35), 40.0),
    ColorSignature("ui", (60, 80, 120), 50.0),
    ColorSignature("border", (150, 180, 220), 60.0),
)

CHANNEL_WEIGHTS = np.array([0.3, 0.59, 0.11], dtype=np.float32)
TYPE_BONUS: Dict[str, float] = {"ui-framed": 0.4, "space-region": 0.2}


class ColorRoiDetector:
    """Locate the grid from the screen's colour layout."""

    name = "color"
    priority = 2

    def __init__(
        self,
        config: Optional[RoiConfig] = None,
        signatures: Sequence[ColorSignature] = DEFAULT_SIGNATURES,
        sample_step: int = 3,
        min_region: int = 10_000,
        max_region: int = 1_500_000,
        aspect_range: Tuple[float, float] = (1.0, 3.0),
        top_colors: int = 10,
    ) -> None:
        self.config = config or RoiConfig()
        self.signatures = tuple(signatures)
        self.sample_step = sample_step
        self.min_region = min_region
        self.max_region = max_region
        self.aspect_range = aspect_range
        self.top_colors = top_colors

    # ── Public API ─────────────────────────────────────────────────────

    def detect(self, image: SourceImage) -> Optional[RoiProposal]:
        step = self.sample_step
        sampled = np.ascontiguousarray(image.rgb[::step, ::step])
        labels = self.classify_pixels(sampled)
        h, w = image.height, image.width

        components = self._components(labels, w, h)
        candidates = self._space_candidates(components) + self._framed_candidates(components, w, h)
        if not candidates:
            log.debug("Colour ROI: no candidate regions")
            return None

        best: Optional[RoiProposal] = None
        for kind, rect in candidates:
            content = self._content_score(sampled, labels, rect)
            score = clamp01(
                TYPE_BONUS.get(kind, 0.0)
                + 0.2 * size_score(rect, w, h, self.config.optimal_relative_area)
                + 0.15 * aspect_score(rect, self.config.expected_aspect)
                + 0.15 * position_score(rect, w, h)
                + 0.1 * content
            )
            if best is None or score > best.confidence:
                best = RoiProposal(rect, score, self.name, {"strategy": kind})

        assert best is not None
        best.metadata["dominant_colors"] = self.dominant_colors(sampled)
        log.debug("Colour ROI %s (conf=%.3f)", best.bounds, best.confidence)
        return best

    def classify_pixels(self, rgb: np.ndarray) -> np.ndarray:
        """Index of the matching signature per pixel, ``-1`` for none."""
        pixels = rgb.astype(np.float32)
        distances = []
        for sig in self.signatures:
            diff = pixels - np.array(sig.rgb, dtype=np.float32)
            d = np.sqrt((diff * diff) @ CHANNEL_WEIGHTS)
            distances.append(np.where(d < sig.tolerance, d, np.inf))
        stacked = np.stack(distances)
        labels = stacked.argmin(axis=0).astype(np.int32)
        labels[np.isinf(stacked.min(axis=0))] = -1
        return labels

    def dominant_colors(self, rgb: np.ndarray) -> List[Dict[str, object]]:
        """Top colours of a 16-level quantised histogram."""
        q = (rgb.reshape(-1, 3) // 16).astype(np.int32)
        keys = q[:, 0] * 256 + q[:, 1] * 16 + q[:, 2]
        values, counts = np.unique(keys, return_counts=True)
        order = np.argsort(counts)[::-1][:self.top_colors]
        total = float(keys.size)
        out = []
        for i in order:
            k = int(values[i])
            r, g, b = (k // 256) * 16 + 8, ((k // 16) % 16) * 16 + 8, (k % 16) * 16 + 8
            out.append({"rgb": (r, g, b), "share": round(counts[i] / total, 4)})
        return out

    # ── Candidates ─────────────────────────────────────────────────────

    def _components(self, labels: np.ndarray, w: int, h: int) -> List[Tuple[str, Rect]]:
        step = self.sample_step
        found: List[Tuple[str, Rect]] = []
        for idx, sig in enumerate(self.signatures):
            mask = (labels == idx).astype(np.uint8)
            n, _, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=4)
            for comp in range(1, n):
                x, y, cw, ch, area = (int(v) for v in stats[comp])
                if area * step * step < self.min_region:
                    continue
                rect = Rect(x * step, y * step, cw * step, ch * step).clip_to(w, h)
                if rect is not None:
                    found.append((sig.name, rect))
        return found

    def _space_candidates(self, components: List[Tuple[str, Rect]]) -> List[Tuple[str, Rect]]:
        lo, hi = self.aspect_range
        return [
            ("space-region", rect)
            for name, rect in components
            if name == "space"
            and self.min_region <= rect.area <= self.max_region
            and lo <= rect.aspect_ratio <= hi
        ]

    @staticmethod
    def _framed_candidates(
        components: List[Tuple[str, Rect]], w: int, h: int,
    ) -> List[Tuple[str, Rect]]:
        panels = [rect for name, rect in components if name != "space"]
        left = [r for r in panels if r.center.x < 0.3 * w]
        right = [r for r in panels if r.center.x > 0.7 * w]
        top = [r for r in panels if r.center.y < 0.3 * h]
        bottom = [r for r in panels if r.center.y > 0.7 * h]
        if sum(1 for side in (left, right, top, bottom) if side) < 2:
            return []

        x0 = max((r.right for r in left), default=0)
        x1 = min((r.x for r in right), default=w)
        y0 = max((r.bottom for r in top), default=0)
        y1 = min((r.y for r in bottom), default=h)
        if x1 - x0 <= 0 or y1 - y0 <= 0:
            return []
        return [("ui-framed", Rect(x0, y0, x1 - x0, y1 - y0))]

    def _content_score(self, sampled: np.ndarray, labels: np.ndarray, rect: Rect) -> float:
        step = self.sample_step
        ys = slice(rect.y // step, max(rect.y // step + 1, rect.bottom // step))
        xs = slice(rect.x // step, max(rect.x // step + 1, rect.right // step))
        region_labels = labels[ys, xs]
        if region_labels.size == 0:
            return 0.0

        names = [s.name for s in self.signatures]
        space_ratio = float((region_labels == names.index("space")).mean()) if "space" in names else 0.0
        ui_ids = [i for i, n in enumerate(names) if n != "space"]
        ui_ratio = float(np.isin(region_labels, ui_ids).mean()) if ui_ids else 0.0
        bright_ratio = float((sampled[ys, xs].astype(np.float32).mean(axis=2) > 150).mean())

        score = 0.0
        if 0.3 < space_ratio < 0.8:
            score += 0.4
        if 0.05 < ui_ratio < 0.5:
            score += 0.3
        if 0.02 < bright_ratio < 0.3:
            score += 0.3
        return score
