"""
Selection Heuristics
====================

Four independent classifiers, each answering "is this cell selected?"
with a confidence in [0, 1]:

  • ``BrightnessClassifier``   – mean luminance against a selected /
    unselected band; values inside the ambiguous band never exceed 0.6.
  • ``ColorProfileClassifier`` – nearest reference colour among the
    selected (golden, green, purple) and unselected (grey, blue-grey,
    brown-grey) highlight profiles; confidence follows the score gap.
  • ``EdgeBorderClassifier``   – brightness of the hexagon's border ring
    plus Sobel edge strength along the hexagon boundary.
  • ``PatternClassifier``      – normalised cross-correlation against
    synthetic selected / unselected templates, searched over small
    rotations; confidence is the best correlation found.

Only opaque pixels (alpha ≥ 128) are ever measured.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from hexgrid_vision.config import ExtractionConfig
from hexgrid_vision.geometry import hex_mask, hex_ring_mask
from hexgrid_vision.recognition.base import (
    OPAQUE_ALPHA,
    CellClassifier,
    ClassifierVote,
    RegionView,
)

log = logging.getLogger(__name__)

RGB = Tuple[int, int, int]
MAX_RGB_DISTANCE = float(np.sqrt(3 * 255 ** 2))


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


# ── Brightness ─────────────────────────────────────────────────────────

class BrightnessClassifier(CellClassifier):
    name = "brightness"

    def __init__(
        self,
        selected_min: float = 0.6,
        unselected_max: float = 0.45,
        margin: float = 0.2,
    ) -> None:
        self.selected_min = selected_min
        self.unselected_max = unselected_max
        self.margin = margin

    def classify(self, view: RegionView) -> ClassifierVote:
        b = view.mean_luminance()
        if b is None:
            return ClassifierVote(self.name, False, 0.0, {"brightness": 0.0})

        center = view.mean_luminance(view.hex(0.5))
        details = {"brightness": b, "center_brightness": center if center is not None else b}

        if b >= self.selected_min:
            conf = 0.75 + 0.25 * _clamp01((b - self.selected_min) / self.margin)
            return ClassifierVote(self.name, True, conf, details)
        if b <= self.unselected_max:
            conf = 0.75 + 0.25 * _clamp01((self.unselected_max - b) / self.margin)
            return ClassifierVote(self.name, False, conf, details)

        # ambiguous band
        mid = (self.selected_min + self.unselected_max) / 2.0
        half = (self.selected_min - self.unselected_max) / 2.0
        conf = 0.3 + 0.3 * _clamp01(abs(b - mid) / half)
        return ClassifierVote(self.name, b > mid, conf, details)


# ── Colour profile ─────────────────────────────────────────────────────

SELECTED_PROFILES: Dict[str, Tuple[RGB, RGB]] = {
    "golden": ((200, 180, 120), (160, 140, 100)),
    "green": ((180, 200, 140), (140, 160, 110)),
    "purple": ((190, 170, 200), (150, 130, 160)),
}

UNSELECTED_PROFILES: Dict[str, Tuple[RGB, RGB]] = {
    "gray": ((80, 90, 100), (60, 70, 80)),
    "blue-gray": ((70, 80, 90), (50, 60, 70)),
    "brown-gray": ((90, 80, 70), (70, 60, 50)),
}


class ColorProfileClassifier(CellClassifier):
    name = "color"

    def __init__(
        self,
        selected_profiles: Optional[Dict[str, Tuple[RGB, RGB]]] = None,
        unselected_profiles: Optional[Dict[str, Tuple[RGB, RGB]]] = None,
        gap_scale: float = 0.25,
    ) -> None:
        self.selected_profiles = dict(selected_profiles or SELECTED_PROFILES)
        self.unselected_profiles = dict(unselected_profiles or UNSELECTED_PROFILES)
        self.gap_scale = gap_scale

    @staticmethod
    def _best_match(mean: np.ndarray, profiles: Dict[str, Tuple[RGB, RGB]]) -> Tuple[str, float]:
        best_name, best_sim = "", 0.0
        for name, colours in profiles.items():
            for colour in colours:
                dist = float(np.linalg.norm(mean - np.asarray(colour, dtype=np.float32)))
                sim = 1.0 - dist / MAX_RGB_DISTANCE
                if sim > best_sim:
                    best_name, best_sim = name, sim
        return best_name, best_sim

    def classify(self, view: RegionView) -> ClassifierVote:
        mean = view.mean_rgb()
        if mean is None:
            return ClassifierVote(self.name, False, 0.0)

        sel_name, sel_sim = self._best_match(mean, self.selected_profiles)
        unsel_name, unsel_sim = self._best_match(mean, self.unselected_profiles)
        gap = sel_sim - unsel_sim
        return ClassifierVote(
            self.name,
            selected=gap > 0,
            confidence=_clamp01(abs(gap) / self.gap_scale),
            details={"selected_similarity": sel_sim, "unselected_similarity": unsel_sim},
        )


# ── Edge / border ──────────────────────────────────────────────────────

class EdgeBorderClassifier(CellClassifier):
    name = "edge"

    def __init__(
        self,
        ring_ratio: float = 0.75,
        threshold: float = 0.45,
        scale: float = 0.2,
        band: float = 1.5,
    ) -> None:
        self.ring_ratio = ring_ratio
        self.threshold = threshold
        self.scale = scale
        self.band = band

    def classify(self, view: RegionView) -> ClassifierVote:
        s, r = view.size, view.hex_radius
        ring_lum = view.mean_luminance(hex_ring_mask(s, s, r, r * self.ring_ratio))
        if ring_lum is None:
            return ClassifierVote(self.name, False, 0.0)

        gx = cv2.Sobel(view.luminance, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(view.luminance, cv2.CV_32F, 0, 1, ksize=3)
        magnitude = cv2.magnitude(gx, gy)
        boundary = hex_ring_mask(s, s, r + self.band, max(0.0, r - self.band))
        edge_strength = _clamp01(magnitude[boundary].mean() / 4.0) if boundary.any() else 0.0

        score = 0.6 * ring_lum + 0.4 * edge_strength
        return ClassifierVote(
            self.name,
            selected=score > self.threshold,
            confidence=_clamp01(0.5 + abs(score - self.threshold) / (2.0 * self.scale)),
            details={"ring_brightness": ring_lum, "edge_strength": edge_strength},
        )


# ── Pattern matching ───────────────────────────────────────────────────

# (fill, ring) grey levels of the synthetic templates
SELECTED_TEMPLATES: Dict[str, Tuple[int, int]] = {
    "bright-fill": (210, 245),
    "bright-ring": (150, 240),
}
UNSELECTED_TEMPLATES: Dict[str, Tuple[int, int]] = {
    "dark-fill": (60, 60),
    "dim-ring": (50, 90),
}


@lru_cache(maxsize=16)
def _synthetic_templates(size: int, radius: float) -> Dict[str, Tuple[bool, np.ndarray]]:
    """Zero-centred templates keyed by name → (is_selected, array)."""
    inner = hex_mask(size, size, radius * 0.75)
    outer = hex_mask(size, size, radius)
    out: Dict[str, Tuple[bool, np.ndarray]] = {}
    for selected, table in ((True, SELECTED_TEMPLATES), (False, UNSELECTED_TEMPLATES)):
        for name, (fill, ring) in table.items():
            grey = np.full((size, size), 128.0, dtype=np.float32)
            grey[outer] = ring
            grey[inner] = fill
            t = (grey - 128.0) / 128.0
            t.setflags(write=False)
            out[name] = (selected, t)
    return out


class PatternClassifier(CellClassifier):
    name = "pattern"

    ROTATIONS: Tuple[float, ...] = (-5.0, -2.0, 0.0, 2.0, 5.0)

    def __init__(
        self,
        extraction: Optional[ExtractionConfig] = None,
        cell_radii: Sequence[float] = (20.0,),
        rotations: Sequence[float] = ROTATIONS,
    ) -> None:
        self.extraction = extraction or ExtractionConfig()
        self.cell_radii = tuple(sorted(set(cell_radii)))
        self.rotations = tuple(rotations)

    def template_radius(self, cell_radius: float) -> float:
        """Cache key of the templates matching cells of *cell_radius*."""
        return round(self.extraction.normalized_radius(cell_radius), 2)

    def prepare(self) -> None:
        size = self.extraction.target_size
        for radius in self.cell_radii:
            _synthetic_templates(size, self.template_radius(radius))
        log.debug("Pattern templates ready (%dpx, radii %s)", size, self.cell_radii)

    def classify(self, view: RegionView) -> ClassifierVote:
        s = view.size
        templates = _synthetic_templates(s, round(view.hex_radius, 2))
        support = view.hex()
        centered = (view.luminance * 255.0 - 128.0) / 128.0
        alpha = np.ascontiguousarray(view.pixels[..., 3])
        centre = (s / 2.0, s / 2.0)

        best_sel, best_unsel = -1.0, -1.0
        best_angle = 0.0
        for angle in self.rotations:
            if angle == 0.0:
                lum_r, alpha_r = centered, alpha
            else:
                m = cv2.getRotationMatrix2D(centre, angle, 1.0)
                lum_r = cv2.warpAffine(centered, m, (s, s), flags=cv2.INTER_LINEAR,
                                       borderMode=cv2.BORDER_CONSTANT, borderValue=0)
                alpha_r = cv2.warpAffine(alpha, m, (s, s), flags=cv2.INTER_LINEAR,
                                         borderMode=cv2.BORDER_CONSTANT, borderValue=0)
            valid = (alpha_r >= OPAQUE_ALPHA) & support
            if not valid.any():
                continue
            a = lum_r[valid]
            for selected, template in templates.values():
                corr = _correlation(a, template[valid])
                if selected and corr > best_sel:
                    best_sel, best_angle = corr, angle
                elif not selected and corr > best_unsel:
                    best_unsel = corr

        best = max(best_sel, best_unsel)
        return ClassifierVote(
            self.name,
            selected=best_sel > best_unsel,
            confidence=_clamp01(best),
            details={"selected_correlation": best_sel,
                     "unselected_correlation": best_unsel,
                     "angle": best_angle},
        )


def _correlation(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.sqrt(np.dot(a, a) * np.dot(b, b)))
    if denom < 1e-9:
        return 0.0
    return float(np.dot(a, b) / denom)


def default_classifiers(
    extraction: Optional[ExtractionConfig] = None,
    cell_radii: Sequence[float] = (20.0,),
) -> Tuple[CellClassifier, ...]:
    return (
        BrightnessClassifier(),
        ColorProfileClassifier(),
        EdgeBorderClassifier(),
        PatternClassifier(extraction, cell_radii),
    )
