"""
Classifier building blocks: the per-region view every heuristic reads,
the vote each one returns and the common base class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from hexgrid_vision.geometry import hex_mask
from hexgrid_vision.processing.quality_analyzer import luminance
from hexgrid_vision.processing.region_extractor import ExtractedRegion

OPAQUE_ALPHA: int = 128


@dataclass(frozen=True)
class ClassifierVote:
    """One classifier's opinion about one cell."""
    name: str
    selected: bool
    confidence: float                              # [0, 1]
    details: Dict[str, float] = field(default_factory=dict)

    @property
    def vote(self) -> float:
        """Probability-like vote for "selected"."""
        return self.confidence if self.selected else 1.0 - self.confidence


class RegionView:
    """Derived arrays of a normalised region, computed once per cell."""

    def __init__(self, pixels: np.ndarray, hex_radius: float) -> None:
        self.pixels = pixels
        self.size = int(pixels.shape[0])
        self.hex_radius = float(hex_radius)
        self.rgb = pixels[..., :3].astype(np.float32)
        self.luminance = luminance(pixels)
        self.opaque = pixels[..., 3] >= OPAQUE_ALPHA

    @classmethod
    def from_region(cls, region: ExtractedRegion) -> "RegionView":
        return cls(region.pixels, region.hex_radius)

    def hex(self, scale: float = 1.0) -> np.ndarray:
        return hex_mask(self.size, self.size, self.hex_radius * scale)

    def mean_luminance(self, mask: Optional[np.ndarray] = None) -> Optional[float]:
        sel = self.opaque if mask is None else (self.opaque & mask)
        if not sel.any():
            return None
        return float(self.luminance[sel].mean())

    def mean_rgb(self) -> Optional[np.ndarray]:
        if not self.opaque.any():
            return None
        return self.rgb[self.opaque].mean(axis=0)


class CellClassifier:
    """Base class for selection heuristics.

    Subclasses set ``name`` and implement :meth:`classify`; expensive
    one-off setup (templates, lookup tables) goes into :meth:`prepare`,
    which the engine calls exactly once.
    """

    name: str = "classifier"

    def prepare(self) -> None:
        return None

    def classify(self, view: RegionView) -> ClassifierVote:
        raise NotImplementedError
