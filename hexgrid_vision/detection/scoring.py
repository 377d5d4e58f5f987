"""
Shared scoring primitives for grid-region proposals.

Every detector builds its confidence from the same size / aspect /
position terms so that proposals from different detectors can be
compared directly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np

from hexgrid_vision.geometry import Rect


@dataclass(frozen=True)
class RoiProposal:
    """Candidate bounding box of the hex grid."""
    bounds: Rect
    confidence: float                      # [0, 1]
    method: str                            # "edge" | "color" | ...
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bounds": self.bounds.to_dict(),
            "confidence": round(self.confidence, 4),
            "method": self.method,
        }


def clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def size_score(rect: Rect, width: int, height: int, optimal: float = 0.35) -> float:
    """1 at the optimal share of the image area, falling off linearly."""
    relative = rect.area / float(width * height) if width and height else 0.0
    return clamp01(1.0 - abs(relative - optimal) * 3.0)


def aspect_score(rect: Rect, expected: float = 1.6) -> float:
    return clamp01(1.0 - abs(rect.aspect_ratio - expected))


def position_score(rect: Rect, width: int, height: int) -> float:
    """1 when the rectangle is centred in the image."""
    c = rect.center
    dx = (c.x - width / 2.0) / (width / 2.0)
    dy = (c.y - height / 2.0) / (height / 2.0)
    return clamp01(1.0 - math.hypot(dx, dy))


def dark_ratio_score(gray: np.ndarray, rect: Rect, target: float = 0.4, level: int = 80) -> float:
    """How close the share of dark pixels inside *rect* is to *target*."""
    roi = gray[rect.y:rect.bottom, rect.x:rect.right]
    if roi.size == 0:
        return 0.0
    dark = float((roi < level).mean())
    return clamp01(1.0 - abs(dark - target) * 2.0)
