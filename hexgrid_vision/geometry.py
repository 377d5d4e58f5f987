"""
Grid Geometry – Points, Rectangles & Hexagon Membership
========================================================

Shared geometry for every stage:

  • ``Rect`` / ``Point`` value types with clipping helpers.
  • ``CellCoordinate`` – one cell of the externally supplied coordinate
    map, expressed relative to the grid bounding box.
  • ``hex_vertices`` – the six vertices of a flat-top hexagon
    (vertex *i* at angle ``i · 60°``).
  • ``point_in_polygon`` / ``hex_mask`` – even-odd ray casting.  The mask
    is the vectorised form of the same test and is used by extraction,
    completeness scoring and the classifiers alike.

Design notes:
  • Pixel *(x, y)* is tested at its centre ``(x + 0.5, y + 0.5)``.
  • Horizontal polygon edges never straddle a scan-line, so they are
    skipped instead of divided by zero.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import numpy as np

from hexgrid_vision.errors import ValidationError


# ── Value types ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer rectangle in image pixels."""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height > 0 else 0.0

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2.0, self.y + self.height / 2.0)

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def intersection(self, other: "Rect") -> Optional["Rect"]:
        x1 = max(self.x, other.x)
        y1 = max(self.y, other.y)
        x2 = min(self.right, other.right)
        y2 = min(self.bottom, other.bottom)
        if x2 <= x1 or y2 <= y1:
            return None
        return Rect(x1, y1, x2 - x1, y2 - y1)

    def clip_to(self, width: int, height: int) -> Optional["Rect"]:
        """Clip to an image of the given size; ``None`` if nothing overlaps."""
        return self.intersection(Rect(0, 0, width, height))

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rect":
        try:
            return cls(
                int(data["x"]), int(data["y"]),
                int(data["width"]), int(data["height"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed rectangle: {data!r}") from exc

    @classmethod
    def parse(cls, text: str) -> "Rect":
        """Parse ``"x,y,w,h"`` (CLI form)."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise ValidationError(f"Expected x,y,width,height – got {text!r}")
        try:
            x, y, w, h = (int(p) for p in parts)
        except ValueError as exc:
            raise ValidationError(f"Non-integer rectangle: {text!r}") from exc
        return cls(x, y, w, h)


@dataclass(frozen=True)
class CellCoordinate:
    """One hexagonal cell of the grid overlay."""
    cell_id: str
    center: Point                          # grid-space centre
    hex_radius: float                      # centre → vertex distance
    expected_bounds: Optional[Rect] = None

    def validate(self) -> None:
        if not self.cell_id:
            raise ValidationError("cell_id must be a non-empty string")
        if not (math.isfinite(self.center.x) and math.isfinite(self.center.y)):
            raise ValidationError("Cell centre must be finite", cell_id=self.cell_id)
        if not math.isfinite(self.hex_radius) or self.hex_radius <= 0:
            raise ValidationError(
                f"hex_radius must be > 0 (got {self.hex_radius})",
                cell_id=self.cell_id,
            )

    def translated(self, dx: float, dy: float) -> "CellCoordinate":
        """Return the same cell shifted by *(dx, dy)*."""
        bounds = self.expected_bounds
        if bounds is not None:
            bounds = Rect(
                bounds.x + int(round(dx)), bounds.y + int(round(dy)),
                bounds.width, bounds.height,
            )
        return CellCoordinate(
            cell_id=self.cell_id,
            center=Point(self.center.x + dx, self.center.y + dy),
            hex_radius=self.hex_radius,
            expected_bounds=bounds,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CellCoordinate":
        try:
            center = data["center"]
            if isinstance(center, Mapping):
                point = Point(float(center["x"]), float(center["y"]))
            else:
                point = Point(float(center[0]), float(center[1]))
            bounds = data.get("expected_bounds")
            cell = cls(
                cell_id=str(data["cell_id"]),
                center=point,
                hex_radius=float(data["hex_radius"]),
                expected_bounds=Rect.from_dict(bounds) if bounds else None,
            )
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed cell coordinate: {data!r}") from exc
        cell.validate()
        return cell


CoordinateMap = Dict[str, CellCoordinate]


def build_coordinate_map(cells: Any) -> CoordinateMap:
    """Normalise a mapping or a sequence of cells into a validated map.

    Accepts ``{cell_id: CellCoordinate | dict}``, a list of
    ``CellCoordinate`` / dicts, or ``{"cells": [...]}`` (the JSON form).
    """
    if isinstance(cells, Mapping) and "cells" in cells:
        cells = cells["cells"]

    if isinstance(cells, Mapping):
        items = list(cells.items())
    else:
        items = [(None, c) for c in cells]

    result: CoordinateMap = {}
    for key, raw in items:
        if isinstance(raw, CellCoordinate):
            cell = raw
        elif isinstance(raw, Mapping):
            data = dict(raw)
            if key is not None:
                data.setdefault("cell_id", key)
            cell = CellCoordinate.from_dict(data)
        else:
            raise ValidationError(f"Unsupported cell entry: {raw!r}")
        cell.validate()
        if key is not None and key != cell.cell_id:
            raise ValidationError(
                f"Map key {key!r} does not match cell_id {cell.cell_id!r}",
                cell_id=cell.cell_id,
            )
        if cell.cell_id in result:
            raise ValidationError(f"Duplicate cell_id {cell.cell_id!r}", cell_id=cell.cell_id)
        result[cell.cell_id] = cell

    if not result:
        raise ValidationError("Coordinate map is empty")
    return result


def load_coordinate_map(path: Union[str, Path]) -> CoordinateMap:
    """Load a coordinate map from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Could not read coordinate map {path}: {exc}") from exc
    return build_coordinate_map(data)


# ── Hexagon geometry ───────────────────────────────────────────────────

def hex_vertices(cx: float, cy: float, radius: float) -> np.ndarray:
    """Six vertices of a flat-top hexagon, shape ``(6, 2)``."""
    angles = np.arange(6) * (np.pi / 3.0)
    return np.stack(
        [cx + radius * np.cos(angles), cy + radius * np.sin(angles)], axis=1,
    )


def point_in_polygon(x: float, y: float, vertices: np.ndarray) -> bool:
    """Even-odd ray casting test for a single point."""
    inside = False
    n = len(vertices)
    j = n - 1
    for i in range(n):
        xi, yi = vertices[i]
        xj, yj = vertices[j]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def polygon_mask(width: int, height: int, vertices: np.ndarray) -> np.ndarray:
    """Boolean ``(height, width)`` mask of pixel centres inside *vertices*."""
    px = np.arange(width, dtype=np.float64)[None, :] + 0.5
    py = np.arange(height, dtype=np.float64)[:, None] + 0.5
    inside = np.zeros((height, width), dtype=bool)

    n = len(vertices)
    j = n - 1
    for i in range(n):
        xi, yi = vertices[i]
        xj, yj = vertices[j]
        j = i
        if yi == yj:
            continue
        straddles = (yi > py) != (yj > py)                      # (h, 1)
        x_cross = (xj - xi) * (py - yi) / (yj - yi) + xi        # (h, 1)
        inside ^= straddles & (px < x_cross)
    return inside


@lru_cache(maxsize=64)
def _cached_hex_mask(width: int, height: int, radius_q: float) -> np.ndarray:
    mask = polygon_mask(width, height, hex_vertices(width / 2.0, height / 2.0, radius_q))
    mask.setflags(write=False)
    return mask


def hex_mask(width: int, height: int, radius: float) -> np.ndarray:
    """Mask of a hexagon of *radius* centred in a ``width × height`` canvas.

    Results are cached (radius quantised to 1/100 px) and read-only.
    """
    return _cached_hex_mask(int(width), int(height), round(float(radius), 2))


def hex_ring_mask(
    width: int, height: int, outer_radius: float, inner_radius: float,
) -> np.ndarray:
    """Pixels inside the outer hexagon but outside the inner one."""
    return hex_mask(width, height, outer_radius) & ~hex_mask(width, height, inner_radius)
