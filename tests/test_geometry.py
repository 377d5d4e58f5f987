from __future__ import annotations

import json
import math
import os
import tempfile
import unittest

import numpy as np

from hexgrid_vision.errors import ValidationError
from hexgrid_vision.geometry import (
    CellCoordinate,
    Point,
    Rect,
    build_coordinate_map,
    hex_mask,
    hex_ring_mask,
    hex_vertices,
    load_coordinate_map,
    point_in_polygon,
    polygon_mask,
)


class TestRect(unittest.TestCase):
    def test_clip_to_image(self) -> None:
        self.assertEqual(Rect(-10, -5, 30, 20).clip_to(100, 100), Rect(0, 0, 20, 15))
        self.assertIsNone(Rect(200, 200, 10, 10).clip_to(100, 100))

    def test_parse(self) -> None:
        self.assertEqual(Rect.parse("1, 2,30,40"), Rect(1, 2, 30, 40))
        with self.assertRaises(ValidationError):
            Rect.parse("1,2,3")
        with self.assertRaises(ValidationError):
            Rect.parse("a,b,c,d")

    def test_from_dict_rejects_missing_keys(self) -> None:
        with self.assertRaises(ValidationError):
            Rect.from_dict({"x": 1, "y": 2})


class TestHexGeometry(unittest.TestCase):
    def test_vertex_zero_lies_on_positive_x_axis(self) -> None:
        v = hex_vertices(10.0, 20.0, 5.0)
        self.assertEqual(v.shape, (6, 2))
        np.testing.assert_allclose(v[0], [15.0, 20.0])
        np.testing.assert_allclose(v[3], [5.0, 20.0], atol=1e-9)

    def test_point_in_polygon(self) -> None:
        v = hex_vertices(0.0, 0.0, 10.0)
        self.assertTrue(point_in_polygon(0.0, 0.0, v))
        self.assertTrue(point_in_polygon(9.0, 0.5, v))
        self.assertFalse(point_in_polygon(0.0, 9.5, v))   # above the flat top
        self.assertFalse(point_in_polygon(20.0, 0.0, v))

    def test_mask_matches_scalar_test(self) -> None:
        w, h = 23, 19
        v = hex_vertices(11.0, 9.0, 8.0)
        mask = polygon_mask(w, h, v)
        for y in range(h):
            for x in range(w):
                self.assertEqual(
                    bool(mask[y, x]), point_in_polygon(x + 0.5, y + 0.5, v),
                    msg=f"pixel ({x}, {y})",
                )

    def test_hex_mask_area(self) -> None:
        r = 20.0
        mask = hex_mask(64, 64, r)
        expected = 3.0 * math.sqrt(3.0) / 2.0 * r * r
        self.assertAlmostEqual(mask.sum() / expected, 1.0, delta=0.05)
        self.assertFalse(mask.flags.writeable)

    def test_ring_mask_excludes_inner(self) -> None:
        ring = hex_ring_mask(48, 48, 20.0, 15.0)
        self.assertFalse(ring[24, 24])
        self.assertTrue(ring.any())
        self.assertFalse((ring & hex_mask(48, 48, 15.0)).any())


class TestCoordinateMap(unittest.TestCase):
    def test_accepts_json_form(self) -> None:
        cells = build_coordinate_map({
            "cells": [
                {"cell_id": "a", "center": {"x": 10, "y": 10}, "hex_radius": 5},
                {"cell_id": "b", "center": [30, 10], "hex_radius": 5},
            ]
        })
        self.assertEqual(list(cells), ["a", "b"])
        self.assertEqual(cells["b"].center, Point(30.0, 10.0))

    def test_mapping_keys_fill_missing_ids(self) -> None:
        cells = build_coordinate_map({"a": {"center": [1, 2], "hex_radius": 3}})
        self.assertEqual(cells["a"].cell_id, "a")

    def test_rejects_duplicates_and_mismatches(self) -> None:
        cell = CellCoordinate("a", Point(0, 0), 5.0)
        with self.assertRaises(ValidationError):
            build_coordinate_map([cell, cell])
        with self.assertRaises(ValidationError):
            build_coordinate_map({"b": cell})
        with self.assertRaises(ValidationError):
            build_coordinate_map([])

    def test_rejects_non_positive_radius(self) -> None:
        with self.assertRaises(ValidationError):
            build_coordinate_map([{"cell_id": "a", "center": [0, 0], "hex_radius": 0}])

    def test_translated_moves_center_and_bounds(self) -> None:
        cell = CellCoordinate("a", Point(10, 20), 5.0, Rect(5, 15, 10, 10))
        moved = cell.translated(100, 50)
        self.assertEqual(moved.center, Point(110, 70))
        self.assertEqual(moved.expected_bounds, Rect(105, 65, 10, 10))
        self.assertEqual(moved.hex_radius, 5.0)

    def test_load_from_file(self) -> None:
        fd, path = tempfile.mkstemp(suffix=".json")
        self.addCleanup(os.remove, path)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump([{"cell_id": "x", "center": [4, 4], "hex_radius": 2}], f)
        self.assertIn("x", load_coordinate_map(path))

    def test_load_missing_file(self) -> None:
        with self.assertRaises(ValidationError):
            load_coordinate_map("/nonexistent/cells.json")


if __name__ == "__main__":
    unittest.main()
