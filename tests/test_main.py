from __future__ import annotations

import contextlib
import io
import json
import os
import tempfile
import unittest
from unittest import mock

from PIL import Image

from hexgrid_vision.geometry import Rect
from hexgrid_vision.main import build_parser, main

from synthetic import checkerboard, grid_bounds, grid_cells, grid_image


class TestParser(unittest.TestCase):
    def test_bbox_is_parsed(self) -> None:
        args = build_parser().parse_args(
            ["recognize", "--image", "a.png", "--cells", "c.json", "--bbox", "1,2,3,4"],
        )
        self.assertEqual(args.bbox, Rect(1, 2, 3, 4))
        self.assertEqual(args.deadline, 20.0)

    def test_bad_bbox_exits(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(
                ["recognize", "--image", "a.png", "--cells", "c.json", "--bbox", "1,2"],
            )


class TestRecognizeCommand(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        image, self.expected = grid_image(checkerboard)
        self.image_path = os.path.join(self.tmp.name, "grid.png")
        Image.fromarray(image.pixels).save(self.image_path)
        self.cells_path = os.path.join(self.tmp.name, "cells.json")
        with open(self.cells_path, "w", encoding="utf-8") as f:
            json.dump({"cells": [
                {"cell_id": c.cell_id, "center": [c.center.x, c.center.y],
                 "hex_radius": c.hex_radius}
                for c in grid_cells()
            ]}, f)

    def run_main(self, *argv: str):
        out = io.StringIO()
        with mock.patch("sys.argv", ["hexgrid_vision", *argv]), \
                contextlib.redirect_stdout(out), \
                self.assertRaises(SystemExit) as exit_info:
            main()
        return exit_info.exception.code, out.getvalue()

    def test_json_output(self) -> None:
        b = grid_bounds()
        code, out = self.run_main(
            "recognize", "--image", self.image_path, "--cells", self.cells_path,
            "--bbox", f"{b.x},{b.y},{b.width},{b.height}", "--no-roi", "--json",
        )
        self.assertEqual(code, 0)
        data = json.loads(out)
        selected = {cid: r["selected"] for cid, r in data["detection_results"].items()}
        self.assertEqual(selected, self.expected)
        self.assertEqual(data["stats"]["total_expected"], 9)

    def test_unreadable_image_exits_with_1(self) -> None:
        code, _ = self.run_main(
            "recognize", "--image", os.path.join(self.tmp.name, "missing.png"),
            "--cells", self.cells_path,
        )
        self.assertEqual(code, 1)

    def test_bounds_outside_image_exit_with_2(self) -> None:
        code, _ = self.run_main(
            "recognize", "--image", self.image_path, "--cells", self.cells_path,
            "--bbox", "9000,9000,50,50", "--no-roi",
        )
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
