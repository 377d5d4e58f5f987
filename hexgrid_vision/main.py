"""
Hex Grid Recognition System – Main Entry Point
==============================================

Commands:

  1. **Recognize**   – Run the full pipeline on a screenshot and print
                       which cells are selected.
  2. **Detect-ROI**  – Run only the grid region detectors and print the
                       proposals.

Usage examples
--------------

**Recognition**::

    python hexgrid_vision.py recognize \\
        --image shot.png \\
        --cells cells.json \\
        --bbox 120,80,640,400 \\
        --json

**Grid region only**::

    python hexgrid_vision.py detect-roi --image shot.png
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace

from hexgrid_vision.config import PipelineConfig
from hexgrid_vision.errors import HexGridError
from hexgrid_vision.geometry import Rect, load_coordinate_map
from hexgrid_vision.source_image import SourceImage, load_image

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("hexgrid_vision")

EXIT_BAD_INPUT = 1
EXIT_RUN_FAILED = 2


def _load_image_or_exit(path: str) -> SourceImage:
    try:
        return load_image(path)
    except HexGridError as exc:
        log.error("Could not read image: %s (%s)", path, exc)
        sys.exit(EXIT_BAD_INPUT)


def _parse_bbox(text: str) -> Rect:
    try:
        return Rect.parse(text)
    except HexGridError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


# ═══════════════════════════════════════════════════════════════════════
# Recognition
# ═══════════════════════════════════════════════════════════════════════

async def _recognize(args: argparse.Namespace, image: SourceImage, cells) -> int:
    from hexgrid_vision.pipeline.coordinator import PipelineCoordinator
    from hexgrid_vision.pipeline.states import CompletePayload, ReviewPayload, StateKind

    base = PipelineConfig()
    config = replace(
        base,
        run_deadline=args.deadline,
        processing_timeout=min(base.processing_timeout, args.deadline),
        auto_detect_roi=not args.no_roi,
        auto_confirm=True,
        pool=replace(base.pool, max_workers=args.workers),
    )
    coordinator = PipelineCoordinator(cells, config=config)
    try:
        state = await coordinator.run(image, bounding_box=args.bbox)

        if state.kind is StateKind.AWAITING_BOUNDS:
            log.error("No usable grid region found – pass --bbox x,y,w,h")
            coordinator.cancel()
            return EXIT_RUN_FAILED
        if state.kind is StateKind.ERROR:
            error = state.error
            log.error("Recognition failed: %s", error.message if error else "unknown error")
            if args.json and error is not None:
                print(json.dumps({"error": error.to_dict()}, indent=2))
            return EXIT_RUN_FAILED

        if state.kind is StateKind.REVIEWING:
            assert isinstance(state.payload, ReviewPayload)
            review = state.payload.review
            log.warning(
                "Review suggested for %d cell(s) (high: %s, medium: %s) – accepting as is",
                len(review.items), ", ".join(review.cells("high")) or "-",
                ", ".join(review.cells("medium")) or "-",
            )
            coordinator.review_confirmed()
            state = coordinator.state

        assert isinstance(state.payload, CompletePayload)
        output = state.payload.output
    finally:
        coordinator.close()

    if args.json:
        print(json.dumps(output.to_dict(), indent=2))
        return 0

    stats = output.stats
    print("\n" + "=" * 60)
    print("  HEX GRID RECOGNITION RESULT")
    print("=" * 60)
    print(f"  Selected cells : {', '.join(output.selected_cells) or '(none)'}")
    print(f"  Analysed       : {stats.total_analyzed}/{stats.total_expected}")
    print(f"  Avg confidence : {stats.average_confidence:.2%}")
    print(f"  Ambiguous      : {stats.ambiguous}")
    if stats.failed or stats.unavailable:
        print(f"  Failed         : {stats.failed}  (no verdict: {stats.unavailable})")
    print(f"  Time           : {stats.processing_time_ms:.0f} ms")
    print("=" * 60 + "\n")
    return 0


def cmd_recognize(args: argparse.Namespace) -> None:
    """Run the recognition pipeline on an image."""
    image = _load_image_or_exit(args.image)
    try:
        cells = load_coordinate_map(args.cells)
    except (HexGridError, OSError) as exc:
        log.error("Could not read coordinate map: %s (%s)", args.cells, exc)
        sys.exit(EXIT_BAD_INPUT)

    sys.exit(asyncio.run(_recognize(args, image, cells)))


# ═══════════════════════════════════════════════════════════════════════
# Grid region detection
# ═══════════════════════════════════════════════════════════════════════

async def _detect_roi(image: SourceImage):
    from hexgrid_vision.detection.roi_detector import RoiDetector
    from hexgrid_vision.processing.resource_pool import TaskDispatcher

    dispatcher = TaskDispatcher(max_workers=2)
    try:
        return await RoiDetector().detect(image, dispatcher)
    finally:
        dispatcher.shutdown()


def cmd_detect_roi(args: argparse.Namespace) -> None:
    """Run the grid region detectors only."""
    image = _load_image_or_exit(args.image)
    selection = asyncio.run(_detect_roi(image))

    if args.json:
        print(json.dumps({
            "accepted": selection.accepted,
            "best": selection.best.to_dict() if selection.best else None,
            "alternatives": [p.to_dict() for p in selection.alternatives],
            "failures": selection.failures,
        }, indent=2))
        return

    print("\n" + "=" * 60)
    print("  GRID REGION")
    print("=" * 60)
    if selection.best is None:
        print("  No candidate region found")
    else:
        best = selection.best
        print(f"  Bounds     : {best.bounds.x},{best.bounds.y},"
              f"{best.bounds.width},{best.bounds.height}")
        print(f"  Method     : {best.method} (conf={best.confidence:.2%})")
        print(f"  Accepted   : {selection.accepted}")
        for alt in selection.alternatives:
            print(f"  Alternative: {alt.method} {alt.bounds} (conf={alt.confidence:.2%})")
    for name, reason in selection.failures.items():
        print(f"  Failed     : {name} – {reason}")
    print("=" * 60 + "\n")


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hexgrid_vision",
        description="Hexagonal glyph grid selection recognition.",
    )
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # ── recognize ──
    p_rec = sub.add_parser("recognize", help="Recognize selected cells in an image")
    p_rec.add_argument("--image", required=True,
                       help="Path to the screenshot")
    p_rec.add_argument("--cells", required=True,
                       help="JSON coordinate map (grid-relative cell centres)")
    p_rec.add_argument("--bbox", type=_parse_bbox, default=None,
                       help="Grid bounding box x,y,w,h (fallback for detection)")
    p_rec.add_argument("--no-roi", action="store_true",
                       help="Skip grid region detection and use --bbox")
    p_rec.add_argument("--deadline", type=float, default=20.0,
                       help="Run deadline in seconds")
    p_rec.add_argument("--workers", type=int, default=4,
                       help="Worker threads for per-cell analysis")
    p_rec.add_argument("--json", action="store_true",
                       help="Print the final output as JSON")

    # ── detect-roi ──
    p_roi = sub.add_parser("detect-roi", help="Detect the grid region only")
    p_roi.add_argument("--image", required=True)
    p_roi.add_argument("--json", action="store_true")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    dispatch = {
        "recognize": cmd_recognize,
        "detect-roi": cmd_detect_roi,
    }

    try:
        dispatch[args.command](args)
    except ValueError as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(EXIT_BAD_INPUT)


if __name__ == "__main__":
    main()
