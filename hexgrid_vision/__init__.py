"""
Hex Grid Recognition System
===========================

Reads the selection state of every cell in a fixed-size hexagonal glyph
grid from a screenshot.

Architecture:
    1. Grid Region      – colour + edge ROI detectors, manual box fallback
    2. Region Extraction – per-cell crop, hex mask, resize to 48×48
    3. Quality Analysis  – sharpness / contrast / noise / artefacts
    4. Recognition       – four heuristics fused by weighted consensus
    5. Review            – triage of low-confidence cells, final output
"""

__version__ = "1.0.0"
