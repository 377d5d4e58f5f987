"""
Grid Region Selection
=====================

Runs every registered ROI detector concurrently (through the
``TaskDispatcher``, each with its own timeout) and picks the winner:

  • highest confidence wins;
  • among proposals that clear the threshold, those within ``tie_margin``
    of the best are decided by detector priority (colour before edge);
  • the winner is *accepted* only when it clears
    ``confidence_threshold`` – otherwise the caller falls back to an
    externally supplied bounding box.

A detector that raises or times out is logged and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from hexgrid_vision.config import RoiConfig
from hexgrid_vision.detection.color_detector import ColorRoiDetector
from hexgrid_vision.detection.edge_detector import EdgeRoiDetector
from hexgrid_vision.detection.scoring import RoiProposal
from hexgrid_vision.processing.resource_pool import TaskDispatcher
from hexgrid_vision.source_image import SourceImage

log = logging.getLogger(__name__)


class GridRegionDetector(Protocol):
    name: str
    priority: int

    def detect(self, image: SourceImage) -> Optional[RoiProposal]: ...


@dataclass(frozen=True)
class RoiSelection:
    best: Optional[RoiProposal]
    accepted: bool
    alternatives: Tuple[RoiProposal, ...] = ()
    failures: Dict[str, str] = field(default_factory=dict)


class RoiDetector:
    """Concurrent grid-region detection with threshold-gated selection."""

    def __init__(
        self,
        detectors: Optional[Sequence[GridRegionDetector]] = None,
        config: Optional[RoiConfig] = None,
    ) -> None:
        self.config = config or RoiConfig()
        if detectors is None:
            detectors = [ColorRoiDetector(self.config), EdgeRoiDetector(self.config)]
        self.detectors: List[GridRegionDetector] = list(detectors)
        self._priority = {d.name: getattr(d, "priority", 0) for d in self.detectors}

    async def detect(self, image: SourceImage, dispatcher: TaskDispatcher) -> RoiSelection:
        tasks = [lambda d=d: d.detect(image) for d in self.detectors]
        outcomes = await dispatcher.dispatch(tasks, timeout=self.config.detector_timeout)

        proposals: List[RoiProposal] = []
        failures: Dict[str, str] = {}
        for detector, outcome in zip(self.detectors, outcomes):
            if not outcome.ok:
                reason = type(outcome.error).__name__
                if str(outcome.error):
                    reason = f"{reason}: {outcome.error}"
                failures[detector.name] = reason
                log.warning("ROI detector %s failed: %s", detector.name, reason)
            elif outcome.value is not None:
                proposals.append(outcome.value)

        selection = self.select(proposals)
        if failures:
            selection = RoiSelection(selection.best, selection.accepted,
                                     selection.alternatives, failures)
        return selection

    def select(self, proposals: Sequence[RoiProposal]) -> RoiSelection:
        """Pick the winning proposal (pure; no detection is run)."""
        if not proposals:
            return RoiSelection(best=None, accepted=False)

        ranked = sorted(proposals, key=lambda p: p.confidence, reverse=True)
        # Priority only breaks ties among proposals that clear the threshold.
        threshold = self.config.confidence_threshold
        eligible = [p for p in ranked if p.confidence >= threshold] or ranked
        top = eligible[0].confidence
        contenders = [p for p in eligible if top - p.confidence < self.config.tie_margin]
        best = max(
            contenders,
            key=lambda p: (self._priority.get(p.method, 0), p.confidence),
        )
        alternatives = tuple(p for p in ranked if p is not best)[:self.config.max_alternatives]
        accepted = best.confidence >= threshold

        log.info(
            "Grid region via %s: %s conf=%.3f (%s)",
            best.method, best.bounds, best.confidence,
            "accepted" if accepted else "below threshold",
        )
        return RoiSelection(best=best, accepted=accepted, alternatives=alternatives)
