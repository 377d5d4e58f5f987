"""
Recognition Engine – Classifier Registry & Per-Cell Verdicts
============================================================

Holds the registered classifiers, prepares them exactly once, and turns
an ``ExtractedRegion`` into a ``DetectionResult``.

Design notes:
  • Initialisation is a once-primitive: a lock guards the creation of a
    single shared ``concurrent.futures.Future``; every caller, sync or
    async, waits on that same future and sees the same outcome.
  • With no classifiers registered the engine never guesses – each
    result carries ``recognition-engine-unavailable`` and
    ``selected=None``.
  • A classifier that raises on one cell is excluded from that cell's
    vote and listed in ``failed_classifiers``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hexgrid_vision.config import ExtractionConfig, PipelineConfig
from hexgrid_vision.errors import RecognitionEngineUnavailable, ValidationError
from hexgrid_vision.processing.region_extractor import ExtractedRegion
from hexgrid_vision.recognition.base import CellClassifier, ClassifierVote, RegionView
from hexgrid_vision.recognition.classifiers import default_classifiers
from hexgrid_vision.recognition.consensus import ConsensusEngine

log = logging.getLogger(__name__)


# ── Result dataclass ──────────────────────────────────────────────────

@dataclass(frozen=True)
class DetectionResult:
    """Verdict for one cell."""
    cell_id: str
    selected: Optional[bool]                       # None when no verdict exists
    confidence: float                              # [0, 1]
    sub_scores: Dict[str, float]                   # classifier → vote value
    agreement: float                               # [0, 1]
    ambiguous: bool
    quality: float = 0.0
    completeness: float = 0.0
    reliable: bool = False
    enhanced: bool = False
    supporting: Tuple[str, ...] = ()
    conflicting: Tuple[str, ...] = ()
    failed_classifiers: Tuple[str, ...] = ()
    confirmed: bool = False                        # set by user review
    error: Optional[str] = None                    # error code, if any
    message: str = ""

    @property
    def available(self) -> bool:
        return self.error is None and self.selected is not None

    @classmethod
    def unavailable(
        cls,
        cell_id: str,
        message: str,
        quality: float = 0.0,
        completeness: float = 0.0,
        failed_classifiers: Tuple[str, ...] = (),
    ) -> "DetectionResult":
        return cls(
            cell_id=cell_id,
            selected=None,
            confidence=0.0,
            sub_scores={},
            agreement=0.0,
            ambiguous=True,
            quality=quality,
            completeness=completeness,
            failed_classifiers=failed_classifiers,
            error=RecognitionEngineUnavailable.code,
            message=message,
        )

    def confirm(self, selected: bool) -> "DetectionResult":
        """Result as confirmed (or corrected) by the user."""
        return replace(self, selected=selected, confidence=1.0, ambiguous=False,
                       confirmed=True, error=None, message="")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "cell_id": self.cell_id,
            "selected": self.selected,
            "confidence": round(self.confidence, 4),
            "agreement": round(self.agreement, 4),
            "ambiguous": self.ambiguous,
            "sub_scores": {k: round(v, 4) for k, v in self.sub_scores.items()},
            "quality": round(self.quality, 4),
            "completeness": round(self.completeness, 4),
            "reliable": self.reliable,
        }
        if self.confirmed:
            data["confirmed"] = True
        if self.failed_classifiers:
            data["failed_classifiers"] = list(self.failed_classifiers)
        if self.error is not None:
            data["error"] = self.error
            data["message"] = self.message
        return data


# ── Engine ─────────────────────────────────────────────────────────────

class RecognitionEngine:
    """Registry of classifiers plus consensus fusion.

    Parameters
    ----------
    classifiers : sequence of CellClassifier, optional
        ``None`` registers the four default heuristics; pass an empty
        sequence to start with none.
    consensus : ConsensusEngine, optional
    completeness_threshold : float
        Completeness at and above which confidence is not penalised.
    extraction : ExtractionConfig, optional
        Region geometry the default classifiers are prepared for.
    cell_radii : sequence of float
        Cell radii whose pattern templates are built during initialisation.
    """

    def __init__(
        self,
        classifiers: Optional[Sequence[CellClassifier]] = None,
        consensus: Optional[ConsensusEngine] = None,
        completeness_threshold: float = 0.7,
        extraction: Optional[ExtractionConfig] = None,
        cell_radii: Sequence[float] = (20.0,),
    ) -> None:
        if classifiers is None:
            classifiers = default_classifiers(extraction, cell_radii)
        self.consensus = consensus or ConsensusEngine()
        self.completeness_threshold = completeness_threshold
        self._classifiers: List[CellClassifier] = []
        self._init_lock = threading.Lock()
        self._init_future: Optional[Future] = None
        for classifier in classifiers:
            self.register(classifier)

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        classifiers: Optional[Sequence[CellClassifier]] = None,
        cell_radii: Sequence[float] = (20.0,),
    ) -> "RecognitionEngine":
        return cls(
            classifiers=classifiers,
            consensus=ConsensusEngine(config.consensus),
            completeness_threshold=config.extraction.completeness_threshold,
            extraction=config.extraction,
            cell_radii=cell_radii,
        )

    # ── Registry ───────────────────────────────────────────────────────

    @property
    def classifier_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self._classifiers)

    def register(self, classifier: CellClassifier) -> None:
        if classifier.name in self.classifier_names:
            raise ValidationError(f"Classifier {classifier.name!r} is already registered")
        if self.is_ready:
            classifier.prepare()
        self._classifiers.append(classifier)

    # ── Initialisation ─────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        fut = self._init_future
        return fut is not None and fut.done() and fut.exception() is None

    def _start_initialization(self) -> Future:
        with self._init_lock:
            if self._init_future is not None:
                return self._init_future
            fut: Future = Future()
            self._init_future = fut

        try:
            for classifier in list(self._classifiers):
                classifier.prepare()
        except Exception as exc:
            log.error("Recognition engine initialisation failed: %s", exc)
            err = RecognitionEngineUnavailable(f"Classifier preparation failed: {exc}")
            err.__cause__ = exc
            fut.set_exception(err)
        else:
            log.info("Recognition engine ready: %s", ", ".join(self.classifier_names) or "no classifiers")
            fut.set_result(self.classifier_names)
        return fut

    def ensure_initialized(self) -> Tuple[str, ...]:
        """Blocking initialisation; safe to call from worker threads."""
        return self._start_initialization().result()

    async def initialize(self) -> Tuple[str, ...]:
        """Initialise once; concurrent callers share the same outcome."""
        loop = asyncio.get_running_loop()
        fut = await loop.run_in_executor(None, self._start_initialization)
        return await asyncio.wrap_future(fut)

    # ── Recognition ────────────────────────────────────────────────────

    def recognize(self, region: ExtractedRegion) -> DetectionResult:
        """Classify one region and fuse the votes."""
        if not self._classifiers:
            return DetectionResult.unavailable(
                region.cell_id, "No classifiers registered",
                quality=region.quality.quality, completeness=region.completeness,
            )
        self.ensure_initialized()

        view = RegionView.from_region(region)
        votes: List[ClassifierVote] = []
        failed: List[str] = []
        for classifier in self._classifiers:
            try:
                votes.append(classifier.classify(view))
            except Exception as exc:
                log.warning("Classifier %s failed on cell %s: %s",
                            classifier.name, region.cell_id, exc)
                failed.append(classifier.name)

        if not votes:
            return DetectionResult.unavailable(
                region.cell_id, "Every classifier failed",
                quality=region.quality.quality, completeness=region.completeness,
                failed_classifiers=tuple(failed),
            )

        factor = min(1.0, region.completeness / self.completeness_threshold)
        verdict = self.consensus.fuse(votes, completeness_factor=factor)
        return DetectionResult(
            cell_id=region.cell_id,
            selected=verdict.selected,
            confidence=verdict.confidence,
            sub_scores=verdict.sub_scores,
            agreement=verdict.agreement,
            ambiguous=verdict.ambiguous,
            quality=region.quality.quality,
            completeness=region.completeness,
            reliable=verdict.reliable,
            enhanced=region.enhanced,
            supporting=verdict.supporting,
            conflicting=verdict.conflicting,
            failed_classifiers=tuple(failed),
        )
