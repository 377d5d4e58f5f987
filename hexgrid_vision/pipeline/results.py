"""
Run Results – Stats, Review Triage & Final Output
=================================================

Responsibilities:
  1. Record per-cell failures next to the detection results.
  2. Summarise a run (expected vs analysed cells, average confidence,
     wall time).
  3. Decide which cells need user review and how urgently:
       • ``high``   – no verdict, failed, or confidence < 0.5
       • ``medium`` – confidence < 0.7 or flagged ambiguous
     Review is *required* when any cell needs it or the average
     confidence of the analysed cells is below 0.6.
  4. Apply the user's review decisions to produce the final output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple

from hexgrid_vision.config import ConsensusConfig
from hexgrid_vision.errors import ExtractionFailure, HexGridError, ValidationError
from hexgrid_vision.recognition.engine import DetectionResult


# ── Data structures ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CellFailure:
    cell_id: str
    code: str
    message: str

    @classmethod
    def from_exception(cls, cell_id: str, exc: BaseException) -> "CellFailure":
        code = exc.code if isinstance(exc, HexGridError) else ExtractionFailure.code
        message = str(exc) or type(exc).__name__
        return cls(cell_id, code, message)

    def to_dict(self) -> Dict[str, str]:
        return {"cell_id": self.cell_id, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class RunStats:
    total_expected: int
    total_analyzed: int                # cells with an actual verdict
    failed: int                        # cells that raised
    unavailable: int                   # cells without a verdict
    ambiguous: int
    average_confidence: float
    processing_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_expected": self.total_expected,
            "total_analyzed": self.total_analyzed,
            "failed": self.failed,
            "unavailable": self.unavailable,
            "ambiguous": self.ambiguous,
            "average_confidence": round(self.average_confidence, 4),
            "processing_time_ms": round(self.processing_time_ms, 1),
        }


@dataclass(frozen=True)
class ReviewItem:
    cell_id: str
    confidence: float
    severity: str                      # "high" | "medium"
    reason: str


@dataclass(frozen=True)
class ReviewSummary:
    required: bool
    items: Tuple[ReviewItem, ...] = ()

    def cells(self, severity: str) -> Tuple[str, ...]:
        return tuple(i.cell_id for i in self.items if i.severity == severity)


@dataclass(frozen=True)
class ProcessingOutcome:
    """Everything the grid-processing stage hands to review."""
    results: Dict[str, DetectionResult]
    failures: Dict[str, CellFailure]
    stats: RunStats


@dataclass(frozen=True)
class FinalOutput:
    detection_results: Dict[str, DetectionResult]
    stats: RunStats

    @property
    def selected_cells(self) -> Tuple[str, ...]:
        return tuple(cid for cid, r in self.detection_results.items() if r.selected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection_results": {cid: r.to_dict() for cid, r in self.detection_results.items()},
            "stats": self.stats.to_dict(),
        }


# ── Helpers ────────────────────────────────────────────────────────────

def summarize(
    results: Mapping[str, DetectionResult],
    failures: Mapping[str, CellFailure],
    total_expected: int,
    elapsed_seconds: float,
) -> RunStats:
    analyzed = [r for r in results.values() if r.available]
    avg = sum(r.confidence for r in analyzed) / len(analyzed) if analyzed else 0.0
    return RunStats(
        total_expected=total_expected,
        total_analyzed=len(analyzed),
        failed=len(failures),
        unavailable=len(results) - len(analyzed),
        ambiguous=sum(1 for r in analyzed if r.ambiguous),
        average_confidence=avg,
        processing_time_ms=elapsed_seconds * 1000.0,
    )


def review_needs(
    results: Mapping[str, DetectionResult],
    failures: Mapping[str, CellFailure],
    config: ConsensusConfig,
) -> ReviewSummary:
    items = []
    for cid, r in results.items():
        if not r.available:
            items.append(ReviewItem(cid, r.confidence, "high", r.error or "no verdict"))
        elif r.confidence < config.review_high:
            items.append(ReviewItem(cid, r.confidence, "high", "low confidence"))
        elif r.confidence < config.review_medium or r.ambiguous:
            items.append(ReviewItem(cid, r.confidence, "medium",
                                    "ambiguous" if r.ambiguous else "low confidence"))
    for cid, f in failures.items():
        items.append(ReviewItem(cid, 0.0, "high", f.code))

    analyzed = [r for r in results.values() if r.available]
    average = sum(r.confidence for r in analyzed) / len(analyzed) if analyzed else 0.0
    required = bool(items) or average < config.review_overall
    return ReviewSummary(required=required, items=tuple(items))


def apply_review(
    results: Mapping[str, DetectionResult],
    decisions: Mapping[str, Any],
) -> Dict[str, DetectionResult]:
    """Merge review decisions into *results*.

    *decisions* maps cell ids to either a ``bool`` (the user's verdict)
    or a replacement ``DetectionResult``.  Unknown cell ids raise
    ``ValidationError``.
    """
    final = dict(results)
    for cid, decision in decisions.items():
        if cid not in final:
            raise ValidationError(f"Review decision for unknown cell {cid!r}", cell_id=cid)
        if isinstance(decision, DetectionResult):
            if decision.cell_id != cid:
                raise ValidationError(f"Result for {decision.cell_id!r} filed under {cid!r}",
                                      cell_id=cid)
            final[cid] = decision
        else:
            final[cid] = final[cid].confirm(bool(decision))
    return final
