"""
Pipeline States, Payloads & Messages
====================================

State graph::

    Idle ─► AwaitingBounds ─► ProcessingGrid ─► Reviewing ─► Complete ─► Idle
               │    ▲               │               │
               ▼    │               ▼               ▼
              Error ┴───────────────┴───────────────┘   Error ─► Idle

Every state carries a payload of one specific type; the coordinator
checks the type on every transition.  Listeners receive typed messages
(``StateChanged``, ``Progress``, ``Completed``, ``Failed``).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple, Type, Union

from hexgrid_vision.detection.roi_detector import RoiSelection
from hexgrid_vision.geometry import Rect
from hexgrid_vision.pipeline.results import (
    CellFailure,
    FinalOutput,
    ReviewSummary,
    RunStats,
)
from hexgrid_vision.recognition.engine import DetectionResult


class StateKind(enum.Enum):
    IDLE = "idle"
    AWAITING_BOUNDS = "awaiting-bounds"
    PROCESSING_GRID = "processing-grid"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    ERROR = "error"


ACTIVE_STATES: FrozenSet[StateKind] = frozenset({
    StateKind.AWAITING_BOUNDS,
    StateKind.PROCESSING_GRID,
    StateKind.REVIEWING,
})

TRANSITIONS: Dict[StateKind, FrozenSet[StateKind]] = {
    StateKind.IDLE: frozenset({StateKind.AWAITING_BOUNDS}),
    StateKind.AWAITING_BOUNDS: frozenset({StateKind.PROCESSING_GRID, StateKind.ERROR}),
    StateKind.PROCESSING_GRID: frozenset({StateKind.REVIEWING, StateKind.ERROR}),
    StateKind.REVIEWING: frozenset({StateKind.COMPLETE, StateKind.ERROR}),
    StateKind.COMPLETE: frozenset({StateKind.IDLE}),
    StateKind.ERROR: frozenset({StateKind.AWAITING_BOUNDS, StateKind.IDLE}),
}


# ── Payloads ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IdlePayload:
    pass


@dataclass(frozen=True)
class AwaitingBoundsPayload:
    image_size: Tuple[int, int]                    # (width, height)
    manual_bounds: Optional[Rect] = None
    roi: Optional[RoiSelection] = None


@dataclass(frozen=True)
class ProcessingPayload:
    bounds: Rect
    bounds_source: str                             # "roi" | "manual"
    total_cells: int


@dataclass(frozen=True)
class ReviewPayload:
    results: Dict[str, DetectionResult]
    failures: Dict[str, CellFailure]
    stats: RunStats
    review: ReviewSummary
    bounds: Rect


@dataclass(frozen=True)
class CompletePayload:
    output: FinalOutput


@dataclass(frozen=True)
class PipelineError:
    code: str                                      # e.g. "stage-timeout", "cancelled"
    message: str
    recoverable: bool
    stage: Optional[StateKind] = None              # state the run failed in

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "stage": self.stage.value if self.stage else None,
        }


@dataclass(frozen=True)
class ErrorPayload:
    error: PipelineError


Payload = Union[
    IdlePayload, AwaitingBoundsPayload, ProcessingPayload,
    ReviewPayload, CompletePayload, ErrorPayload,
]

PAYLOAD_TYPES: Dict[StateKind, Type] = {
    StateKind.IDLE: IdlePayload,
    StateKind.AWAITING_BOUNDS: AwaitingBoundsPayload,
    StateKind.PROCESSING_GRID: ProcessingPayload,
    StateKind.REVIEWING: ReviewPayload,
    StateKind.COMPLETE: CompletePayload,
    StateKind.ERROR: ErrorPayload,
}


@dataclass(frozen=True)
class PipelineState:
    kind: StateKind
    payload: Payload

    @property
    def error(self) -> Optional[PipelineError]:
        return self.payload.error if isinstance(self.payload, ErrorPayload) else None

    @property
    def is_active(self) -> bool:
        return self.kind in ACTIVE_STATES


IDLE_STATE = PipelineState(StateKind.IDLE, IdlePayload())


# ── Messages ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StateChanged:
    previous: StateKind
    current: StateKind
    payload: Payload
    error: Optional[PipelineError] = None


@dataclass(frozen=True)
class Progress:
    stage: StateKind
    completed: int
    total: int
    message: str = ""


@dataclass(frozen=True)
class Completed:
    output: FinalOutput


@dataclass(frozen=True)
class Failed:
    error: PipelineError


PipelineMessage = Union[StateChanged, Progress, Completed, Failed]
