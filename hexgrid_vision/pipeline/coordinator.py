"""
Pipeline Coordinator – Run State Machine
========================================

Sequences one recognition run on an asyncio event loop:

  1. ``start(image)``            Idle → AwaitingBounds, arms the run deadline.
  2. Grid region                 ROI detectors run concurrently; an accepted
                                 proposal (confidence ≥ 0.7) wins, otherwise
                                 the externally supplied box is used, and
                                 without one the run waits for
                                 ``bounds_resolved``.
  3. ``bounds_resolved(rect)``   → ProcessingGrid, re-arms the stage timeout
                                 and dispatches per-cell extract + recognise
                                 work in bounded batches.
  4. ``processing_finished``     → Reviewing with results, failures, stats
                                 and the review triage.
  5. ``review_confirmed``        → Complete; auto-reset to Idle after the
                                 grace period.

Design notes:
  • The coordinator is a plain object owned by its caller; listeners get
    typed messages from ``pipeline.states``.
  • Timeout and ``cancel()`` both go through ``fail()``: the timer is
    cleared, the in-flight stage task is cancelled and every buffer the
    run checked out is force-released before entering Error.
  • Invalid transition attempts return ``False``, leave the state as it
    is and are logged.
  • Cell coordinates are grid-relative; they are shifted by the resolved
    bounds' origin before extraction.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import Any, Callable, List, Mapping, Optional

from hexgrid_vision.config import PipelineConfig
from hexgrid_vision.detection.roi_detector import RoiDetector, RoiSelection
from hexgrid_vision.errors import RecognitionEngineUnavailable, StageTimeout, ValidationError
from hexgrid_vision.geometry import CellCoordinate, Rect, build_coordinate_map
from hexgrid_vision.pipeline.results import (
    CellFailure,
    FinalOutput,
    ProcessingOutcome,
    apply_review,
    review_needs,
    summarize,
)
from hexgrid_vision.pipeline.states import (
    ACTIVE_STATES,
    IDLE_STATE,
    PAYLOAD_TYPES,
    TRANSITIONS,
    AwaitingBoundsPayload,
    Completed,
    CompletePayload,
    ErrorPayload,
    Failed,
    IdlePayload,
    Payload,
    PipelineError,
    PipelineMessage,
    PipelineState,
    ProcessingPayload,
    Progress,
    ReviewPayload,
    StateChanged,
    StateKind,
)
from hexgrid_vision.processing.quality_analyzer import QualityAnalyzer
from hexgrid_vision.processing.region_extractor import RegionExtractor
from hexgrid_vision.processing.resource_pool import PoolLease, ResourcePool
from hexgrid_vision.recognition.engine import DetectionResult, RecognitionEngine
from hexgrid_vision.source_image import SourceImage

log = logging.getLogger(__name__)

Listener = Callable[[PipelineMessage], None]


class PipelineCoordinator:
    """Drive one image at a time through the recognition stages.

    Parameters
    ----------
    coordinate_map : mapping or sequence
        Grid-relative cell coordinates (see ``geometry.build_coordinate_map``).
    config : PipelineConfig, optional
    engine : RecognitionEngine, optional
        Defaults to the four built-in classifiers.
    resources : ResourcePool, optional
        Shared buffer pool and dispatcher.
    roi_detector : RoiDetector, optional
        Defaults to colour + edge detection.
    """

    def __init__(
        self,
        coordinate_map: Any,
        config: Optional[PipelineConfig] = None,
        engine: Optional[RecognitionEngine] = None,
        resources: Optional[ResourcePool] = None,
        roi_detector: Optional[RoiDetector] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.config.validate()
        self.coordinate_map = build_coordinate_map(coordinate_map)

        self.resources = resources or ResourcePool.from_config(self.config.pool)
        analyzer = QualityAnalyzer(
            self.config.quality, visibility_alpha=self.config.extraction.visibility_alpha,
        )
        self.extractor = RegionExtractor(self.config.extraction, analyzer)
        self.engine = engine if engine is not None else RecognitionEngine.from_config(
            self.config, cell_radii=[c.hex_radius for c in self.coordinate_map.values()],
        )
        self.roi_detector = roi_detector or RoiDetector(config=self.config.roi)

        self._state: PipelineState = IDLE_STATE
        self._listeners: List[Listener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._image: Optional[SourceImage] = None
        self._manual_bounds: Optional[Rect] = None
        self._last_bounds: Optional[Rect] = None
        self._lease: Optional[PoolLease] = None
        self._stage_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._deadline: Optional[float] = None
        self._run_counter = 0
        self.roi_selection: Optional[RoiSelection] = None

    # ── Observation ────────────────────────────────────────────────────

    @property
    def state(self) -> PipelineState:
        return self._state

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ── Transitions ────────────────────────────────────────────────────

    def start(self, image: SourceImage, manual_bounds: Optional[Rect] = None) -> bool:
        """Idle → AwaitingBounds.  Must be called from the event loop."""
        if self._state.kind is not StateKind.IDLE:
            return self._reject("start")

        self._loop = asyncio.get_running_loop()
        self._image = image
        self._manual_bounds = manual_bounds
        self._last_bounds = None
        self.roi_selection = None
        self._begin_run()
        return self._transition(
            StateKind.AWAITING_BOUNDS,
            AwaitingBoundsPayload((image.width, image.height), manual_bounds),
        )

    def bounds_resolved(self, rect: Rect, source: str = "manual") -> bool:
        """AwaitingBounds → ProcessingGrid; starts per-cell work."""
        if self._state.kind is not StateKind.AWAITING_BOUNDS:
            return self._reject("bounds_resolved")

        image = self._image
        assert image is not None and self._loop is not None
        if rect.is_empty() or rect.clip_to(image.width, image.height) is None:
            self.fail(
                ValidationError.code, True,
                f"Bounds {rect} do not overlap the {image.width}x{image.height} image",
            )
            return False

        self._last_bounds = rect
        self._transition(
            StateKind.PROCESSING_GRID,
            ProcessingPayload(rect, source, len(self.coordinate_map)),
        )
        remaining = self.config.processing_timeout
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - self._loop.time())
        self._arm_timer(min(self.config.processing_timeout, remaining))
        self._stage_task = self._loop.create_task(self._process_grid(rect, self._lease))
        return True

    def processing_finished(self, outcome: ProcessingOutcome) -> bool:
        """ProcessingGrid → Reviewing."""
        if self._state.kind is not StateKind.PROCESSING_GRID:
            return self._reject("processing_finished")

        self._cancel_timer()
        self._close_lease()
        review = review_needs(outcome.results, outcome.failures, self.config.consensus)
        assert self._last_bounds is not None
        self._transition(
            StateKind.REVIEWING,
            ReviewPayload(outcome.results, outcome.failures, outcome.stats,
                          review, self._last_bounds),
        )
        if self.config.auto_confirm and not review.required:
            log.info("No review required – confirming automatically")
            self.review_confirmed()
        return True

    def review_confirmed(self, final_results: Optional[Mapping[str, Any]] = None) -> bool:
        """Reviewing → Complete.

        *final_results* maps cell ids to the user's verdict (``bool``) or a
        replacement ``DetectionResult``; cells not mentioned keep the
        recognised result.
        """
        if self._state.kind is not StateKind.REVIEWING:
            return self._reject("review_confirmed")
        payload = self._state.payload
        assert isinstance(payload, ReviewPayload)

        try:
            final = apply_review(payload.results, final_results or {})
        except ValidationError as exc:
            log.warning("Review decisions rejected: %s", exc)
            return False

        stats = summarize(final, payload.failures, payload.stats.total_expected,
                          payload.stats.processing_time_ms / 1000.0)
        output = FinalOutput(final, stats)
        self._transition(StateKind.COMPLETE, CompletePayload(output))
        self._emit(Completed(output))

        assert self._loop is not None
        self._cancel_reset()
        self._reset_handle = self._loop.call_later(
            self.config.reset_grace_period, self._auto_reset,
        )
        return True

    def fail(self, reason: str, recoverable: bool, message: Optional[str] = None) -> bool:
        """Any active state → Error."""
        current = self._state.kind
        if not self._state.is_active:
            return self._reject("fail")

        self._cancel_timer()
        self._cancel_stage_task()
        self._close_lease()
        self.resources.cleanup()

        error = PipelineError(reason, message or reason, recoverable, stage=current)
        log.error("Pipeline failed in %s: %s (%s, recoverable=%s)",
                  current.value, error.message, reason, recoverable)
        self._transition(StateKind.ERROR, ErrorPayload(error))
        self._emit(Failed(error))
        return True

    def cancel(self) -> bool:
        """Abort the active run."""
        if not self._state.is_active:
            return self._reject("cancel")
        return self.fail("cancelled", True, "Run cancelled")

    def reset(self) -> bool:
        """Complete / Error → Idle, releasing the image."""
        if self._state.kind not in (StateKind.COMPLETE, StateKind.ERROR):
            return self._reject("reset")

        self._cancel_reset()
        self._cancel_timer()
        self._cancel_stage_task()
        self._close_lease()
        self._image = None
        self._manual_bounds = None
        self._last_bounds = None
        self._deadline = None
        self.roi_selection = None
        return self._transition(StateKind.IDLE, IdlePayload())

    # ── Drivers ────────────────────────────────────────────────────────

    async def run(self, image: SourceImage, bounding_box: Optional[Rect] = None) -> PipelineState:
        """Start a run and drive it until review (or an error).

        Returns the state once the automated stages settle: Reviewing,
        Complete (with ``auto_confirm``), Error, or AwaitingBounds when no
        usable grid region was found and no box was supplied.
        """
        if not self.start(image, manual_bounds=bounding_box):
            return self._state
        assert self._loop is not None
        self._stage_task = self._loop.create_task(self._acquire_bounds())
        await self.wait_until_settled()
        return self._state

    async def retry(self, bounding_box: Optional[Rect] = None) -> PipelineState:
        """Recoverable Error → AwaitingBounds, then drive the run again.

        Uses *bounding_box* if given, else the bounds of the failed
        attempt, else the originally supplied box; with none of them the
        grid region detection runs again.
        """
        error = self._state.error
        if error is None or not error.recoverable or self._image is None:
            self._reject("retry")
            return self._state

        self._loop = asyncio.get_running_loop()
        bounds = bounding_box or self._last_bounds or self._manual_bounds
        self._begin_run()
        image = self._image
        self._transition(
            StateKind.AWAITING_BOUNDS,
            AwaitingBoundsPayload((image.width, image.height), bounds),
        )
        if bounds is not None:
            self.bounds_resolved(bounds, "manual")
        else:
            self._stage_task = self._loop.create_task(self._acquire_bounds())
        await self.wait_until_settled()
        return self._state

    async def wait_until_settled(self) -> None:
        """Wait until no stage task is running."""
        while self._stage_task is not None and not self._stage_task.done():
            await asyncio.wait({self._stage_task})

    def close(self) -> None:
        """Cancel pending work and shut the worker threads down."""
        self._cancel_reset()
        self._cancel_timer()
        if self._stage_task is not None and not self._stage_task.done():
            self._stage_task.cancel()
        self._close_lease()
        self.resources.close()

    # ── Stages ─────────────────────────────────────────────────────────

    async def _acquire_bounds(self) -> None:
        image = self._image
        assert image is not None
        try:
            if self.config.auto_detect_roi and self.roi_detector.detectors:
                selection = await self.roi_detector.detect(image, self.resources.dispatcher)
                self.roi_selection = selection
                self._emit(Progress(StateKind.AWAITING_BOUNDS, 1, 1, "grid region detection finished"))
                if selection.accepted and selection.best is not None:
                    self.bounds_resolved(selection.best.bounds, "roi")
                    return
        except Exception as exc:
            log.exception("Grid region detection failed")
            self.fail("roi-detection-error", True, str(exc))
            return

        if self._manual_bounds is not None:
            log.info("Using supplied bounds %s", self._manual_bounds)
            self.bounds_resolved(self._manual_bounds, "manual")
        else:
            log.info("No usable grid region found – waiting for bounds")

    async def _process_grid(self, bounds: Rect, lease: Optional[PoolLease]) -> None:
        started = time.perf_counter()
        try:
            await self.engine.initialize()
        except RecognitionEngineUnavailable as exc:
            self.fail(exc.code, False, exc.message)
            return

        image = self._image
        assert image is not None and lease is not None
        cells = list(self.coordinate_map.values())
        tasks = [
            functools.partial(self._analyze_cell, image, cell.translated(bounds.x, bounds.y), lease)
            for cell in cells
        ]
        try:
            outcomes = await self.resources.dispatch(tasks, on_batch=self._on_batch)
        except Exception as exc:
            log.exception("Grid processing failed")
            self.fail("processing-error", True, str(exc))
            return

        results = {}
        failures = {}
        for cell, outcome in zip(cells, outcomes):
            if outcome.ok:
                results[cell.cell_id] = outcome.value
            else:
                failures[cell.cell_id] = CellFailure.from_exception(cell.cell_id, outcome.error)
                log.warning("Cell %s failed: %s", cell.cell_id, outcome.error)

        stats = summarize(results, failures, len(cells), time.perf_counter() - started)
        log.info(
            "Processed %d/%d cells  avg_conf=%.3f  failed=%d  %.0f ms",
            stats.total_analyzed, stats.total_expected, stats.average_confidence,
            stats.failed, stats.processing_time_ms,
        )
        self.processing_finished(ProcessingOutcome(results, failures, stats))

    def _analyze_cell(
        self, image: SourceImage, cell: CellCoordinate, lease: PoolLease,
    ) -> DetectionResult:
        """Worker-thread body: extract one region, recognise it, release it."""
        region = self.extractor.extract_region(image, cell, lease)
        try:
            return self.engine.recognize(region)
        finally:
            lease.release(region.pixels)

    def _on_batch(self, completed: int, total: int) -> None:
        self._emit(Progress(StateKind.PROCESSING_GRID, completed, total))

    # ── Internals ──────────────────────────────────────────────────────

    def _begin_run(self) -> None:
        assert self._loop is not None
        self._cancel_reset()
        self._run_counter += 1
        self._lease = self.resources.lease(f"run-{self._run_counter}")
        self._deadline = self._loop.time() + self.config.run_deadline
        self._arm_timer(self.config.run_deadline)

    def _transition(self, kind: StateKind, payload: Payload) -> bool:
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(payload, expected):
            raise ValidationError(
                f"{kind.value} requires {expected.__name__}, got {type(payload).__name__}"
            )
        previous = self._state
        if kind not in TRANSITIONS[previous.kind]:
            return self._reject(f"transition to {kind.value}")

        self._state = PipelineState(kind, payload)
        log.info("Pipeline %s → %s", previous.kind.value, kind.value)
        self._emit(StateChanged(previous.kind, kind, payload, self._state.error))
        return True

    def _reject(self, action: str) -> bool:
        log.warning("Rejected %s in state %s", action, self._state.kind.value)
        return False

    def _emit(self, message: PipelineMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                log.exception("Pipeline listener %r failed", listener)

    def _arm_timer(self, delay: float) -> None:
        assert self._loop is not None
        self._cancel_timer()
        self._timer = self._loop.call_later(max(0.0, delay), self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        kind = self._state.kind
        if kind in ACTIVE_STATES:
            self.fail(StageTimeout.code, True, f"Stage {kind.value} exceeded its deadline")

    def _cancel_stage_task(self) -> None:
        task = self._stage_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _close_lease(self) -> None:
        if self._lease is not None:
            self._lease.close()
            self._lease = None

    def _cancel_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _auto_reset(self) -> None:
        self._reset_handle = None
        if self._state.kind is StateKind.COMPLETE:
            self.reset()
