from __future__ import annotations

import asyncio
import time
import unittest
from dataclasses import replace
from typing import List, Optional

from hexgrid_vision.config import PipelineConfig, PoolConfig
from hexgrid_vision.detection.roi_detector import RoiDetector
from hexgrid_vision.detection.scoring import RoiProposal
from hexgrid_vision.errors import RecognitionEngineUnavailable, ResourceExhaustion
from hexgrid_vision.geometry import Rect
from hexgrid_vision.pipeline.coordinator import PipelineCoordinator
from hexgrid_vision.pipeline.states import (
    TRANSITIONS,
    Completed,
    Failed,
    ProcessingPayload,
    Progress,
    ReviewPayload,
    StateChanged,
    StateKind,
)
from hexgrid_vision.recognition.base import CellClassifier, ClassifierVote, RegionView
from hexgrid_vision.recognition.engine import RecognitionEngine
from hexgrid_vision.source_image import SourceImage

from synthetic import all_selected, checkerboard, grid_bounds, grid_cells, grid_image


class SlowClassifier(CellClassifier):
    name = "slow"

    def __init__(self, delay: float) -> None:
        self.delay = delay

    def classify(self, view: RegionView) -> ClassifierVote:
        time.sleep(self.delay)
        return ClassifierVote(self.name, True, 1.0)


class BrokenSetupClassifier(CellClassifier):
    name = "broken-setup"

    def prepare(self) -> None:
        raise OSError("template missing")

    def classify(self, view: RegionView) -> ClassifierVote:
        return ClassifierVote(self.name, True, 1.0)


class LowConfidenceDetector:
    name = "color"
    priority = 2

    def detect(self, image: SourceImage) -> Optional[RoiProposal]:
        return RoiProposal(Rect(0, 0, image.width, image.height), 0.3, self.name)


class ConfidentDetector:
    name = "color"
    priority = 2

    def detect(self, image: SourceImage) -> Optional[RoiProposal]:
        return RoiProposal(grid_bounds(), 0.95, self.name)


MANUAL = PipelineConfig(auto_detect_roi=False)


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    def make(self, config: PipelineConfig = MANUAL, **kwargs) -> PipelineCoordinator:
        coordinator = PipelineCoordinator(grid_cells(), config=config, **kwargs)
        self.addCleanup(coordinator.close)
        self.messages: List[object] = []
        coordinator.add_listener(self.messages.append)
        return coordinator

    def transitions(self) -> List[tuple]:
        return [(m.previous, m.current) for m in self.messages if isinstance(m, StateChanged)]


class TestScenarios(CoordinatorTestCase):
    async def test_all_selected_grid(self) -> None:
        image, expected = grid_image(all_selected)
        coordinator = self.make()

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.REVIEWING)
        payload = state.payload
        self.assertIsInstance(payload, ReviewPayload)
        self.assertEqual(set(payload.results), set(expected))
        for cid, result in payload.results.items():
            self.assertTrue(result.selected, msg=cid)
            self.assertGreater(result.confidence, 0.8, msg=cid)
            self.assertLessEqual(result.confidence, 1.0)
            self.assertFalse(result.ambiguous, msg=cid)
        self.assertEqual(payload.stats.total_expected, 9)
        self.assertEqual(payload.stats.total_analyzed, 9)
        self.assertEqual(payload.failures, {})

        self.assertTrue(coordinator.review_confirmed())
        self.assertIs(coordinator.state.kind, StateKind.COMPLETE)
        completed = [m for m in self.messages if isinstance(m, Completed)]
        self.assertEqual(len(completed), 1)
        self.assertEqual(len(completed[0].output.selected_cells), 9)
        self.assertEqual(self.transitions(), [
            (StateKind.IDLE, StateKind.AWAITING_BOUNDS),
            (StateKind.AWAITING_BOUNDS, StateKind.PROCESSING_GRID),
            (StateKind.PROCESSING_GRID, StateKind.REVIEWING),
            (StateKind.REVIEWING, StateKind.COMPLETE),
        ])
        self.assertEqual(coordinator.resources.buffers.active_count, 0)

    async def test_checkerboard_grid(self) -> None:
        image, expected = grid_image(checkerboard)
        coordinator = self.make()

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.REVIEWING)
        selected = {cid: r.selected for cid, r in state.payload.results.items()}
        self.assertEqual(selected, expected)
        for cid, result in state.payload.results.items():
            self.assertFalse(result.ambiguous, msg=cid)
        progress = [m for m in self.messages if isinstance(m, Progress)]
        self.assertEqual(progress[-1].completed, 9)
        self.assertEqual(progress[-1].total, 9)

    async def test_run_deadline_times_out(self) -> None:
        image, _ = grid_image(all_selected)
        engine = RecognitionEngine(classifiers=[SlowClassifier(0.3)])
        coordinator = self.make(replace(MANUAL, run_deadline=0.01), engine=engine)

        started = time.monotonic()
        state = await coordinator.run(image, bounding_box=grid_bounds())
        elapsed = time.monotonic() - started

        self.assertIs(state.kind, StateKind.ERROR)
        self.assertLess(elapsed, 0.25)
        self.assertEqual(state.error.code, "stage-timeout")
        self.assertTrue(state.error.recoverable)
        failed = [m for m in self.messages if isinstance(m, Failed)]
        self.assertEqual(len(failed), 1)
        self.assertEqual(coordinator.resources.buffers.active_count, 0)

    async def test_processing_timeout_times_out(self) -> None:
        image, _ = grid_image(all_selected)
        engine = RecognitionEngine(classifiers=[SlowClassifier(0.3)])
        coordinator = self.make(replace(MANUAL, processing_timeout=0.001), engine=engine)

        started = time.monotonic()
        state = await coordinator.run(image, bounding_box=grid_bounds())
        elapsed = time.monotonic() - started

        self.assertIs(state.kind, StateKind.ERROR)
        self.assertLess(elapsed, 0.25)
        self.assertEqual(state.error.code, "stage-timeout")
        self.assertIs(state.error.stage, StateKind.PROCESSING_GRID)
        self.assertTrue(state.error.recoverable)
        self.assertEqual(coordinator.resources.buffers.active_count, 0)

    async def test_per_cell_exhaustion_is_isolated(self) -> None:
        image, expected = grid_image(all_selected)
        config = replace(MANUAL, pool=PoolConfig(max_memory_bytes=15000))
        coordinator = self.make(config)

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.REVIEWING)
        payload = state.payload
        self.assertEqual(set(payload.failures), set(expected))
        for cid, failure in payload.failures.items():
            self.assertEqual(failure.cell_id, cid)
            self.assertEqual(failure.code, ResourceExhaustion.code)
        self.assertEqual(payload.stats.total_expected, 9)
        self.assertEqual(payload.stats.failed, 9)
        self.assertLess(payload.stats.total_analyzed, payload.stats.total_expected)
        self.assertTrue(payload.review.required)
        self.assertEqual(coordinator.resources.buffers.active_count, 0)

    async def test_low_confidence_roi_falls_back_to_manual_bounds(self) -> None:
        image, expected = grid_image(all_selected)
        detector = RoiDetector(detectors=[LowConfidenceDetector()])
        coordinator = self.make(PipelineConfig(), roi_detector=detector)

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.REVIEWING)
        self.assertFalse(coordinator.roi_selection.accepted)
        processing = [m.payload for m in self.messages
                      if isinstance(m, StateChanged) and m.current is StateKind.PROCESSING_GRID]
        self.assertIsInstance(processing[0], ProcessingPayload)
        self.assertEqual(processing[0].bounds_source, "manual")
        self.assertEqual(processing[0].bounds, grid_bounds())
        self.assertEqual(set(state.payload.results), set(expected))

    async def test_accepted_roi_is_used(self) -> None:
        image, _ = grid_image(all_selected)
        detector = RoiDetector(detectors=[ConfidentDetector()])
        coordinator = self.make(PipelineConfig(), roi_detector=detector)

        state = await coordinator.run(image)

        self.assertIs(state.kind, StateKind.REVIEWING)
        self.assertEqual(state.payload.bounds, grid_bounds())
        processing = [m.payload for m in self.messages
                      if isinstance(m, StateChanged) and m.current is StateKind.PROCESSING_GRID]
        self.assertEqual(processing[0].bounds_source, "roi")

    async def test_no_classifiers_reports_unavailable(self) -> None:
        image, expected = grid_image(all_selected)
        coordinator = self.make(engine=RecognitionEngine(classifiers=[]))

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.REVIEWING)
        results = state.payload.results
        self.assertEqual(set(results), set(expected))
        for result in results.values():
            self.assertIsNone(result.selected)
            self.assertEqual(result.error, RecognitionEngineUnavailable.code)
        review = state.payload.review
        self.assertTrue(review.required)
        self.assertEqual(len(review.cells("high")), 9)
        self.assertEqual(state.payload.stats.unavailable, 9)
        self.assertEqual(state.payload.stats.total_analyzed, 0)


class TestLifecycle(CoordinatorTestCase):
    async def test_waits_for_bounds_without_roi_or_box(self) -> None:
        image, _ = grid_image(all_selected)
        detector = RoiDetector(detectors=[LowConfidenceDetector()])
        coordinator = self.make(PipelineConfig(), roi_detector=detector)

        state = await coordinator.run(image)
        self.assertIs(state.kind, StateKind.AWAITING_BOUNDS)

        self.assertTrue(coordinator.bounds_resolved(grid_bounds()))
        await coordinator.wait_until_settled()
        self.assertIs(coordinator.state.kind, StateKind.REVIEWING)

    async def test_bounds_outside_image_fail_validation(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()

        state = await coordinator.run(image, bounding_box=Rect(5000, 5000, 100, 100))

        self.assertIs(state.kind, StateKind.ERROR)
        self.assertEqual(state.error.code, "validation-error")
        self.assertTrue(state.error.recoverable)

    async def test_cancel_then_retry(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()
        self.assertTrue(coordinator.start(image))
        self.assertTrue(coordinator.state.is_active)

        self.assertTrue(coordinator.cancel())
        self.assertIs(coordinator.state.kind, StateKind.ERROR)
        self.assertFalse(coordinator.state.is_active)
        self.assertEqual(coordinator.state.error.code, "cancelled")
        self.assertTrue(coordinator.state.error.recoverable)
        self.assertEqual(coordinator.state.error.stage, StateKind.AWAITING_BOUNDS)

        state = await coordinator.retry(grid_bounds())
        self.assertIs(state.kind, StateKind.REVIEWING)

    async def test_retry_after_timeout_reuses_bounds(self) -> None:
        image, _ = grid_image(all_selected)
        engine = RecognitionEngine(classifiers=[SlowClassifier(0.05)])
        coordinator = self.make(replace(MANUAL, run_deadline=0.02), engine=engine)

        state = await coordinator.run(image, bounding_box=grid_bounds())
        self.assertIs(state.kind, StateKind.ERROR)

        coordinator.engine = RecognitionEngine(classifiers=[])
        coordinator.config = replace(coordinator.config, run_deadline=20.0)
        state = await coordinator.retry()
        self.assertIs(state.kind, StateKind.REVIEWING)
        self.assertEqual(state.payload.bounds, grid_bounds())

    async def test_engine_failure_is_not_recoverable(self) -> None:
        image, _ = grid_image(all_selected)
        engine = RecognitionEngine(classifiers=[BrokenSetupClassifier()])
        coordinator = self.make(engine=engine)

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.ERROR)
        self.assertEqual(state.error.code, "recognition-engine-unavailable")
        self.assertFalse(state.error.recoverable)

        state = await coordinator.retry(grid_bounds())
        self.assertIs(state.kind, StateKind.ERROR)
        self.assertTrue(coordinator.reset())
        self.assertIs(coordinator.state.kind, StateKind.IDLE)

    async def test_auto_reset_after_grace_period(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make(replace(MANUAL, reset_grace_period=0.05))

        await coordinator.run(image, bounding_box=grid_bounds())
        coordinator.review_confirmed()
        self.assertIs(coordinator.state.kind, StateKind.COMPLETE)

        await asyncio.sleep(0.2)
        self.assertIs(coordinator.state.kind, StateKind.IDLE)

    async def test_auto_confirm_when_no_review_needed(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make(replace(MANUAL, auto_confirm=True))

        state = await coordinator.run(image, bounding_box=grid_bounds())

        self.assertIs(state.kind, StateKind.COMPLETE)

    async def test_review_decisions_override_results(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()
        await coordinator.run(image, bounding_box=grid_bounds())

        self.assertFalse(coordinator.review_confirmed({"nope": True}))
        self.assertIs(coordinator.state.kind, StateKind.REVIEWING)

        self.assertTrue(coordinator.review_confirmed({"r0c0": False}))
        output = coordinator.state.payload.output
        self.assertFalse(output.detection_results["r0c0"].selected)
        self.assertTrue(output.detection_results["r0c0"].confirmed)
        self.assertNotIn("r0c0", output.selected_cells)

    async def test_second_start_is_rejected(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()
        self.assertTrue(coordinator.start(image))
        self.assertFalse(coordinator.start(image))
        self.assertIs(coordinator.state.kind, StateKind.AWAITING_BOUNDS)

    async def test_listener_errors_do_not_break_the_run(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()

        def bad_listener(message: object) -> None:
            raise RuntimeError("listener bug")

        coordinator.add_listener(bad_listener)
        with self.assertLogs("hexgrid_vision.pipeline.coordinator", level="ERROR"):
            state = await coordinator.run(image, bounding_box=grid_bounds())
        self.assertIs(state.kind, StateKind.REVIEWING)

    async def test_removed_listener_gets_nothing(self) -> None:
        image, _ = grid_image(all_selected)
        coordinator = self.make()
        seen: List[object] = []
        remove = coordinator.add_listener(seen.append)
        remove()
        coordinator.start(image)
        self.assertEqual(seen, [])
        self.assertTrue(self.messages)


class TestInvalidTransitions(unittest.TestCase):
    def setUp(self) -> None:
        self.coordinator = PipelineCoordinator(grid_cells(), config=MANUAL)
        self.addCleanup(self.coordinator.close)

    def test_idle_rejects_everything_but_start(self) -> None:
        c = self.coordinator
        with self.assertLogs("hexgrid_vision.pipeline.coordinator", level="WARNING"):
            self.assertFalse(c.bounds_resolved(grid_bounds()))
            self.assertFalse(c.review_confirmed())
            self.assertFalse(c.reset())
            self.assertFalse(c.cancel())
            self.assertFalse(c.fail("stage-timeout", True))
        self.assertIs(c.state.kind, StateKind.IDLE)

    def test_transition_table(self) -> None:
        self.assertEqual(TRANSITIONS[StateKind.IDLE], {StateKind.AWAITING_BOUNDS})
        for kind in (StateKind.AWAITING_BOUNDS, StateKind.PROCESSING_GRID, StateKind.REVIEWING):
            self.assertIn(StateKind.ERROR, TRANSITIONS[kind])
        self.assertEqual(TRANSITIONS[StateKind.COMPLETE], {StateKind.IDLE})
        self.assertEqual(TRANSITIONS[StateKind.ERROR],
                         {StateKind.AWAITING_BOUNDS, StateKind.IDLE})

    def test_invalid_config_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PipelineCoordinator(grid_cells(), config=PipelineConfig(run_deadline=0))


if __name__ == "__main__":
    unittest.main()
