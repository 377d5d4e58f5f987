"""
Configuration
=============

Frozen dataclasses with explicit defaults.  Every section exposes
``validate()`` which raises ``ValueError`` on out-of-range values;
``PipelineConfig.validate()`` validates all nested sections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Tuple

MiB = 1024 * 1024


def _unit(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ValueError(f"{name} must be within [0, 1]")


@dataclass(frozen=True)
class PoolConfig:
    max_pool_size: int = 8                 # pooled buffers kept per size key
    max_memory_bytes: int = 100 * MiB
    cleanup_threshold: float = 0.8         # fraction of max_memory_bytes
    max_idle_seconds: float = 30.0
    max_workers: int = 4

    def validate(self) -> None:
        if self.max_pool_size < 1:
            raise ValueError("max_pool_size must be >= 1")
        if self.max_memory_bytes <= 0:
            raise ValueError("max_memory_bytes must be > 0")
        if not (0.0 < self.cleanup_threshold <= 1.0):
            raise ValueError("cleanup_threshold must be within (0, 1]")
        if self.max_idle_seconds <= 0:
            raise ValueError("max_idle_seconds must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(frozen=True)
class ExtractionConfig:
    target_size: int = 48                  # normalised region side (px)
    min_padding: int = 4
    padding_ratio: float = 0.2             # padding = max(min_padding, ratio · r)
    visibility_alpha: int = 50             # alpha above which a pixel counts as visible
    completeness_threshold: float = 0.7
    enhance: bool = True

    # Enhancement parameters
    unsharp_amount: float = 0.8
    unsharp_sigma: float = 1.5
    unsharp_below_sharpness: float = 0.5   # sharpness score
    contrast_bright: float = 1.05
    contrast_default: float = 1.15
    bright_level: float = 0.7
    denoise_below_noise_score: float = 0.5

    def validate(self) -> None:
        if self.target_size < 8:
            raise ValueError("target_size must be >= 8")
        if self.min_padding < 0:
            raise ValueError("min_padding must be >= 0")
        if self.padding_ratio < 0:
            raise ValueError("padding_ratio must be >= 0")
        if not (0 <= self.visibility_alpha <= 255):
            raise ValueError("visibility_alpha must be within [0, 255]")
        _unit("completeness_threshold", self.completeness_threshold)
        if self.completeness_threshold == 0:
            raise ValueError("completeness_threshold must be > 0")
        if self.contrast_bright <= 0 or self.contrast_default <= 0:
            raise ValueError("contrast factors must be > 0")

    def crop_size(self, radius: float) -> int:
        """Side of the square crop taken around a cell of *radius*."""
        pad = max(float(self.min_padding), self.padding_ratio * radius)
        return max(3, int(round(2.0 * radius + 2.0 * pad)))

    def normalized_radius(self, radius: float) -> float:
        """Hexagon radius once the crop is resized to ``target_size``."""
        return radius * self.target_size / self.crop_size(radius)


@dataclass(frozen=True)
class QualityConfig:
    sharpness_ref: float = 0.3
    contrast_ref: float = 0.4
    noise_ceiling: float = 0.02            # tile variance that scores 0
    weights: Tuple[float, float, float, float] = (0.35, 0.25, 0.25, 0.15)
    artifact_weights: Tuple[float, float, float] = (0.4, 0.3, 0.3)

    base_threshold: float = 0.5
    dark_brightness: float = 0.4
    sharp_score: float = 0.6
    threshold_step: float = 0.1
    min_threshold: float = 0.3
    max_threshold: float = 0.9

    block_size: int = 8
    noise_window: int = 5
    uniform_tolerance: int = 5

    def validate(self) -> None:
        if self.sharpness_ref <= 0 or self.contrast_ref <= 0 or self.noise_ceiling <= 0:
            raise ValueError("quality reference values must be > 0")
        if abs(sum(self.weights) - 1.0) > 1e-6:
            raise ValueError("quality weights must sum to 1")
        if abs(sum(self.artifact_weights) - 1.0) > 1e-6:
            raise ValueError("artifact weights must sum to 1")
        if not (0.0 <= self.min_threshold <= self.max_threshold <= 1.0):
            raise ValueError("threshold bounds must satisfy 0 <= min <= max <= 1")
        if self.block_size < 2 or self.noise_window < 2:
            raise ValueError("block_size and noise_window must be >= 2")


@dataclass(frozen=True)
class RoiConfig:
    confidence_threshold: float = 0.7
    detector_timeout: float = 4.0          # seconds per detector
    tie_margin: float = 0.1
    max_alternatives: int = 2
    optimal_relative_area: float = 0.35
    expected_aspect: float = 1.6

    def validate(self) -> None:
        _unit("confidence_threshold", self.confidence_threshold)
        _unit("tie_margin", self.tie_margin)
        _unit("optimal_relative_area", self.optimal_relative_area)
        if self.detector_timeout <= 0:
            raise ValueError("detector_timeout must be > 0")
        if self.expected_aspect <= 0:
            raise ValueError("expected_aspect must be > 0")


@dataclass(frozen=True)
class ConsensusConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: {
        "brightness": 0.30,
        "color": 0.25,
        "edge": 0.25,
        "pattern": 0.20,
    })
    default_weight: float = 0.2            # for classifiers without an explicit weight
    ambiguous_confidence: float = 0.6
    low_agreement: float = 0.5
    high_confidence: float = 0.8
    min_weight: float = 0.1
    max_weight: float = 0.5
    calibration_min_samples: int = 10
    calibration_step: float = 0.1

    # Review triage
    review_medium: float = 0.7
    review_high: float = 0.5
    review_overall: float = 0.6

    def validate(self) -> None:
        for name, weight in self.weights.items():
            if weight <= 0:
                raise ValueError(f"weight for {name!r} must be > 0")
        if self.default_weight <= 0:
            raise ValueError("default_weight must be > 0")
        for name in ("ambiguous_confidence", "low_agreement", "high_confidence",
                     "review_medium", "review_high", "review_overall"):
            _unit(name, getattr(self, name))
        if not (0.0 < self.min_weight <= self.max_weight):
            raise ValueError("weight bounds must satisfy 0 < min <= max")
        if self.review_high > self.review_medium:
            raise ValueError("review_high must be <= review_medium")


@dataclass(frozen=True)
class PipelineConfig:
    run_deadline: float = 20.0             # seconds, from start()
    processing_timeout: float = 15.0       # seconds, re-armed on ProcessingGrid
    reset_grace_period: float = 3.0        # Complete → Idle
    auto_detect_roi: bool = True
    auto_confirm: bool = False             # skip review when none is required

    pool: PoolConfig = field(default_factory=PoolConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    roi: RoiConfig = field(default_factory=RoiConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)

    def validate(self) -> None:
        if self.run_deadline <= 0:
            raise ValueError("run_deadline must be > 0")
        if self.processing_timeout <= 0:
            raise ValueError("processing_timeout must be > 0")
        if self.reset_grace_period < 0:
            raise ValueError("reset_grace_period must be >= 0")
        self.pool.validate()
        self.extraction.validate()
        self.quality.validate()
        self.roi.validate()
        self.consensus.validate()
