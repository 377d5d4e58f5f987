"""
Consensus – Weighted Fusion of Classifier Votes
===============================================

Each classifier vote is mapped to a probability-like value
``v = conf`` when it says *selected* and ``v = 1 − conf`` otherwise.

  • weighted vote  ``W = Σ wᵢ·vᵢ / Σ wᵢ`` over the classifiers that voted
    (missing classifiers simply drop out of the normalisation);
  • verdict        ``selected = W > 0.5``;
  • agreement      ``1 − var(2·vᵢ − 1)`` – 1 when every signed vote is
    identical, 0 at maximal disagreement;
  • confidence     ``|2W − 1| · agreement · completeness factor``;
  • ambiguous      when confidence < 0.6 or agreement < 0.5.

``calibrate`` nudges the weights toward classifiers that matched user
feedback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from hexgrid_vision.config import ConsensusConfig
from hexgrid_vision.errors import RecognitionEngineUnavailable
from hexgrid_vision.recognition.base import ClassifierVote

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusVerdict:
    selected: bool
    confidence: float                  # [0, 1]
    weighted_vote: float               # [0, 1], > 0.5 means selected
    agreement: float                   # [0, 1]
    ambiguous: bool
    reliable: bool
    sub_scores: Dict[str, float]       # per-classifier vote value
    supporting: Tuple[str, ...]
    conflicting: Tuple[str, ...]


class ConsensusEngine:
    """Fuse classifier votes into one verdict."""

    def __init__(self, config: Optional[ConsensusConfig] = None) -> None:
        self.config = config or ConsensusConfig()
        self.weights: Dict[str, float] = dict(self.config.weights)

    def weight_for(self, name: str) -> float:
        return self.weights.get(name, self.config.default_weight)

    def fuse(
        self,
        votes: Sequence[ClassifierVote],
        completeness_factor: float = 1.0,
    ) -> ConsensusVerdict:
        """Combine *votes* into a :class:`ConsensusVerdict`.

        Raises
        ------
        RecognitionEngineUnavailable
            If *votes* is empty.
        """
        if not votes:
            raise RecognitionEngineUnavailable("No classifier produced a vote")
        cfg = self.config

        weights = np.array([self.weight_for(v.name) for v in votes], dtype=np.float64)
        values = np.array([v.vote for v in votes], dtype=np.float64)

        weighted_vote = float(np.dot(weights, values) / weights.sum())
        selected = weighted_vote > 0.5
        agreement = float(np.clip(1.0 - np.var(2.0 * values - 1.0), 0.0, 1.0))
        decisiveness = abs(2.0 * weighted_vote - 1.0)
        confidence = float(np.clip(
            decisiveness * agreement * min(1.0, max(0.0, completeness_factor)), 0.0, 1.0,
        ))

        supporting = tuple(v.name for v in votes if v.selected == selected)
        conflicting = tuple(v.name for v in votes if v.selected != selected)
        ambiguous = confidence < cfg.ambiguous_confidence or agreement < cfg.low_agreement
        reliable = (
            confidence >= cfg.high_confidence
            and not ambiguous
            and len(supporting) >= min(2, len(votes))
        )

        return ConsensusVerdict(
            selected=selected,
            confidence=confidence,
            weighted_vote=weighted_vote,
            agreement=agreement,
            ambiguous=ambiguous,
            reliable=reliable,
            sub_scores={v.name: float(v.vote) for v in votes},
            supporting=supporting,
            conflicting=conflicting,
        )

    def calibrate(
        self,
        feedback: Sequence[Tuple[Sequence[ClassifierVote], bool]],
    ) -> Dict[str, float]:
        """Adjust weights from ``(votes, actually_selected)`` feedback.

        Each classifier's weight moves by ``(accuracy − 0.5) · step``,
        is clamped to ``[min_weight, max_weight]`` and the set is then
        rescaled to keep the original total.  Fewer than
        ``calibration_min_samples`` samples leave the weights untouched.
        """
        cfg = self.config
        if len(feedback) < cfg.calibration_min_samples:
            log.info("Calibration skipped: %d samples (need %d)",
                     len(feedback), cfg.calibration_min_samples)
            return dict(self.weights)

        hits: Dict[str, int] = {}
        seen: Dict[str, int] = {}
        for votes, truth in feedback:
            for vote in votes:
                seen[vote.name] = seen.get(vote.name, 0) + 1
                hits[vote.name] = hits.get(vote.name, 0) + int(vote.selected == truth)

        total_before = sum(self.weights.values())
        updated = dict(self.weights)
        for name, count in seen.items():
            accuracy = hits[name] / count
            w = self.weight_for(name) + (accuracy - 0.5) * cfg.calibration_step
            updated[name] = min(cfg.max_weight, max(cfg.min_weight, w))

        scale = total_before / sum(updated.values()) if total_before else 1.0
        self.weights = {name: w * scale for name, w in updated.items()}
        log.info("Calibrated consensus weights: %s",
                 {k: round(v, 3) for k, v in self.weights.items()})
        return dict(self.weights)
