"""
NephroFlow: Adherence Estimator
===============================
Two separate signals:
  * estimate(): how well the observed lab trend matches the trend expected
    at full adherence. Recorded only, never fed back into the simulation.
  * drift(): the patient's behavioral adherence, which moves at random and
    drives the next simulated step.
"""

import random
from typing import Optional

from constants import ADHERENCE_CONSTANTS
from models import AdherenceBand


class AdherenceEstimator:

    @staticmethod
    def _ratio(actual: Optional[float], expected: Optional[float]) -> Optional[float]:
        if actual is None or expected is None:
            return None
        if abs(expected) < ADHERENCE_CONSTANTS.EXPECTED_EPSILON:
            return 1.0
        return actual / expected

    @staticmethod
    def estimate(actual_egfr_change: float, expected_egfr_change: float,
                 actual_uacr_change: Optional[float] = None,
                 expected_uacr_change: Optional[float] = None) -> float:
        """
        Mean of the per-metric actual/expected ratios, clamped to [0, 1].
        A metric is skipped when either side is unknown.
        """
        ratios = [
            r for r in (
                AdherenceEstimator._ratio(actual_egfr_change, expected_egfr_change),
                AdherenceEstimator._ratio(actual_uacr_change, expected_uacr_change),
            )
            if r is not None
        ]
        if not ratios:
            return 1.0
        mean = sum(ratios) / len(ratios)
        return min(1.0, max(0.0, mean))

    @staticmethod
    def band(score: float) -> AdherenceBand:
        for lower, label in ADHERENCE_CONSTANTS.BANDS:
            if score >= lower:
                return AdherenceBand(label)
        return AdherenceBand.VERY_POOR

    @staticmethod
    def drift(adherence: float, rng: random.Random) -> float:
        """20% of cycles shift adherence by up to ±0.15, clamped to [0.1, 1.0]."""
        if rng.random() >= ADHERENCE_CONSTANTS.DRIFT_PROBABILITY:
            return adherence
        change = rng.uniform(-ADHERENCE_CONSTANTS.DRIFT_MAGNITUDE, ADHERENCE_CONSTANTS.DRIFT_MAGNITUDE)
        return min(ADHERENCE_CONSTANTS.DRIFT_CEILING,
                   max(ADHERENCE_CONSTANTS.DRIFT_FLOOR, adherence + change))

    @staticmethod
    def baseline(rng: random.Random) -> float:
        low, high = ADHERENCE_CONSTANTS.BASELINE_RANGE
        return rng.uniform(low, high)
