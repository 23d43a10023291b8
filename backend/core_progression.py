"""
NephroFlow: Core Progression Engine
===================================
Simulates the next monthly set of kidney labs for one patient from its
progression profile, its active treatments and their adherence.

All randomness comes from an injected random.Random so a cohort run is
reproducible from (seed, patient_id, cycle).
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from models import (
    LabSnapshot,
    ProgressionProfile,
    Treatment,
    GenerationError,
)
from constants import (
    PROGRESSION_CONSTANTS,
    PROFILE_LIBRARY,
    TREATMENT_LIBRARY,
    ProgressionCategory,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TreatmentEffectSample:
    egfr_benefit: float            # adherence-weighted, mL/min
    uacr_reduction: float          # adherence-weighted, fraction
    full_egfr_benefit: float       # same samples at full adherence
    full_uacr_reduction: float
    average_adherence: Optional[float]
    class_count: int


@dataclass(frozen=True)
class ProgressionStep:
    snapshot: LabSnapshot
    natural_egfr_change: float
    natural_uacr_change: float     # fraction
    effect: TreatmentEffectSample
    prior_egfr: float
    prior_uacr: float              # the value the uACR step started from

    @property
    def egfr_change(self) -> float:
        return self.snapshot.egfr - self.prior_egfr

    @property
    def uacr_change(self) -> Optional[float]:
        """Relative change; None when the step started from zero."""
        if self.prior_uacr <= 0:
            return None
        return self.snapshot.uacr / self.prior_uacr - 1.0

    # Treatment-attributable parts of the observed trend (observed minus natural history)
    @property
    def observed_egfr_benefit(self) -> float:
        return self.egfr_change - self.natural_egfr_change

    @property
    def observed_uacr_reduction(self) -> Optional[float]:
        change = self.uacr_change
        if change is None:
            return None
        return self.natural_uacr_change - change


class ProgressionEngine:
    """
    The Mathematical Core.
    Profile -> natural decline, Treatments x Adherence -> benefit, plus noise.
    """

    @staticmethod
    def patient_rng(seed: int, patient_id: str, cycle: int) -> random.Random:
        """One deterministic stream per patient per absolute cycle."""
        return random.Random(f"{seed}:{patient_id}:{cycle}")

    @staticmethod
    def build_profile(category: ProgressionCategory) -> ProgressionProfile:
        decline, drift, _share = PROFILE_LIBRARY.SPECS[category]
        return ProgressionProfile(category=category, annual_decline_range=decline,
                                  monthly_uacr_drift_range=drift)

    @staticmethod
    def assign_profile(rng: random.Random) -> ProgressionProfile:
        """5% rapid, 30% progressive, 15% moderate, 50% slow."""
        roll = rng.random()
        cumulative = 0.0
        for category, (_decline, _drift, share) in PROFILE_LIBRARY.SPECS.items():
            cumulative += share
            if roll < cumulative:
                return ProgressionEngine.build_profile(category)
        return ProgressionEngine.build_profile(ProgressionCategory.SLOW)

    @staticmethod
    def calculate_treatment_effect(treatments: List[Treatment], rng: random.Random) -> TreatmentEffectSample:
        active = [t for t in treatments if t.is_active]
        if not active:
            return TreatmentEffectSample(0.0, 0.0, 0.0, 0.0, None, 0)

        egfr_benefit = uacr_reduction = 0.0
        full_egfr = full_uacr = 0.0
        for t in active:
            effect = TREATMENT_LIBRARY.get(t.drug_class)
            if effect is None:
                raise GenerationError(f"No treatment effect configured for {t.drug_class}")
            egfr_sample = rng.uniform(*effect.egfr_benefit_range)
            uacr_sample = rng.uniform(*effect.uacr_reduction_range)
            egfr_benefit += egfr_sample * t.adherence
            uacr_reduction += uacr_sample * t.adherence
            full_egfr += egfr_sample
            full_uacr += uacr_sample

        class_count = len({t.drug_class for t in active})
        if class_count >= 2:
            bonus = 1.0 + PROGRESSION_CONSTANTS.COMBINATION_BONUS
            egfr_benefit *= bonus
            uacr_reduction *= bonus
            full_egfr *= bonus
            full_uacr *= bonus

        average_adherence = sum(t.adherence for t in active) / len(active)
        return TreatmentEffectSample(egfr_benefit, uacr_reduction, full_egfr, full_uacr,
                                     average_adherence, class_count)

    @staticmethod
    def _blend(natural: float, treated: float, average_adherence: Optional[float]) -> float:
        if average_adherence is not None and average_adherence < PROGRESSION_CONSTANTS.POOR_ADHERENCE_THRESHOLD:
            return (PROGRESSION_CONSTANTS.POOR_ADHERENCE_NATURAL_WEIGHT * natural
                    + PROGRESSION_CONSTANTS.POOR_ADHERENCE_TREATED_WEIGHT * treated)
        return treated

    @staticmethod
    def simulate_step(prior: LabSnapshot, profile: ProgressionProfile, treatments: List[Treatment],
                      rng: random.Random, cycle: int,
                      measured_at: Optional[datetime] = None) -> ProgressionStep:
        """
        Draw order is fixed: natural eGFR, natural uACR, eGFR noise, uACR noise,
        then one (eGFR, uACR) pair per active treatment. With adherence 0 the
        trajectory is identical to the untreated one for the same stream.
        """
        profile.validate()

        natural_egfr = -rng.uniform(*profile.annual_decline_range) / PROGRESSION_CONSTANTS.MONTHS_PER_YEAR
        natural_uacr = rng.uniform(*profile.monthly_uacr_drift_range)
        egfr_noise = rng.uniform(-PROGRESSION_CONSTANTS.EGFR_NOISE, PROGRESSION_CONSTANTS.EGFR_NOISE)
        uacr_noise = rng.uniform(-PROGRESSION_CONSTANTS.UACR_NOISE, PROGRESSION_CONSTANTS.UACR_NOISE)

        effect = ProgressionEngine.calculate_treatment_effect(treatments, rng)

        egfr_change = ProgressionEngine._blend(
            natural_egfr, natural_egfr + effect.egfr_benefit, effect.average_adherence)
        uacr_change = ProgressionEngine._blend(
            natural_uacr, natural_uacr - effect.uacr_reduction, effect.average_adherence)

        prior_uacr = prior.uacr if prior.uacr is not None else PROGRESSION_CONSTANTS.DEFAULT_UACR_MG_G

        new_egfr = _clamp(prior.egfr + egfr_change + egfr_noise,
                          PROGRESSION_CONSTANTS.EGFR_MIN, PROGRESSION_CONSTANTS.EGFR_MAX)
        new_uacr = _clamp(prior_uacr * (1.0 + uacr_change + uacr_noise),
                          PROGRESSION_CONSTANTS.UACR_MIN, PROGRESSION_CONSTANTS.UACR_MAX)

        snapshot = LabSnapshot(
            egfr=new_egfr,
            uacr=new_uacr,
            cycle=cycle,
            measured_at=measured_at or datetime.now(),
        )
        return ProgressionStep(
            snapshot=snapshot,
            natural_egfr_change=natural_egfr,
            natural_uacr_change=natural_uacr,
            effect=effect,
            prior_egfr=prior.egfr,
            prior_uacr=prior_uacr,
        )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
