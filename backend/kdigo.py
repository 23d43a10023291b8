"""
NephroFlow: KDIGO Classifier
============================
Maps two lab values (eGFR, uACR) to the KDIGO 2012 staging taxonomy.
Pure functions only; no state, no randomness.
"""

import logging
from typing import Optional

from constants import (
    KDIGO_THRESHOLDS,
    RISK_MATRIX,
    GFRCategory,
    AlbuminuriaCategory,
    RiskLevel,
)
from models import (
    HealthState,
    ClinicalFlag,
    MonitoringFrequency,
    CkdSeverity,
    validate_lab_value,
)

logger = logging.getLogger(__name__)

_MONITORING_BY_RISK = {
    RiskLevel.VERY_HIGH: MonitoringFrequency.MONTHLY,
    RiskLevel.HIGH: MonitoringFrequency.QUARTERLY,
    RiskLevel.MODERATE: MonitoringFrequency.BIANNUAL,
    RiskLevel.LOW: MonitoringFrequency.ANNUAL,
}


class KDIGOClassifier:

    @staticmethod
    def gfr_category(egfr: float) -> GFRCategory:
        if egfr >= KDIGO_THRESHOLDS.G1:
            return GFRCategory.G1
        if egfr >= KDIGO_THRESHOLDS.G2:
            return GFRCategory.G2
        if egfr >= KDIGO_THRESHOLDS.G3A:
            return GFRCategory.G3A
        if egfr >= KDIGO_THRESHOLDS.G3B:
            return GFRCategory.G3B
        if egfr >= KDIGO_THRESHOLDS.G4:
            return GFRCategory.G4
        return GFRCategory.G5

    @staticmethod
    def albuminuria_category(uacr: float) -> AlbuminuriaCategory:
        if uacr < KDIGO_THRESHOLDS.A2:
            return AlbuminuriaCategory.A1
        if uacr <= KDIGO_THRESHOLDS.A3:
            return AlbuminuriaCategory.A2
        return AlbuminuriaCategory.A3

    @staticmethod
    def ckd_stage(gfr: GFRCategory, uacr: float) -> Optional[int]:
        """
        G1/G2 only count as CKD with albuminuria (uACR >= 30).
        Below 60 mL/min the eGFR alone defines the stage.
        """
        if gfr == GFRCategory.G5:
            return 5
        if gfr == GFRCategory.G4:
            return 4
        if gfr in (GFRCategory.G3A, GFRCategory.G3B):
            return 3
        if uacr >= KDIGO_THRESHOLDS.A2:
            return 1 if gfr == GFRCategory.G1 else 2
        return None

    @staticmethod
    def severity(stage: Optional[int]) -> Optional[CkdSeverity]:
        if stage is None:
            return None
        if stage <= 2:
            return CkdSeverity.MILD
        if stage == 3:
            return CkdSeverity.MODERATE
        if stage == 4:
            return CkdSeverity.SEVERE
        return CkdSeverity.KIDNEY_FAILURE

    @staticmethod
    def clinical_flags(egfr: float, gfr: GFRCategory, alb: AlbuminuriaCategory,
                       stage: Optional[int]) -> set:
        flags = set()
        if gfr in (GFRCategory.G3B, GFRCategory.G4, GFRCategory.G5) or alb == AlbuminuriaCategory.A3:
            flags.add(ClinicalFlag.NEPHROLOGY_REFERRAL)
        if gfr == GFRCategory.G5 or (
            gfr == GFRCategory.G4 and egfr < KDIGO_THRESHOLDS.DIALYSIS_PLANNING_G4_EGFR
        ):
            flags.add(ClinicalFlag.DIALYSIS_PLANNING)
        if alb in (AlbuminuriaCategory.A2, AlbuminuriaCategory.A3):
            flags.add(ClinicalFlag.RAS_INHIBITOR)
        if stage is not None and 2 <= stage <= 4:
            flags.add(ClinicalFlag.SGLT2_INHIBITOR)
        return flags

    @staticmethod
    def classify(egfr: float, uacr: Optional[float] = None) -> HealthState:
        """
        Derives the full HealthState.
        An absent uACR is staged as A1 and the state is marked as imputed.
        Raises InvalidInput for negative, NaN or non-numeric values.
        """
        egfr = validate_lab_value("egfr", egfr)
        uacr = validate_lab_value("uacr", uacr, allow_none=True)

        imputed = uacr is None
        staging_uacr = 0.0 if imputed else uacr

        gfr = KDIGOClassifier.gfr_category(egfr)
        alb = KDIGOClassifier.albuminuria_category(staging_uacr)
        stage = KDIGOClassifier.ckd_stage(gfr, staging_uacr)
        risk = RISK_MATRIX[(gfr, alb)]

        flags = KDIGOClassifier.clinical_flags(egfr, gfr, alb, stage)
        if imputed:
            flags.add(ClinicalFlag.ALBUMINURIA_NOT_MEASURED)

        if alb == AlbuminuriaCategory.A1:
            target_bp = KDIGO_THRESHOLDS.TARGET_BP_NORMOALBUMINURIA
        else:
            target_bp = KDIGO_THRESHOLDS.TARGET_BP_ALBUMINURIA

        logger.debug("classify egfr=%s uacr=%s -> %s-%s %s", egfr, uacr, gfr.value, alb.value, risk.value)

        return HealthState(
            gfr_category=gfr,
            albuminuria_category=alb,
            risk_level=risk,
            ckd_stage=stage,
            clinical_flags=frozenset(flags),
            monitoring_frequency=_MONITORING_BY_RISK[risk],
            target_bp=target_bp,
            ckd_severity=KDIGOClassifier.severity(stage),
            uacr_imputed=imputed,
        )


def classify(egfr: float, uacr: Optional[float] = None) -> HealthState:
    return KDIGOClassifier.classify(egfr, uacr)
