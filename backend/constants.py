from enum import Enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

VERSION = "1.0.0"


class DrugClass(Enum):
    RAS_INHIBITOR = "ras_inhibitor"     # ACE inhibitor or ARB
    SGLT2I = "sglt2_inhibitor"
    GLP1_RA = "glp1_agonist"


class GFRCategory(Enum):
    G1 = "G1"
    G2 = "G2"
    G3A = "G3a"
    G3B = "G3b"
    G4 = "G4"
    G5 = "G5"


class AlbuminuriaCategory(Enum):
    A1 = "A1"
    A2 = "A2"
    A3 = "A3"


class RiskLevel(Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MODERATE: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.VERY_HIGH: 3,
}


class ProgressionCategory(Enum):
    RAPID = "rapid"
    PROGRESSIVE = "progressive"
    MODERATE = "moderate"
    SLOW = "slow"


@dataclass(frozen=True)
class TreatmentEffect:
    name: str
    egfr_benefit_range: Tuple[float, float]    # mL/min/1.73m² per month at full adherence
    uacr_reduction_range: Tuple[float, float]  # fraction per month at full adherence
    medications: Tuple[str, ...] = ()


class KDIGO_THRESHOLDS:
    # eGFR lower bounds (mL/min/1.73m²)
    G1 = 90.0
    G2 = 60.0
    G3A = 45.0
    G3B = 30.0
    G4 = 15.0

    # uACR (mg/g)
    A2 = 30.0       # A1 is strictly below
    A3 = 300.0      # A2 is inclusive of this value

    DIALYSIS_PLANNING_G4_EGFR = 20.0

    TARGET_BP_NORMOALBUMINURIA = "<140/90 mmHg"
    TARGET_BP_ALBUMINURIA = "<130/80 mmHg"


# Every (GFR, albuminuria) combination is spelled out; checked at import below.
RISK_MATRIX: Dict[Tuple[GFRCategory, AlbuminuriaCategory], RiskLevel] = {
    (GFRCategory.G1, AlbuminuriaCategory.A1): RiskLevel.LOW,
    (GFRCategory.G1, AlbuminuriaCategory.A2): RiskLevel.MODERATE,
    (GFRCategory.G1, AlbuminuriaCategory.A3): RiskLevel.HIGH,
    (GFRCategory.G2, AlbuminuriaCategory.A1): RiskLevel.LOW,
    (GFRCategory.G2, AlbuminuriaCategory.A2): RiskLevel.MODERATE,
    (GFRCategory.G2, AlbuminuriaCategory.A3): RiskLevel.HIGH,
    (GFRCategory.G3A, AlbuminuriaCategory.A1): RiskLevel.MODERATE,
    (GFRCategory.G3A, AlbuminuriaCategory.A2): RiskLevel.HIGH,
    (GFRCategory.G3A, AlbuminuriaCategory.A3): RiskLevel.VERY_HIGH,
    (GFRCategory.G3B, AlbuminuriaCategory.A1): RiskLevel.HIGH,
    (GFRCategory.G3B, AlbuminuriaCategory.A2): RiskLevel.VERY_HIGH,
    (GFRCategory.G3B, AlbuminuriaCategory.A3): RiskLevel.VERY_HIGH,
    (GFRCategory.G4, AlbuminuriaCategory.A1): RiskLevel.VERY_HIGH,
    (GFRCategory.G4, AlbuminuriaCategory.A2): RiskLevel.VERY_HIGH,
    (GFRCategory.G4, AlbuminuriaCategory.A3): RiskLevel.VERY_HIGH,
    (GFRCategory.G5, AlbuminuriaCategory.A1): RiskLevel.VERY_HIGH,
    (GFRCategory.G5, AlbuminuriaCategory.A2): RiskLevel.VERY_HIGH,
    (GFRCategory.G5, AlbuminuriaCategory.A3): RiskLevel.VERY_HIGH,
}

_missing = [(g, a) for g in GFRCategory for a in AlbuminuriaCategory if (g, a) not in RISK_MATRIX]
if _missing:
    raise RuntimeError(f"RISK_MATRIX is missing combinations: {_missing}")


class DESCRIPTIONS:
    GFR = {
        GFRCategory.G1: "Normal or High",
        GFRCategory.G2: "Mildly Decreased",
        GFRCategory.G3A: "Mild to Moderate Decrease",
        GFRCategory.G3B: "Moderate to Severe Decrease",
        GFRCategory.G4: "Severely Decreased",
        GFRCategory.G5: "Kidney Failure",
    }
    ALBUMINURIA = {
        AlbuminuriaCategory.A1: "Normal to Mildly Increased",
        AlbuminuriaCategory.A2: "Moderately Increased",
        AlbuminuriaCategory.A3: "Severely Increased",
    }
    RISK_COLOR = {
        RiskLevel.LOW: "green",
        RiskLevel.MODERATE: "yellow",
        RiskLevel.HIGH: "orange",
        RiskLevel.VERY_HIGH: "red",
    }


class PROGRESSION_CONSTANTS:
    MONTHS_PER_YEAR = 12.0

    # Measurement noise per cycle
    EGFR_NOISE = 0.15            # ± mL/min absolute
    UACR_NOISE = 0.05            # ± fraction

    # Physiological clamps
    EGFR_MIN = 0.0
    EGFR_MAX = 200.0
    UACR_MIN = 0.0
    UACR_MAX = 10000.0

    # Two or more distinct active drug classes
    COMBINATION_BONUS = 0.2

    # Below this average adherence the treatment effect is only partially realised
    POOR_ADHERENCE_THRESHOLD = 0.5
    POOR_ADHERENCE_NATURAL_WEIGHT = 0.7
    POOR_ADHERENCE_TREATED_WEIGHT = 0.3

    # Seed value when a patient has never had albuminuria measured
    DEFAULT_UACR_MG_G = 10.0


class PROFILE_LIBRARY:
    """
    Natural history of the four progression phenotypes.
    annual eGFR decline (mL/min/yr), monthly uACR drift (fraction), cohort share.
    """
    SPECS = {
        ProgressionCategory.RAPID: ((9.6, 14.4), (0.04, 0.10), 0.05),
        ProgressionCategory.PROGRESSIVE: ((3.6, 7.2), (0.015, 0.04), 0.30),
        ProgressionCategory.MODERATE: ((1.8, 3.6), (0.005, 0.02), 0.15),
        ProgressionCategory.SLOW: ((0.6, 1.8), (0.001, 0.01), 0.50),
    }


class TREATMENT_LIBRARY:
    """
    Per-class monthly effect at full adherence.
    """
    SPECS = {
        DrugClass.RAS_INHIBITOR: TreatmentEffect(
            name="RAS Inhibitor (ACEi/ARB)",
            egfr_benefit_range=(0.5, 1.5),
            uacr_reduction_range=(0.20, 0.40),
            medications=("Lisinopril", "Enalapril", "Losartan", "Valsartan"),
        ),
        DrugClass.SGLT2I: TreatmentEffect(
            name="SGLT2 Inhibitor",
            egfr_benefit_range=(1.0, 2.5),
            uacr_reduction_range=(0.25, 0.50),
            medications=("Empagliflozin", "Dapagliflozin", "Canagliflozin"),
        ),
        DrugClass.GLP1_RA: TreatmentEffect(
            name="GLP-1 Receptor Agonist",
            egfr_benefit_range=(0.3, 1.0),
            uacr_reduction_range=(0.15, 0.30),
            medications=("Semaglutide", "Liraglutide", "Dulaglutide"),
        ),
    }

    @staticmethod
    def get(drug_class: DrugClass) -> Optional[TreatmentEffect]:
        return TREATMENT_LIBRARY.SPECS.get(drug_class)


class ADHERENCE_CONSTANTS:
    EXPECTED_EPSILON = 1e-9

    DRIFT_PROBABILITY = 0.20
    DRIFT_MAGNITUDE = 0.15      # ± per cycle
    DRIFT_FLOOR = 0.1
    DRIFT_CEILING = 1.0

    # Baseline adherence for newly started treatments
    BASELINE_RANGE = (0.6, 0.9)
    MANUAL_START_DEFAULT = 0.8

    # Lower bounds, checked in order
    BANDS: List[Tuple[float, str]] = [
        (0.90, "excellent"),
        (0.70, "good"),
        (0.50, "fair"),
        (0.30, "poor"),
    ]


class TRANSITION_CONSTANTS:
    EGFR_SIGNIFICANT_DELTA = 0.5     # mL/min, strict
    UACR_SIGNIFICANT_FRACTION = 0.10 # relative change, strict


class ALERT_THRESHOLDS:
    EGFR_CRITICAL = 30.0
    EGFR_KIDNEY_FAILURE = 15.0
    UACR_CRITICAL = 300.0
    EGFR_RAPID_DROP = -5.0

    PRIORITY_CRITICAL = 1
    PRIORITY_WARNING = 2
    PRIORITY_INFO = 3


class CYCLE_CONSTANTS:
    CLINICAL_WINDOW = 24
    ROLLING_WINDOW = 12
    AUTO_INITIATION_PROBABILITY = 0.10
