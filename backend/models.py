"""
NephroFlow: Data Dictionary
===========================
The state space of the CKD progression dashboard: lab snapshots, derived
health states, treatments, transitions, alerts and recommendations.

Validation lives here (in __post_init__). The staging rules live in kdigo.py
and the simulation in core_progression.py.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple
from datetime import datetime

from constants import (
    VERSION,
    DESCRIPTIONS,
    DrugClass,
    GFRCategory,
    AlbuminuriaCategory,
    RiskLevel,
    ProgressionCategory,
)

# --- 1. ERRORS ---

class InvalidInput(ValueError):
    """Raised when a lab value is negative, NaN or not a number."""
    pass

class GenerationError(RuntimeError):
    """Raised when one patient's next cycle cannot be simulated. Collected per patient."""
    pass

class PersistenceError(RuntimeError):
    """Raised by a store when a read or write fails."""
    pass

class ConcurrencyConflict(RuntimeError):
    """Raised when another advance of the same cohort holds the lock."""
    pass

class CycleWindowExhausted(RuntimeError):
    """Raised by the clinical window policy once the last cycle has been simulated."""
    pass

class LifecycleError(ValueError):
    """Raised on an illegal alert or recommendation status move."""
    pass

class NotFoundError(KeyError):
    pass


def validate_lab_value(name: str, value, allow_none: bool = False) -> Optional[float]:
    """Returns the value as float or raises InvalidInput."""
    if value is None:
        if allow_none:
            return None
        raise InvalidInput(f"'{name}' is required")
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"'{name}' must be numeric, got {type(value).__name__}")
    if math.isnan(value) or math.isinf(value):
        raise InvalidInput(f"'{name}' must be a finite number, got {value}")
    if value < 0:
        raise InvalidInput(f"'{name}' cannot be negative, got {value}")
    return float(value)


# --- 2. ENUMS ---

class MonitoringFrequency(Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIANNUAL = "biannually"
    ANNUAL = "annually"

class CkdSeverity(Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    KIDNEY_FAILURE = "kidney_failure"

class ClinicalFlag(Enum):
    NEPHROLOGY_REFERRAL = "nephrology_referral"
    DIALYSIS_PLANNING = "dialysis_planning"
    RAS_INHIBITOR = "ras_inhibitor_recommended"
    SGLT2_INHIBITOR = "sglt2_inhibitor_recommended"
    ALBUMINURIA_NOT_MEASURED = "albuminuria_not_measured"

class TreatmentStatus(Enum):
    ACTIVE = "active"
    STOPPED = "stopped"

class ChangeType(Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    STABLE = "stable"

class AlertSeverity(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

class AlertStatus(Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

class RecommendationType(Enum):
    DIALYSIS_PLANNING = "dialysis_planning"
    NEPHROLOGY_REFERRAL = "nephrology_referral"
    START_RAS_INHIBITOR = "start_ras_inhibitor"
    START_SGLT2_INHIBITOR = "start_sglt2_inhibitor"
    MONITORING_ESCALATION = "monitoring_escalation"

class Urgency(Enum):
    ROUTINE = "routine"
    URGENT = "urgent"

class RecommendationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"

class AdherenceBand(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    VERY_POOR = "very_poor"

class DiabetesType(Enum):
    NONE = "none"
    TYPE_1 = "type1"
    TYPE_2 = "type2"


# --- 3. LAB INPUTS ---

@dataclass(frozen=True)
class LabSnapshot:
    """One set of kidney labs for one patient at one cycle."""
    egfr: float                     # mL/min/1.73m²
    uacr: Optional[float]           # mg/g, None when not measured
    cycle: int
    measured_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        # frozen: coerce through object.__setattr__
        object.__setattr__(self, "egfr", validate_lab_value("egfr", self.egfr))
        object.__setattr__(self, "uacr", validate_lab_value("uacr", self.uacr, allow_none=True))
        if isinstance(self.cycle, bool) or not isinstance(self.cycle, int) or self.cycle < 0:
            raise InvalidInput(f"'cycle' must be a non-negative integer, got {self.cycle!r}")
        if not isinstance(self.measured_at, datetime):
            raise InvalidInput("'measured_at' must be a datetime")

    def to_dict(self) -> Dict:
        return {
            "egfr": round(self.egfr, 2),
            "uacr": round(self.uacr, 2) if self.uacr is not None else None,
            "cycle": self.cycle,
            "measured_at": self.measured_at.isoformat(),
        }


# --- 4. DERIVED STATE (Classifier output) ---

@dataclass(frozen=True)
class HealthState:
    gfr_category: GFRCategory
    albuminuria_category: AlbuminuriaCategory
    risk_level: RiskLevel
    ckd_stage: Optional[int]
    clinical_flags: FrozenSet[ClinicalFlag]
    monitoring_frequency: MonitoringFrequency
    target_bp: str
    ckd_severity: Optional[CkdSeverity] = None
    uacr_imputed: bool = False

    @property
    def composite_state(self) -> str:
        return f"{self.gfr_category.value}-{self.albuminuria_category.value}"

    @property
    def has_ckd(self) -> bool:
        return self.ckd_stage is not None

    @property
    def requires_nephrology_referral(self) -> bool:
        return ClinicalFlag.NEPHROLOGY_REFERRAL in self.clinical_flags

    @property
    def requires_dialysis_planning(self) -> bool:
        return ClinicalFlag.DIALYSIS_PLANNING in self.clinical_flags

    # short alias used by the alert and recommendation tables
    dialysis_planning = requires_dialysis_planning

    @property
    def recommend_ras_inhibitor(self) -> bool:
        return ClinicalFlag.RAS_INHIBITOR in self.clinical_flags

    @property
    def recommend_sglt2_inhibitor(self) -> bool:
        return ClinicalFlag.SGLT2_INHIBITOR in self.clinical_flags

    @property
    def gfr_description(self) -> str:
        return DESCRIPTIONS.GFR[self.gfr_category]

    @property
    def albuminuria_description(self) -> str:
        return DESCRIPTIONS.ALBUMINURIA[self.albuminuria_category]

    @property
    def risk_color(self) -> str:
        return DESCRIPTIONS.RISK_COLOR[self.risk_level]

    def to_dict(self) -> Dict:
        return {
            "gfr_category": self.gfr_category.value,
            "albuminuria_category": self.albuminuria_category.value,
            "composite_state": self.composite_state,
            "risk_level": self.risk_level.value,
            "gfr_description": self.gfr_description,
            "albuminuria_description": self.albuminuria_description,
            "risk_color": self.risk_color,
            "ckd_stage": self.ckd_stage,
            "has_ckd": self.has_ckd,
            "ckd_severity": self.ckd_severity.value if self.ckd_severity else None,
            "clinical_flags": sorted(f.value for f in self.clinical_flags),
            "requires_nephrology_referral": self.requires_nephrology_referral,
            "requires_dialysis_planning": self.requires_dialysis_planning,
            "recommend_ras_inhibitor": self.recommend_ras_inhibitor,
            "recommend_sglt2_inhibitor": self.recommend_sglt2_inhibitor,
            "monitoring_frequency": self.monitoring_frequency.value,
            "target_bp": self.target_bp,
            "uacr_imputed": self.uacr_imputed,
        }


# --- 5. SIMULATION INPUTS ---

@dataclass(frozen=True)
class ProgressionProfile:
    category: ProgressionCategory
    annual_decline_range: Tuple[float, float]      # mL/min/year
    monthly_uacr_drift_range: Tuple[float, float]  # fraction per month

    def validate(self) -> None:
        for name, (low, high) in (
            ("annual_decline_range", self.annual_decline_range),
            ("monthly_uacr_drift_range", self.monthly_uacr_drift_range),
        ):
            if low < 0 or high < 0 or low > high:
                raise GenerationError(f"Malformed progression profile {name}: ({low}, {high})")

    def to_dict(self) -> Dict:
        return {
            "category": self.category.value,
            "annual_decline_range": list(self.annual_decline_range),
            "monthly_uacr_drift_range": list(self.monthly_uacr_drift_range),
        }


@dataclass
class Treatment:
    treatment_id: str
    patient_id: str
    drug_class: DrugClass
    medication_name: str
    started_cycle: int
    adherence: float                        # behavioral value, drives the simulation
    baseline_adherence: Optional[float] = None
    estimated_adherence: Optional[float] = None  # last lab-trend estimate
    status: TreatmentStatus = TreatmentStatus.ACTIVE
    stopped_cycle: Optional[int] = None

    def __post_init__(self):
        if not (0.0 <= self.adherence <= 1.0):
            raise InvalidInput(f"Adherence must be within [0, 1], got {self.adherence}")
        if self.baseline_adherence is None:
            self.baseline_adherence = self.adherence

    @property
    def is_active(self) -> bool:
        return self.status == TreatmentStatus.ACTIVE

    def to_dict(self) -> Dict:
        return {
            "treatment_id": self.treatment_id,
            "patient_id": self.patient_id,
            "drug_class": self.drug_class.value,
            "medication_name": self.medication_name,
            "started_cycle": self.started_cycle,
            "adherence": round(self.adherence, 3),
            "baseline_adherence": round(self.baseline_adherence, 3),
            "estimated_adherence": (
                round(self.estimated_adherence, 3) if self.estimated_adherence is not None else None
            ),
            "status": self.status.value,
            "stopped_cycle": self.stopped_cycle,
        }


@dataclass
class Patient:
    patient_id: str
    profile: ProgressionProfile
    diabetes_type: DiabetesType = DiabetesType.NONE
    monitoring_frequency: Optional[MonitoringFrequency] = None
    display_name: str = ""

    def to_dict(self) -> Dict:
        return {
            "patient_id": self.patient_id,
            "display_name": self.display_name,
            "diabetes_type": self.diabetes_type.value,
            "monitoring_frequency": (
                self.monitoring_frequency.value if self.monitoring_frequency else None
            ),
            "progression_profile": self.profile.to_dict(),
        }


# --- 6. EVENTS ---

@dataclass(frozen=True)
class Transition:
    patient_id: str
    from_state: HealthState
    to_state: HealthState
    cycle_from: int
    cycle_to: int
    from_egfr: float
    to_egfr: float
    from_uacr: Optional[float]
    to_uacr: Optional[float]
    egfr_delta: float
    uacr_delta: Optional[float]
    category_changed: bool
    risk_increased: bool
    crossed_critical_threshold: bool
    change_type: ChangeType

    @property
    def from_risk_level(self) -> RiskLevel:
        return self.from_state.risk_level

    @property
    def to_risk_level(self) -> RiskLevel:
        return self.to_state.risk_level

    def to_dict(self) -> Dict:
        return {
            "patient_id": self.patient_id,
            "from_state": self.from_state.composite_state,
            "to_state": self.to_state.composite_state,
            "cycle_from": self.cycle_from,
            "cycle_to": self.cycle_to,
            "from_egfr": round(self.from_egfr, 2),
            "to_egfr": round(self.to_egfr, 2),
            "from_uacr": round(self.from_uacr, 2) if self.from_uacr is not None else None,
            "to_uacr": round(self.to_uacr, 2) if self.to_uacr is not None else None,
            "egfr_delta": round(self.egfr_delta, 2),
            "uacr_delta": round(self.uacr_delta, 2) if self.uacr_delta is not None else None,
            "category_changed": self.category_changed,
            "risk_increased": self.risk_increased,
            "crossed_critical_threshold": self.crossed_critical_threshold,
            "change_type": self.change_type.value,
            "from_risk_level": self.from_risk_level.value,
            "to_risk_level": self.to_risk_level.value,
        }


_ALERT_MOVES = {
    AlertStatus.ACTIVE: {AlertStatus.ACKNOWLEDGED, AlertStatus.DISMISSED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),
    AlertStatus.DISMISSED: set(),
}

@dataclass
class Alert:
    alert_id: str
    patient_id: str
    severity: AlertSeverity
    priority: int
    title: str
    message: str
    reasons: List[str]
    cycle: int
    from_state: str
    to_state: str
    egfr: float
    uacr: Optional[float]
    status: AlertStatus = AlertStatus.ACTIVE
    generated_at: datetime = field(default_factory=datetime.now)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def move_to(self, status: AlertStatus, by: Optional[str] = None,
                at: Optional[datetime] = None) -> None:
        """Applies a lifecycle move. Terminal states never change again."""
        if status not in _ALERT_MOVES[self.status]:
            raise LifecycleError(f"Alert {self.alert_id}: cannot move {self.status.value} -> {status.value}")
        at = at or datetime.now()
        self.status = status
        if status == AlertStatus.ACKNOWLEDGED:
            self.acknowledged_by = by
            self.acknowledged_at = at
        else:
            self.resolved_at = at

    def to_dict(self) -> Dict:
        return {
            "alert_id": self.alert_id,
            "patient_id": self.patient_id,
            "severity": self.severity.value,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "reasons": list(self.reasons),
            "cycle": self.cycle,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "egfr": round(self.egfr, 2),
            "uacr": round(self.uacr, 2) if self.uacr is not None else None,
            "status": self.status.value,
            "generated_at": self.generated_at.isoformat(),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


_RECOMMENDATION_MOVES = {
    RecommendationStatus.PENDING: {RecommendationStatus.IN_PROGRESS, RecommendationStatus.DISMISSED},
    RecommendationStatus.IN_PROGRESS: {RecommendationStatus.COMPLETED},
    RecommendationStatus.COMPLETED: set(),
    RecommendationStatus.DISMISSED: set(),
}

@dataclass
class Recommendation:
    recommendation_id: str
    patient_id: str
    type: RecommendationType
    priority: int
    urgency: Urgency
    reason: str
    cycle: int
    health_state: str
    status: RecommendationStatus = RecommendationStatus.PENDING
    outcome: Optional[str] = None
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in (RecommendationStatus.PENDING, RecommendationStatus.IN_PROGRESS)

    def move_to(self, status: RecommendationStatus, outcome: Optional[str] = None) -> None:
        if status not in _RECOMMENDATION_MOVES[self.status]:
            raise LifecycleError(
                f"Recommendation {self.recommendation_id}: cannot move {self.status.value} -> {status.value}"
            )
        if outcome is not None and status != RecommendationStatus.COMPLETED:
            raise LifecycleError("An outcome can only be recorded on completion")
        self.status = status
        self.outcome = outcome
        self.updated_at = datetime.now()

    def to_dict(self) -> Dict:
        return {
            "recommendation_id": self.recommendation_id,
            "patient_id": self.patient_id,
            "type": self.type.value,
            "priority": self.priority,
            "urgency": self.urgency.value,
            "reason": self.reason,
            "cycle": self.cycle,
            "health_state": self.health_state,
            "status": self.status.value,
            "outcome": self.outcome,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AdherenceRecord:
    treatment_id: str
    patient_id: str
    cycle: int
    adherence_score: float          # lab-trend estimate
    band: AdherenceBand
    behavioral_adherence: float     # the drifting value used by the generator
    egfr: float
    uacr: Optional[float]
    egfr_change: float
    uacr_change: Optional[float]
    calculation_method: str = "lab_trend"

    def to_dict(self) -> Dict:
        return {
            "treatment_id": self.treatment_id,
            "patient_id": self.patient_id,
            "cycle": self.cycle,
            "adherence_score": round(self.adherence_score, 3),
            "band": self.band.value,
            "behavioral_adherence": round(self.behavioral_adherence, 3),
            "egfr": round(self.egfr, 2),
            "uacr": round(self.uacr, 2) if self.uacr is not None else None,
            "egfr_change": round(self.egfr_change, 3),
            "uacr_change": round(self.uacr_change, 3) if self.uacr_change is not None else None,
            "calculation_method": self.calculation_method,
        }


# --- 7. CYCLE OUTPUTS ---

@dataclass
class PatientCycleResult:
    """Everything one patient produced in one cycle. Nothing is persisted yet."""
    patient_id: str
    snapshot: LabSnapshot
    health_state: HealthState
    transition: Optional[Transition] = None
    alert: Optional[Alert] = None
    recommendations: List[Recommendation] = field(default_factory=list)
    treatments: List[Treatment] = field(default_factory=list)
    started_treatments: List[Treatment] = field(default_factory=list)
    adherence_records: List[AdherenceRecord] = field(default_factory=list)


@dataclass(frozen=True)
class PatientFailure:
    patient_id: str
    error_type: str
    message: str

    def to_dict(self) -> Dict:
        return {"patient_id": self.patient_id, "error_type": self.error_type, "message": self.message}


@dataclass
class CohortAdvanceResult:
    new_cycle: int                  # absolute cycles elapsed
    window_slot: int                # slot under the active window policy
    patients_processed: int
    patients_failed: int
    failures: List[PatientFailure] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)
    alerts_generated: int = 0
    recommendations_generated: int = 0
    treatment_changes: int = 0
    window_rolled_over: bool = False
    already_applied: bool = False
    completed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            "new_cycle": self.new_cycle,
            "window_slot": self.window_slot,
            "patients_processed": self.patients_processed,
            "patients_failed": self.patients_failed,
            "failures": [f.to_dict() for f in self.failures],
            "transitions": [t.to_dict() for t in self.transitions],
            "alerts_generated": self.alerts_generated,
            "recommendations_generated": self.recommendations_generated,
            "treatment_changes": self.treatment_changes,
            "window_rolled_over": self.window_rolled_over,
            "already_applied": self.already_applied,
            "completed_at": self.completed_at.isoformat(),
            "model_version": VERSION,
        }


@dataclass
class Cohort:
    cohort_id: str
    seed: int
    patients: Dict[str, Patient] = field(default_factory=dict)
    current_cycle: int = 0          # window slot
    cycles_elapsed: int = 0         # absolute, never rolls over
    results: Dict[int, CohortAdvanceResult] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "cohort_id": self.cohort_id,
            "seed": self.seed,
            "patient_count": len(self.patients),
            "current_cycle": self.current_cycle,
            "cycles_elapsed": self.cycles_elapsed,
        }
