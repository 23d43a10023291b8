# protocols.py
import random
from typing import List, Optional

from constants import KDIGO_THRESHOLDS, TREATMENT_LIBRARY, DrugClass, RiskLevel
from adherence import AdherenceEstimator
from models import (
    HealthState,
    Patient,
    Treatment,
    Recommendation,
    RecommendationType,
    Urgency,
    DiabetesType,
)


def _has_active(treatments: List[Treatment], drug_class: DrugClass) -> bool:
    return any(t.is_active and t.drug_class == drug_class for t in treatments)


class TreatmentSelector:
    @staticmethod
    def ras_eligible(state: HealthState, treatments: List[Treatment]) -> bool:
        return state.recommend_ras_inhibitor and not _has_active(treatments, DrugClass.RAS_INHIBITOR)

    @staticmethod
    def sglt2_eligible(state: HealthState, egfr: float, patient: Patient,
                       treatments: List[Treatment]) -> bool:
        # Contraindicated below eGFR 20 and in type 1 diabetes
        if not state.recommend_sglt2_inhibitor:
            return False
        if egfr < KDIGO_THRESHOLDS.DIALYSIS_PLANNING_G4_EGFR:
            return False
        if patient.diabetes_type == DiabetesType.TYPE_1:
            return False
        return not _has_active(treatments, DrugClass.SGLT2I)

    @staticmethod
    def eligible_classes(state: HealthState, egfr: float, patient: Patient,
                         treatments: List[Treatment]) -> List[DrugClass]:
        classes = []
        if TreatmentSelector.ras_eligible(state, treatments):
            classes.append(DrugClass.RAS_INHIBITOR)
        if TreatmentSelector.sglt2_eligible(state, egfr, patient, treatments):
            classes.append(DrugClass.SGLT2I)
        return classes

    @staticmethod
    def start(patient_id: str, drug_class: DrugClass, cycle: int, treatment_id: str,
              adherence: float, medication_name: Optional[str] = None) -> Treatment:
        if medication_name is None:
            medication_name = TREATMENT_LIBRARY.get(drug_class).medications[0]
        return Treatment(
            treatment_id=treatment_id,
            patient_id=patient_id,
            drug_class=drug_class,
            medication_name=medication_name,
            started_cycle=cycle,
            adherence=adherence,
        )

    @staticmethod
    def select_initiations(state: HealthState, egfr: float, patient: Patient,
                           treatments: List[Treatment], rng: random.Random,
                           probability: float, cycle: int, absolute_cycle: int) -> List[Treatment]:
        """
        Automated initiation: each eligible class starts with the given
        probability, a random medication of the class and a random baseline adherence.
        """
        started = []
        for drug_class in TreatmentSelector.eligible_classes(state, egfr, patient, treatments):
            if rng.random() >= probability:
                continue
            medication = rng.choice(TREATMENT_LIBRARY.get(drug_class).medications)
            started.append(TreatmentSelector.start(
                patient_id=patient.patient_id,
                drug_class=drug_class,
                cycle=cycle,
                treatment_id=f"tx-{patient.patient_id}-{absolute_cycle}-{drug_class.value}",
                adherence=AdherenceEstimator.baseline(rng),
                medication_name=medication,
            ))
        return started


class RecommendationEngine:
    """
    Stateless rules over the current HealthState.
    Output is ordered by priority: dialysis, referral, drug initiation, monitoring.
    """

    @staticmethod
    def evaluate(state: HealthState, egfr: float, patient: Patient, treatments: List[Treatment],
                 cycle: int, absolute_cycle: Optional[int] = None) -> List[Recommendation]:
        if absolute_cycle is None:
            absolute_cycle = cycle
        composite = state.composite_state
        recs = []

        def add(rec_type: RecommendationType, priority: int, urgency: Urgency, reason: str, **details):
            recs.append(Recommendation(
                recommendation_id=f"rec-{patient.patient_id}-{absolute_cycle}-{rec_type.value}",
                patient_id=patient.patient_id,
                type=rec_type,
                priority=priority,
                urgency=urgency,
                reason=reason,
                cycle=cycle,
                health_state=composite,
                details=details,
            ))

        if state.requires_dialysis_planning:
            add(RecommendationType.DIALYSIS_PLANNING, 1, Urgency.URGENT,
                f"eGFR {egfr:.1f} ({state.gfr_category.value}): begin renal replacement planning")

        if state.requires_nephrology_referral:
            urgency = Urgency.URGENT if state.risk_level == RiskLevel.VERY_HIGH else Urgency.ROUTINE
            add(RecommendationType.NEPHROLOGY_REFERRAL, 2, urgency,
                f"{composite} ({state.risk_level.value} risk) meets nephrology referral criteria")

        if TreatmentSelector.ras_eligible(state, treatments):
            add(RecommendationType.START_RAS_INHIBITOR, 3, Urgency.ROUTINE,
                f"Albuminuria {state.albuminuria_category.value}: start ACE inhibitor or ARB",
                drug_class=DrugClass.RAS_INHIBITOR.value)

        if TreatmentSelector.sglt2_eligible(state, egfr, patient, treatments):
            add(RecommendationType.START_SGLT2_INHIBITOR, 3, Urgency.ROUTINE,
                f"CKD stage {state.ckd_stage}: start SGLT2 inhibitor",
                drug_class=DrugClass.SGLT2I.value)

        if patient.monitoring_frequency != state.monitoring_frequency:
            current = patient.monitoring_frequency.value if patient.monitoring_frequency else "none"
            add(RecommendationType.MONITORING_ESCALATION, 4, Urgency.ROUTINE,
                f"Change lab monitoring from {current} to {state.monitoring_frequency.value}",
                current_frequency=current,
                target_frequency=state.monitoring_frequency.value)

        recs.sort(key=lambda r: r.priority)
        return recs
