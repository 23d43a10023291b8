"""
NephroFlow: Cohort Cycle Driver
===============================
Advances a whole cohort by one simulated month:

    batch read -> per-patient simulation in a worker pool -> one write
    transaction -> cycle counter advanced

Per-patient GenerationErrors are collected and reported; persistence
failures abort the cycle with nothing written and the counter unchanged.
"""

import logging
import random
import threading
from abc import ABC, abstractmethod
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from constants import CYCLE_CONSTANTS, ADHERENCE_CONSTANTS, DrugClass, RiskLevel
from models import (
    Cohort,
    Patient,
    LabSnapshot,
    Treatment,
    TreatmentStatus,
    AdherenceRecord,
    PatientCycleResult,
    PatientFailure,
    CohortAdvanceResult,
    ProgressionProfile,
    DiabetesType,
    AlertStatus,
    RecommendationStatus,
    RecommendationType,
    MonitoringFrequency,
    ChangeType,
    GenerationError,
    InvalidInput,
    ConcurrencyConflict,
    CycleWindowExhausted,
    NotFoundError,
)
from config import COHORT
from kdigo import classify
from core_progression import ProgressionEngine
from adherence import AdherenceEstimator
from transitions import detect_transition
from safety import AlertGenerator
from protocols import RecommendationEngine, TreatmentSelector
from storage import CohortStore

logger = logging.getLogger(__name__)


# --- 1. CYCLE WINDOW POLICIES ---

class CyclePolicy(ABC):
    name = ""

    def __init__(self, window: int):
        self.window = window

    @abstractmethod
    def next_slot(self, current_slot: int) -> Tuple[int, bool]:
        """Returns (slot for the next cycle, whether the window rolls over first)."""


class ClinicalWindowPolicy(CyclePolicy):
    """A fixed 24-month study window. Stops at the end until explicitly reset."""
    name = "clinical"

    def __init__(self, window: int = CYCLE_CONSTANTS.CLINICAL_WINDOW):
        super().__init__(window)

    def next_slot(self, current_slot):
        if current_slot >= self.window:
            raise CycleWindowExhausted(f"Maximum cycles ({self.window}) reached. Reset the cohort to continue.")
        return current_slot + 1, False


class RollingWindowPolicy(CyclePolicy):
    """
    A rolling 12-month display window. At the end of the window the last
    month is archived into slot 1 and the cohort continues at slot 2.
    """
    name = "rolling"

    def __init__(self, window: int = CYCLE_CONSTANTS.ROLLING_WINDOW):
        super().__init__(window)

    def next_slot(self, current_slot):
        if current_slot >= self.window:
            return 2, True
        return current_slot + 1, False


def make_policy(name: str) -> CyclePolicy:
    if name == ClinicalWindowPolicy.name:
        return ClinicalWindowPolicy()
    if name == RollingWindowPolicy.name:
        return RollingWindowPolicy()
    raise ValueError(f"Unknown cycle policy '{name}'")


# --- 2. ENROLLMENT ---

def enroll_patient(cohort: Cohort, store: CohortStore, patient_id: str, egfr: float,
                   uacr: Optional[float], profile: ProgressionProfile,
                   diabetes_type: DiabetesType = DiabetesType.NONE,
                   display_name: str = "") -> Patient:
    """Adds a patient with a baseline (cycle 0) snapshot."""
    if patient_id in cohort.patients:
        raise InvalidInput(f"Patient {patient_id} is already enrolled")
    baseline = LabSnapshot(egfr=egfr, uacr=uacr, cycle=0)
    state = classify(baseline.egfr, baseline.uacr)
    patient = Patient(
        patient_id=patient_id,
        profile=profile,
        diabetes_type=diabetes_type,
        monitoring_frequency=state.monitoring_frequency,
        display_name=display_name or patient_id,
    )
    if store.latest(patient_id) is None:
        store.append(patient_id, baseline)
    cohort.patients[patient_id] = patient
    return patient


def _draw_diabetes(rng: random.Random) -> DiabetesType:
    roll = rng.random()
    cumulative = 0.0
    for label, share in COHORT["diabetes_mix"]:
        cumulative += share
        if roll < cumulative:
            return DiabetesType(label)
    return DiabetesType.NONE


def build_cohort(size: int, seed: int, store: CohortStore, cohort_id: str = "default") -> Cohort:
    """
    Synthetic cohort, deterministic for a seed.
    Resumes the stored cycle counters when the store already knows the cohort.
    """
    cohort = Cohort(cohort_id=cohort_id, seed=seed)
    egfr_low, egfr_high = COHORT["baseline_egfr_range"]
    uacr_low, uacr_high = COHORT["baseline_uacr_range"]

    with store.transaction():
        for i in range(size):
            patient_id = f"P{i + 1:04d}"
            rng = random.Random(f"{seed}:{patient_id}:baseline")
            egfr = round(rng.uniform(egfr_low, egfr_high), 1)
            uacr = round(rng.uniform(uacr_low, uacr_high), 1)
            diabetes = _draw_diabetes(rng)
            profile = ProgressionEngine.assign_profile(rng)
            enroll_patient(cohort, store, patient_id, egfr, uacr, profile, diabetes,
                           display_name=f"Patient {i + 1}")

        stored = store.load_cohort_state(cohort_id)
        if stored is None:
            store.save_cohort_state(cohort_id, 0, 0)
        else:
            cohort.current_cycle, cohort.cycles_elapsed = stored

    logger.info(f"Cohort '{cohort_id}' ready: {size} patients, seed {seed}, cycle {cohort.cycles_elapsed}")
    return cohort


# --- 3. THE DRIVER ---

class CohortCycleDriver:

    def __init__(self, store: CohortStore, policy: Optional[CyclePolicy] = None, workers: int = 4,
                 lock_timeout: float = 30.0,
                 auto_initiation_probability: float = CYCLE_CONSTANTS.AUTO_INITIATION_PROBABILITY):
        self.store = store
        self.policy = policy or ClinicalWindowPolicy()
        self.workers = workers
        self.lock_timeout = lock_timeout
        self.auto_initiation_probability = auto_initiation_probability
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, cohort_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(cohort_id, threading.Lock())

    def _acquire(self, cohort: Cohort) -> threading.Lock:
        lock = self._lock_for(cohort.cohort_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict(f"Cohort '{cohort.cohort_id}' is being advanced by another caller")
        return lock

    # --- per patient (runs in the worker pool) ---

    def _simulate_patient(self, cohort: Cohort, patient: Patient, prior: Optional[LabSnapshot],
                          treatments: List[Treatment], open_types: set, slot: int,
                          absolute_cycle: int, rolled_over: bool,
                          measured_at: datetime) -> PatientCycleResult:
        if prior is None:
            raise GenerationError(f"Patient {patient.patient_id} has no baseline snapshot")
        if rolled_over:
            prior = LabSnapshot(egfr=prior.egfr, uacr=prior.uacr, cycle=1, measured_at=prior.measured_at)

        pid = patient.patient_id
        rng = ProgressionEngine.patient_rng(cohort.seed, pid, absolute_cycle)
        active = [t for t in treatments if t.is_active]

        try:
            step = ProgressionEngine.simulate_step(prior, patient.profile, active, rng, slot, measured_at)
        except InvalidInput as e:
            raise GenerationError(f"Patient {pid}: {e}") from e

        snapshot = step.snapshot
        state = classify(snapshot.egfr, snapshot.uacr)
        transition = detect_transition(prior, snapshot, pid)
        alert = AlertGenerator.generate(transition, alert_id=f"alert-{pid}-{absolute_cycle}",
                                        generated_at=measured_at)

        # Trend estimate is recorded; drift moves the behavioral value for next cycle
        records = []
        if active:
            score = AdherenceEstimator.estimate(
                step.observed_egfr_benefit, step.effect.full_egfr_benefit,
                step.observed_uacr_reduction, step.effect.full_uacr_reduction,
            )
            band = AdherenceEstimator.band(score)
            for t in active:
                records.append(AdherenceRecord(
                    treatment_id=t.treatment_id,
                    patient_id=pid,
                    cycle=absolute_cycle,
                    adherence_score=score,
                    band=band,
                    behavioral_adherence=t.adherence,
                    egfr=snapshot.egfr,
                    uacr=snapshot.uacr,
                    egfr_change=step.egfr_change,
                    uacr_change=step.uacr_change,
                ))
                t.estimated_adherence = score
                t.adherence = AdherenceEstimator.drift(t.adherence, rng)

        started = TreatmentSelector.select_initiations(
            state, snapshot.egfr, patient, active, rng,
            self.auto_initiation_probability, absolute_cycle, absolute_cycle,
        )

        recommendations = [
            r for r in RecommendationEngine.evaluate(state, snapshot.egfr, patient, active + started,
                                                     slot, absolute_cycle)
            if r.type not in open_types
        ]

        return PatientCycleResult(
            patient_id=pid,
            snapshot=snapshot,
            health_state=state,
            transition=transition,
            alert=alert,
            recommendations=recommendations,
            treatments=active,
            started_treatments=started,
            adherence_records=records,
        )

    def _write_treatments(self, r: PatientCycleResult) -> int:
        """
        Reconciles the cycle's treatment changes with the store. Manual stops and
        starts may land while the cycle computes; the stored state wins.
        Returns the number of automated starts written.
        """
        for t in r.treatments:
            stored = self.store.get_treatment(t.treatment_id)
            if stored is not None and not stored.is_active:
                logger.info(f"Treatment {t.treatment_id} was stopped during the cycle; keeping it stopped")
                continue
            self.store.upsert(t)

        active_classes = {t.drug_class for t in self.store.active_treatments(r.patient_id)}
        written = 0
        for t in r.started_treatments:
            if t.drug_class in active_classes:
                continue
            self.store.upsert(t)
            active_classes.add(t.drug_class)
            written += 1
        return written

    # --- the cohort step ---

    def advance_cycle(self, cohort: Cohort, target_cycle: Optional[int] = None) -> CohortAdvanceResult:
        """
        Simulates one month for every patient.
        target_cycle makes the call idempotent: a cycle that was already applied
        returns its stored result with already_applied=True.
        """
        lock = self._acquire(cohort)
        try:
            if target_cycle is not None:
                if target_cycle <= cohort.cycles_elapsed:
                    stored = cohort.results.get(target_cycle)
                    if stored is not None:
                        return replace(stored, already_applied=True)
                    return CohortAdvanceResult(new_cycle=cohort.cycles_elapsed, window_slot=cohort.current_cycle,
                                               patients_processed=0, patients_failed=0, already_applied=True)
                if target_cycle > cohort.cycles_elapsed + 1:
                    raise InvalidInput(
                        f"Cannot jump to cycle {target_cycle}; the cohort is at {cohort.cycles_elapsed}")

            slot, rolled_over = self.policy.next_slot(cohort.current_cycle)
            absolute_cycle = cohort.cycles_elapsed + 1
            patient_ids = sorted(cohort.patients)

            # 1. Batch read
            latest = self.store.latest_many(patient_ids)
            treatments = self.store.active_treatments_many(patient_ids)
            open_types = {pid: self.store.open_recommendation_types(pid) for pid in patient_ids}

            # 2. Compute
            measured_at = datetime.now()
            results: List[PatientCycleResult] = []
            failures: List[PatientFailure] = []
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                futures = {
                    pid: pool.submit(self._simulate_patient, cohort, cohort.patients[pid], latest.get(pid),
                                     treatments.get(pid, []), open_types[pid], slot, absolute_cycle,
                                     rolled_over, measured_at)
                    for pid in patient_ids
                }
                for pid, future in futures.items():
                    try:
                        results.append(future.result())
                    except GenerationError as e:
                        logger.warning(f"Cycle {absolute_cycle}: patient {pid} failed: {e}")
                        failures.append(PatientFailure(pid, type(e).__name__, str(e)))

            # 3. One write transaction
            started_count = 0
            with self.store.transaction():
                if rolled_over:
                    for pid in patient_ids:
                        self.store.rollover(pid, self.policy.window)
                for r in results:
                    self.store.append(r.patient_id, r.snapshot)
                    self.store.add_transition(r.transition)
                    if r.alert is not None:
                        self.store.add_alert(r.alert)
                    for rec in r.recommendations:
                        self.store.add_recommendation(rec)
                    started_count += self._write_treatments(r)
                    for record in r.adherence_records:
                        self.store.add_adherence_record(record)
                self.store.save_cohort_state(cohort.cohort_id, slot, absolute_cycle)

            # 4. Counter moves only after everything is stored
            result = CohortAdvanceResult(
                new_cycle=absolute_cycle,
                window_slot=slot,
                patients_processed=len(results),
                patients_failed=len(failures),
                failures=failures,
                transitions=[r.transition for r in results],
                alerts_generated=sum(1 for r in results if r.alert is not None),
                recommendations_generated=sum(len(r.recommendations) for r in results),
                treatment_changes=started_count,
                window_rolled_over=rolled_over,
                completed_at=measured_at,
            )
            cohort.current_cycle = slot
            cohort.cycles_elapsed = absolute_cycle
            cohort.results[absolute_cycle] = result

            logger.info(
                f"Cycle {absolute_cycle} (slot {slot}) complete: {result.patients_processed} processed, "
                f"{result.patients_failed} failed, {result.alerts_generated} alerts"
            )
            return result
        finally:
            lock.release()

    def reset(self, cohort: Cohort) -> None:
        """Clears all progression data and returns the cohort to its baselines."""
        lock = self._acquire(cohort)
        try:
            with self.store.transaction():
                self.store.reset_progression()
                self.store.save_cohort_state(cohort.cohort_id, 0, 0)
            for patient in cohort.patients.values():
                baseline = self.store.latest(patient.patient_id)
                if baseline is not None:
                    patient.monitoring_frequency = classify(baseline.egfr, baseline.uacr).monitoring_frequency
            cohort.current_cycle = 0
            cohort.cycles_elapsed = 0
            cohort.results = {}
            logger.info(f"Cohort '{cohort.cohort_id}' reset to baseline")
        finally:
            lock.release()

    # --- manual treatment management ---

    def start_treatment(self, cohort: Cohort, patient_id: str, drug_class: DrugClass,
                        medication_name: Optional[str] = None,
                        adherence: float = ADHERENCE_CONSTANTS.MANUAL_START_DEFAULT) -> Treatment:
        if patient_id not in cohort.patients:
            raise NotFoundError(patient_id)
        if any(t.drug_class == drug_class for t in self.store.active_treatments(patient_id)):
            raise InvalidInput(f"Patient {patient_id} is already on an active {drug_class.value}")
        treatment = TreatmentSelector.start(
            patient_id=patient_id,
            drug_class=drug_class,
            cycle=cohort.cycles_elapsed,
            treatment_id=f"tx-{patient_id}-{cohort.cycles_elapsed}-{drug_class.value}-manual",
            adherence=adherence,
            medication_name=medication_name,
        )
        self.store.upsert(treatment)
        return treatment

    def stop_treatment(self, cohort: Cohort, patient_id: str, treatment_id: str) -> Treatment:
        treatment = self.store.get_treatment(treatment_id)
        if treatment is None or treatment.patient_id != patient_id:
            raise NotFoundError(treatment_id)
        treatment.status = TreatmentStatus.STOPPED
        treatment.stopped_cycle = cohort.cycles_elapsed
        self.store.upsert(treatment)
        return treatment

    # --- alert and recommendation lifecycles ---

    def update_alert(self, alert_id: str, status: AlertStatus, by: Optional[str] = None):
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError(alert_id)
        alert.move_to(status, by=by)
        self.store.update_alert(alert)
        return alert

    def update_recommendation(self, cohort: Cohort, recommendation_id: str, status: RecommendationStatus,
                              outcome: Optional[str] = None):
        # Holds the cohort lock: a completed monitoring change edits a patient the workers read
        lock = self._acquire(cohort)
        try:
            rec = self.store.get_recommendation(recommendation_id)
            if rec is None:
                raise NotFoundError(recommendation_id)
            rec.move_to(status, outcome=outcome)
            self.store.update_recommendation(rec)

            # A completed monitoring change becomes the patient's cadence
            if status == RecommendationStatus.COMPLETED and rec.type == RecommendationType.MONITORING_ESCALATION:
                patient = cohort.patients.get(rec.patient_id)
                target = rec.details.get("target_frequency")
                if patient is not None and target:
                    patient.monitoring_frequency = MonitoringFrequency(target)
            return rec
        finally:
            lock.release()

    # --- dashboard summary ---

    def summary(self, cohort: Cohort) -> Dict:
        latest = self.store.latest_many(sorted(cohort.patients))
        risk = Counter({level.value: 0 for level in RiskLevel})
        for snapshot in latest.values():
            if snapshot is not None:
                risk[classify(snapshot.egfr, snapshot.uacr).risk_level.value] += 1

        transitions = self.store.transitions()
        change = Counter(t.change_type.value for t in transitions)
        alerts = self.store.alerts()
        recs = self.store.recommendations()
        return {
            "cohort": cohort.to_dict(),
            "policy": self.policy.name,
            "risk_distribution": dict(risk),
            "transitions": {
                "total": len(transitions),
                "improved": change.get(ChangeType.IMPROVED.value, 0),
                "worsened": change.get(ChangeType.WORSENED.value, 0),
                "stable": change.get(ChangeType.STABLE.value, 0),
                "category_changes": sum(1 for t in transitions if t.category_changed),
            },
            "alerts": {
                "total": len(alerts),
                "active": sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
                "by_severity": dict(Counter(a.severity.value for a in alerts)),
            },
            "recommendations": {
                "total": len(recs),
                "open": sum(1 for r in recs if r.is_open),
                "by_type": dict(Counter(r.type.value for r in recs)),
            },
        }
