import random
import unittest

from constants import DrugClass, ProgressionCategory, TREATMENT_LIBRARY
from core_progression import ProgressionEngine
from kdigo import classify
from models import (
    Patient,
    Treatment,
    DiabetesType,
    MonitoringFrequency,
    RecommendationType,
    RecommendationStatus,
    Urgency,
    LifecycleError,
)
from protocols import RecommendationEngine, TreatmentSelector


def make_patient(monitoring, diabetes=DiabetesType.NONE):
    return Patient(
        patient_id="P1",
        profile=ProgressionEngine.build_profile(ProgressionCategory.PROGRESSIVE),
        diabetes_type=diabetes,
        monitoring_frequency=monitoring,
    )


def on(drug_class):
    return Treatment(treatment_id=f"tx-{drug_class.value}", patient_id="P1", drug_class=drug_class,
                     medication_name="x", started_cycle=0, adherence=0.8)


class TestRecommendationEngine(unittest.TestCase):

    def evaluate(self, egfr, uacr, patient, treatments=()):
        return RecommendationEngine.evaluate(classify(egfr, uacr), egfr, patient, list(treatments), cycle=3)

    def test_01_kidney_failure_orders_by_priority(self):
        recs = self.evaluate(10.0, 400.0, make_patient(MonitoringFrequency.MONTHLY))
        self.assertEqual([r.type for r in recs], [
            RecommendationType.DIALYSIS_PLANNING,
            RecommendationType.NEPHROLOGY_REFERRAL,
            RecommendationType.START_RAS_INHIBITOR,
        ])
        self.assertEqual([r.priority for r in recs], [1, 2, 3])
        self.assertEqual(recs[0].urgency, Urgency.URGENT)
        self.assertEqual(recs[1].urgency, Urgency.URGENT)
        self.assertTrue(all(r.status == RecommendationStatus.PENDING for r in recs))
        self.assertTrue(all(r.health_state == "G5-A3" for r in recs))

    def test_02_stage_3_with_albuminuria(self):
        recs = self.evaluate(40.0, 100.0, make_patient(MonitoringFrequency.MONTHLY))
        types = [r.type for r in recs]
        self.assertEqual(types, [
            RecommendationType.NEPHROLOGY_REFERRAL,
            RecommendationType.START_RAS_INHIBITOR,
            RecommendationType.START_SGLT2_INHIBITOR,
        ])

    def test_03_type_1_diabetes_excludes_sglt2(self):
        recs = self.evaluate(40.0, 100.0, make_patient(MonitoringFrequency.MONTHLY, DiabetesType.TYPE_1))
        self.assertNotIn(RecommendationType.START_SGLT2_INHIBITOR, [r.type for r in recs])

    def test_04_sglt2_excluded_below_20(self):
        recs = self.evaluate(19.0, 10.0, make_patient(MonitoringFrequency.MONTHLY))
        types = [r.type for r in recs]
        self.assertIn(RecommendationType.DIALYSIS_PLANNING, types)
        self.assertNotIn(RecommendationType.START_SGLT2_INHIBITOR, types)

    def test_05_existing_treatment_suppresses_initiation(self):
        recs = self.evaluate(40.0, 100.0, make_patient(MonitoringFrequency.MONTHLY),
                             [on(DrugClass.RAS_INHIBITOR), on(DrugClass.SGLT2I)])
        self.assertEqual([r.type for r in recs], [RecommendationType.NEPHROLOGY_REFERRAL])

    def test_06_monitoring_escalation(self):
        recs = self.evaluate(40.0, 100.0, make_patient(MonitoringFrequency.ANNUAL),
                             [on(DrugClass.RAS_INHIBITOR), on(DrugClass.SGLT2I)])
        last = recs[-1]
        self.assertEqual(last.type, RecommendationType.MONITORING_ESCALATION)
        self.assertEqual(last.priority, 4)
        self.assertEqual(last.details["target_frequency"], "monthly")
        self.assertEqual(last.details["current_frequency"], "annually")

    def test_07_healthy_patient_needs_nothing(self):
        self.assertEqual(self.evaluate(95.0, 10.0, make_patient(MonitoringFrequency.ANNUAL)), [])

    def test_08_referral_is_routine_below_very_high_risk(self):
        recs = self.evaluate(95.0, 400.0, make_patient(MonitoringFrequency.QUARTERLY))
        referral = [r for r in recs if r.type == RecommendationType.NEPHROLOGY_REFERRAL][0]
        self.assertEqual(referral.urgency, Urgency.ROUTINE)

    def test_09_ids_are_unique_per_patient_cycle_and_type(self):
        recs = RecommendationEngine.evaluate(classify(10.0, 400.0), 10.0,
                                             make_patient(MonitoringFrequency.ANNUAL), [], cycle=2,
                                             absolute_cycle=14)
        ids = [r.recommendation_id for r in recs]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertTrue(all("-14-" in i for i in ids))


class TestRecommendationLifecycle(unittest.TestCase):

    def setUp(self):
        self.rec = RecommendationEngine.evaluate(classify(10.0, 400.0), 10.0,
                                                 make_patient(MonitoringFrequency.MONTHLY), [], cycle=1)[0]

    def test_01_start_then_complete_with_outcome(self):
        self.rec.move_to(RecommendationStatus.IN_PROGRESS)
        self.assertTrue(self.rec.is_open)
        self.rec.move_to(RecommendationStatus.COMPLETED, outcome="Fistula planned")
        self.assertEqual(self.rec.outcome, "Fistula planned")
        self.assertFalse(self.rec.is_open)

    def test_02_cannot_complete_from_pending(self):
        with self.assertRaises(LifecycleError):
            self.rec.move_to(RecommendationStatus.COMPLETED)

    def test_03_dismissed_is_final(self):
        self.rec.move_to(RecommendationStatus.DISMISSED)
        with self.assertRaises(LifecycleError):
            self.rec.move_to(RecommendationStatus.IN_PROGRESS)

    def test_04_outcome_only_on_completion(self):
        with self.assertRaises(LifecycleError):
            self.rec.move_to(RecommendationStatus.DISMISSED, outcome="not needed")


class TestTreatmentSelector(unittest.TestCase):

    def test_01_certain_initiation_starts_every_eligible_class(self):
        patient = make_patient(MonitoringFrequency.MONTHLY)
        state = classify(40.0, 100.0)
        started = TreatmentSelector.select_initiations(state, 40.0, patient, [], random.Random(1),
                                                       probability=1.0, cycle=5, absolute_cycle=5)
        self.assertEqual({t.drug_class for t in started}, {DrugClass.RAS_INHIBITOR, DrugClass.SGLT2I})
        for t in started:
            self.assertIn(t.medication_name, TREATMENT_LIBRARY.get(t.drug_class).medications)
            self.assertTrue(0.6 <= t.adherence <= 0.9)
            self.assertEqual(t.baseline_adherence, t.adherence)
            self.assertEqual(t.started_cycle, 5)

    def test_02_zero_probability_starts_nothing(self):
        started = TreatmentSelector.select_initiations(
            classify(40.0, 100.0), 40.0, make_patient(MonitoringFrequency.MONTHLY), [], random.Random(1),
            probability=0.0, cycle=5, absolute_cycle=5)
        self.assertEqual(started, [])

    def test_03_not_eligible_when_already_treated(self):
        classes = TreatmentSelector.eligible_classes(
            classify(40.0, 100.0), 40.0, make_patient(MonitoringFrequency.MONTHLY), [on(DrugClass.RAS_INHIBITOR)])
        self.assertEqual(classes, [DrugClass.SGLT2I])


if __name__ == '__main__':
    unittest.main()
