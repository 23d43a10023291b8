import unittest
from dataclasses import replace

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from constants import DrugClass, ProgressionCategory
from kdigo import classify
from models import (
    LabSnapshot,
    Treatment,
    TreatmentStatus,
    AlertStatus,
    AlertSeverity,
    RecommendationStatus,
    RecommendationType,
    MonitoringFrequency,
    Patient,
    AdherenceRecord,
    AdherenceBand,
    PersistenceError,
    ChangeType,
)
from core_progression import ProgressionEngine
from protocols import RecommendationEngine
from safety import AlertGenerator
from storage import InMemoryStore, SQLStore, lab_snapshots
from transitions import detect_transition


def treatment(tid="tx-1", patient_id="P1", drug_class=DrugClass.RAS_INHIBITOR, adherence=0.8):
    return Treatment(treatment_id=tid, patient_id=patient_id, drug_class=drug_class,
                     medication_name="Losartan", started_cycle=1, adherence=adherence)


class StoreContract:
    """Behaviour shared by every store backend."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_01_snapshots_come_back_in_cycle_order(self):
        self.store.append("P1", LabSnapshot(egfr=50.0, uacr=20.0, cycle=0))
        self.store.append("P1", LabSnapshot(egfr=48.0, uacr=None, cycle=1))
        self.store.append("P2", LabSnapshot(egfr=90.0, uacr=5.0, cycle=0))

        latest = self.store.latest("P1")
        self.assertEqual(latest.cycle, 1)
        self.assertIsNone(latest.uacr)
        self.assertEqual([s.cycle for s in self.store.history("P1")], [0, 1])
        self.assertEqual([s.cycle for s in self.store.history("P1", 1)], [1])
        self.assertIsNone(self.store.latest("nobody"))

        many = self.store.latest_many(["P1", "P2", "P3"])
        self.assertEqual(many["P2"].egfr, 90.0)
        self.assertIsNone(many["P3"])

    def test_02_treatment_upsert_and_active_filter(self):
        self.store.upsert(treatment())
        self.store.upsert(treatment("tx-2", drug_class=DrugClass.SGLT2I))
        stopped = treatment("tx-2", drug_class=DrugClass.SGLT2I)
        stopped.status = TreatmentStatus.STOPPED
        self.store.upsert(stopped)

        self.assertEqual(len(self.store.treatments("P1")), 2)
        active = self.store.active_treatments("P1")
        self.assertEqual([t.treatment_id for t in active], ["tx-1"])
        self.assertEqual(self.store.active_treatments_many(["P1", "P9"])["P9"], [])
        self.assertEqual(self.store.get_treatment("tx-2").status, TreatmentStatus.STOPPED)

    def test_03_alert_round_trip_and_update(self):
        t = detect_transition(LabSnapshot(egfr=31.0, uacr=20.0, cycle=1),
                              LabSnapshot(egfr=29.0, uacr=20.0, cycle=2), "P1")
        alert = AlertGenerator.generate(t, alert_id="alert-P1-2")
        self.store.add_alert(alert)

        loaded = self.store.get_alert("alert-P1-2")
        self.assertEqual(loaded.reasons, alert.reasons)
        self.assertEqual(loaded.severity, AlertSeverity.CRITICAL)

        loaded.move_to(AlertStatus.ACKNOWLEDGED, by="nurse")
        self.store.update_alert(loaded)
        self.assertEqual(self.store.get_alert("alert-P1-2").acknowledged_by, "nurse")
        self.assertEqual(len(self.store.alerts(status=AlertStatus.ACKNOWLEDGED)), 1)
        self.assertEqual(self.store.alerts(severity=AlertSeverity.INFO), [])

    def test_04_recommendations_and_open_types(self):
        patient = Patient(patient_id="P1",
                          profile=ProgressionEngine.build_profile(ProgressionCategory.SLOW),
                          monitoring_frequency=MonitoringFrequency.ANNUAL)
        recs = RecommendationEngine.evaluate(classify(40.0, 100.0), 40.0, patient, [], cycle=1)
        for rec in recs:
            self.store.add_recommendation(rec)

        self.assertEqual(self.store.open_recommendation_types("P1"), {r.type for r in recs})
        monitoring = self.store.recommendations(type=RecommendationType.MONITORING_ESCALATION)[0]
        self.assertEqual(monitoring.details["target_frequency"], "monthly")

        monitoring.move_to(RecommendationStatus.DISMISSED)
        self.store.update_recommendation(monitoring)
        self.assertNotIn(RecommendationType.MONITORING_ESCALATION, self.store.open_recommendation_types("P1"))

    def test_05_transaction_rolls_back_on_error(self):
        self.store.append("P1", LabSnapshot(egfr=50.0, uacr=20.0, cycle=0))
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.append("P1", LabSnapshot(egfr=49.0, uacr=20.0, cycle=1))
                self.store.upsert(treatment())
                self.store.save_cohort_state("default", 1, 1)
                raise RuntimeError("boom")
        self.assertEqual(self.store.latest("P1").cycle, 0)
        self.assertEqual(self.store.treatments("P1"), [])
        self.assertIsNone(self.store.load_cohort_state("default"))

    def test_06_rollover_archives_last_slot(self):
        self.store.append("P1", LabSnapshot(egfr=60.0, uacr=20.0, cycle=0))
        for cycle in range(1, 4):
            self.store.append("P1", LabSnapshot(egfr=60.0 - cycle, uacr=20.0, cycle=cycle))
        self.store.rollover("P1", 3)
        history = self.store.history("P1")
        self.assertEqual([s.cycle for s in history], [0, 1])
        self.assertEqual(history[1].egfr, 57.0)

    def test_07_transitions_and_adherence_history(self):
        t = detect_transition(LabSnapshot(egfr=50.0, uacr=20.0, cycle=1),
                              LabSnapshot(egfr=44.0, uacr=20.0, cycle=2), "P1")
        self.store.add_transition(t)
        loaded = self.store.transitions("P1")[0]
        self.assertEqual(loaded.change_type, t.change_type)
        self.assertEqual(loaded.to_state.composite_state, "G3b-A1")
        self.assertEqual(self.store.transitions("P2"), [])

        self.store.add_adherence_record(AdherenceRecord(
            treatment_id="tx-1", patient_id="P1", cycle=2, adherence_score=0.72,
            band=AdherenceBand.GOOD, behavioral_adherence=0.8, egfr=44.0, uacr=20.0,
            egfr_change=-6.0, uacr_change=0.0))
        record = self.store.adherence_history("P1")[0]
        self.assertEqual(record.band, AdherenceBand.GOOD)
        self.assertEqual(record.calculation_method, "lab_trend")

    def test_08_reset_keeps_only_baselines(self):
        self.store.append("P1", LabSnapshot(egfr=60.0, uacr=20.0, cycle=0))
        self.store.append("P1", LabSnapshot(egfr=59.0, uacr=20.0, cycle=1))
        self.store.upsert(treatment())
        self.store.save_cohort_state("default", 1, 1)
        self.store.reset_progression()
        self.assertEqual([s.cycle for s in self.store.history("P1")], [0])
        self.assertEqual(self.store.treatments("P1"), [])
        self.assertEqual(self.store.load_cohort_state("default"), (0, 0))


class TestInMemoryStore(StoreContract, unittest.TestCase):

    def make_store(self):
        return InMemoryStore()

    def test_09_returned_objects_are_copies(self):
        self.store.upsert(treatment())
        t = self.store.get_treatment("tx-1")
        t.adherence = 0.1
        self.assertEqual(self.store.get_treatment("tx-1").adherence, 0.8)


class TestSQLStore(StoreContract, unittest.TestCase):

    def make_store(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        return SQLStore(engine=engine)

    def test_09_database_errors_become_persistence_errors(self):
        lab_snapshots.drop(self.store.engine)
        with self.assertRaises(PersistenceError):
            self.store.latest("P1")

    def test_10_change_type_is_read_back_as_written(self):
        t = detect_transition(LabSnapshot(egfr=50.0, uacr=20.0, cycle=1),
                              LabSnapshot(egfr=49.0, uacr=20.0, cycle=2), "P1")
        self.store.add_transition(replace(t, change_type=ChangeType.STABLE))
        loaded = self.store.transitions("P1")[0]
        self.assertEqual(loaded.change_type, ChangeType.STABLE)
        self.assertAlmostEqual(loaded.egfr_delta, -1.0)


if __name__ == '__main__':
    unittest.main()
