import unittest

from models import LabSnapshot, AlertSeverity, AlertStatus, LifecycleError
from safety import AlertGenerator
from transitions import detect_transition


def transition(prev, curr, patient_id="P1"):
    return detect_transition(LabSnapshot(egfr=prev[0], uacr=prev[1], cycle=1),
                             LabSnapshot(egfr=curr[0], uacr=curr[1], cycle=2), patient_id)


class TestAlertGenerator(unittest.TestCase):

    def test_01_crossing_30_is_critical_with_all_reasons(self):
        alert = AlertGenerator.generate(transition((31.0, 20.0), (29.0, 20.0)))
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertEqual(alert.priority, 1)
        self.assertEqual(alert.status, AlertStatus.ACTIVE)
        self.assertTrue(alert.reasons[0].startswith("eGFR fell below 30"))
        # critical, category, risk, worsened
        self.assertEqual(len(alert.reasons), 4)
        self.assertEqual(alert.title, "Health State Transition: G3b-A1 → G4-A1")
        self.assertEqual(alert.cycle, 2)

    def test_02_any_egfr_below_15_is_critical(self):
        alert = AlertGenerator.generate(transition((14.0, 20.0), (13.5, 20.0)))
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertEqual(len(alert.reasons), 1)
        self.assertIn("kidney failure", alert.reasons[0])

    def test_03_uacr_crossing_300_is_critical(self):
        alert = AlertGenerator.generate(transition((70.0, 290.0), (70.0, 330.0)))
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertTrue(alert.reasons[0].startswith("uACR rose above 300"))

    def test_04_stable_produces_no_alert(self):
        self.assertIsNone(AlertGenerator.generate(transition((50.0, 20.0), (49.8, 20.0))))

    def test_05_rapid_decline_is_a_warning(self):
        alert = AlertGenerator.generate(transition((50.0, 20.0), (44.0, 20.0)))
        self.assertEqual(alert.severity, AlertSeverity.WARNING)
        self.assertEqual(alert.priority, 2)
        # category, risk, rapid decline, worsened
        self.assertEqual(len(alert.reasons), 4)
        self.assertTrue(any("Rapid eGFR decline" in r for r in alert.reasons))
        self.assertEqual(alert.reasons[-1], "Kidney labs worsened")

    def test_06_drop_of_exactly_5_is_not_rapid(self):
        rules = AlertGenerator.matched_rules(transition((80.0, 20.0), (75.0, 20.0)))
        self.assertEqual([sev for sev, _ in rules], [AlertSeverity.INFO])

    def test_07_info_for_minor_changes(self):
        worse = AlertGenerator.generate(transition((50.0, 20.0), (49.0, 20.0)))
        self.assertEqual(worse.severity, AlertSeverity.INFO)
        self.assertEqual(worse.priority, 3)
        better = AlertGenerator.generate(transition((50.0, 20.0), (51.0, 20.0)))
        self.assertEqual(better.reasons, ["Kidney labs improved"])

    def test_08_category_improvement_is_still_a_warning(self):
        alert = AlertGenerator.generate(transition((44.0, 20.0), (46.0, 20.0)))
        self.assertEqual(alert.severity, AlertSeverity.WARNING)
        self.assertFalse(any("Risk level increased" in r for r in alert.reasons))

    def test_09_alert_id_can_be_supplied(self):
        alert = AlertGenerator.generate(transition((50.0, 20.0), (49.0, 20.0), "P7"), alert_id="alert-P7-13")
        self.assertEqual(alert.alert_id, "alert-P7-13")
        self.assertEqual(alert.patient_id, "P7")

    def test_10_g2_a1_to_g3a_a2_is_a_warning(self):
        alert = AlertGenerator.generate(transition((65.0, 20.0), (50.0, 40.0)))
        self.assertEqual(alert.severity, AlertSeverity.WARNING)
        self.assertTrue(any("Risk level increased" in r for r in alert.reasons))
        self.assertEqual(alert.title, "Health State Transition: G2-A1 → G3a-A2")


class TestAlertLifecycle(unittest.TestCase):

    def setUp(self):
        self.alert = AlertGenerator.generate(transition((31.0, 20.0), (29.0, 20.0)))

    def test_01_acknowledge_then_resolve(self):
        self.alert.move_to(AlertStatus.ACKNOWLEDGED, by="dr.who")
        self.assertEqual(self.alert.acknowledged_by, "dr.who")
        self.assertIsNotNone(self.alert.acknowledged_at)
        self.alert.move_to(AlertStatus.RESOLVED)
        self.assertIsNotNone(self.alert.resolved_at)

    def test_02_cannot_resolve_before_acknowledging(self):
        with self.assertRaises(LifecycleError):
            self.alert.move_to(AlertStatus.RESOLVED)

    def test_03_terminal_states_never_revert(self):
        self.alert.move_to(AlertStatus.DISMISSED)
        for status in AlertStatus:
            with self.subTest(status=status):
                with self.assertRaises(LifecycleError):
                    self.alert.move_to(status)
        self.assertEqual(self.alert.status, AlertStatus.DISMISSED)

    def test_04_acknowledged_cannot_be_dismissed(self):
        self.alert.move_to(AlertStatus.ACKNOWLEDGED)
        with self.assertRaises(LifecycleError):
            self.alert.move_to(AlertStatus.DISMISSED)


if __name__ == '__main__':
    unittest.main()
