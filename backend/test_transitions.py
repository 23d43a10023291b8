import unittest

from constants import RiskLevel
from models import LabSnapshot, ChangeType
from transitions import detect_transition


def snap(egfr, uacr, cycle):
    return LabSnapshot(egfr=egfr, uacr=uacr, cycle=cycle)


class TestTransitionDetector(unittest.TestCase):

    def test_01_small_decline_is_worsened_without_category_change(self):
        t = detect_transition(snap(50.0, 20.0, 1), snap(48.0, 20.0, 2), "P1")
        self.assertEqual(t.change_type, ChangeType.WORSENED)
        self.assertFalse(t.category_changed)
        self.assertFalse(t.risk_increased)
        self.assertFalse(t.crossed_critical_threshold)
        self.assertAlmostEqual(t.egfr_delta, -2.0)
        self.assertEqual((t.cycle_from, t.cycle_to), (1, 2))
        self.assertEqual(t.patient_id, "P1")

    def test_02_noise_is_stable(self):
        t = detect_transition(snap(50.0, 20.0, 1), snap(49.6, 21.0, 2))
        self.assertEqual(t.change_type, ChangeType.STABLE)

    def test_03_thresholds_are_strict(self):
        # exactly 0.5 mL/min and exactly 10% do not count
        t = detect_transition(snap(50.0, 100.0, 1), snap(49.5, 110.0, 2))
        self.assertEqual(t.change_type, ChangeType.STABLE)

    def test_04_crossing_30_is_critical(self):
        t = detect_transition(snap(31.0, 20.0, 3), snap(29.0, 20.0, 4))
        self.assertTrue(t.crossed_critical_threshold)
        self.assertTrue(t.category_changed)
        self.assertTrue(t.risk_increased)
        self.assertEqual(t.from_risk_level, RiskLevel.HIGH)
        self.assertEqual(t.to_risk_level, RiskLevel.VERY_HIGH)
        self.assertEqual(t.from_state.composite_state, "G3b-A1")
        self.assertEqual(t.to_state.composite_state, "G4-A1")

    def test_05_crossing_15_is_critical(self):
        t = detect_transition(snap(15.5, 20.0, 3), snap(14.5, 20.0, 4))
        self.assertTrue(t.crossed_critical_threshold)

    def test_06_staying_below_30_is_not_a_crossing(self):
        t = detect_transition(snap(25.0, 20.0, 3), snap(24.0, 20.0, 4))
        self.assertFalse(t.crossed_critical_threshold)

    def test_07_albuminuria_crossing_300(self):
        t = detect_transition(snap(70.0, 280.0, 1), snap(70.0, 320.0, 2))
        self.assertTrue(t.crossed_critical_threshold)
        self.assertEqual(t.change_type, ChangeType.WORSENED)
        self.assertAlmostEqual(t.uacr_delta, 40.0)

    def test_08_missing_uacr_is_skipped(self):
        t = detect_transition(snap(70.0, None, 1), snap(70.2, 500.0, 2))
        self.assertIsNone(t.uacr_delta)
        self.assertFalse(t.crossed_critical_threshold)
        self.assertEqual(t.change_type, ChangeType.STABLE)

    def test_09_opposite_signals_gfr_category_decides(self):
        # eGFR worse and crosses G2 -> G3a; uACR 20% better but stays A2
        t = detect_transition(snap(61.0, 100.0, 1), snap(59.0, 80.0, 2))
        self.assertEqual(t.change_type, ChangeType.WORSENED)

    def test_10_opposite_signals_albuminuria_category_decides(self):
        # eGFR 1 worse within G3a; uACR falls A2 -> A1
        t = detect_transition(snap(50.0, 40.0, 1), snap(49.0, 25.0, 2))
        self.assertEqual(t.change_type, ChangeType.IMPROVED)

    def test_11_opposite_signals_without_category_change_are_stable(self):
        t = detect_transition(snap(50.0, 100.0, 1), snap(49.0, 80.0, 2))
        self.assertEqual(t.change_type, ChangeType.STABLE)

    def test_12_opposite_signals_both_categories_use_risk(self):
        worse = detect_transition(snap(59.0, 20.0, 1), snap(61.0, 310.0, 2))
        self.assertEqual(worse.change_type, ChangeType.WORSENED)
        better = detect_transition(snap(61.0, 310.0, 1), snap(59.0, 20.0, 2))
        self.assertEqual(better.change_type, ChangeType.IMPROVED)

    def test_13_rise_from_zero_albuminuria_is_worse(self):
        t = detect_transition(snap(70.0, 0.0, 1), snap(70.0, 5.0, 2))
        self.assertEqual(t.change_type, ChangeType.WORSENED)

    def test_14_improvement(self):
        t = detect_transition(snap(40.0, 200.0, 1), snap(46.0, 150.0, 2))
        self.assertEqual(t.change_type, ChangeType.IMPROVED)
        self.assertFalse(t.risk_increased)
        self.assertTrue(t.category_changed)

    def test_15_to_dict(self):
        body = detect_transition(snap(31.0, 20.0, 3), snap(29.0, 20.0, 4), "P9").to_dict()
        self.assertEqual(body["from_state"], "G3b-A1")
        self.assertEqual(body["to_state"], "G4-A1")
        self.assertEqual(body["change_type"], "worsened")
        self.assertEqual(body["to_risk_level"], "very_high")

    def test_16_g2_a1_to_g3a_a2(self):
        t = detect_transition(snap(65.0, 20.0, 1), snap(50.0, 40.0, 2))
        self.assertEqual((t.from_state.composite_state, t.to_state.composite_state), ("G2-A1", "G3a-A2"))
        self.assertTrue(t.category_changed)
        self.assertTrue(t.risk_increased)
        self.assertFalse(t.crossed_critical_threshold)
        self.assertEqual(t.change_type, ChangeType.WORSENED)


if __name__ == '__main__':
    unittest.main()
