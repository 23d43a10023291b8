import random
import unittest

from adherence import AdherenceEstimator
from models import AdherenceBand


class FixedRng:
    """Returns scripted values for random() and uniform()."""
    def __init__(self, roll, change=0.0):
        self.roll = roll
        self.change = change

    def random(self):
        return self.roll

    def uniform(self, low, high):
        return self.change


class TestAdherenceEstimator(unittest.TestCase):

    def test_01_trend_matching_expectation_is_full_adherence(self):
        self.assertEqual(AdherenceEstimator.estimate(1.2, 1.2, 0.3, 0.3), 1.0)

    def test_02_half_the_expected_trend(self):
        self.assertAlmostEqual(AdherenceEstimator.estimate(0.5, 1.0, 0.2, 0.4), 0.5)

    def test_03_metrics_are_averaged(self):
        self.assertAlmostEqual(AdherenceEstimator.estimate(1.0, 1.0, 0.0, 0.4), 0.5)

    def test_04_result_is_clamped(self):
        self.assertEqual(AdherenceEstimator.estimate(-1.0, 1.0), 0.0)
        self.assertEqual(AdherenceEstimator.estimate(3.0, 1.0, 0.9, 0.3), 1.0)

    def test_05_zero_expected_change_counts_as_adherent(self):
        self.assertEqual(AdherenceEstimator.estimate(0.7, 0.0), 1.0)
        self.assertAlmostEqual(AdherenceEstimator.estimate(0.0, 1e-12, 0.1, 0.2), 0.75)

    def test_06_missing_uacr_uses_egfr_only(self):
        self.assertAlmostEqual(AdherenceEstimator.estimate(0.6, 1.0, None, 0.3), 0.6)

    def test_07_bands(self):
        cases = [
            (1.0, AdherenceBand.EXCELLENT), (0.90, AdherenceBand.EXCELLENT),
            (0.89, AdherenceBand.GOOD), (0.70, AdherenceBand.GOOD),
            (0.69, AdherenceBand.FAIR), (0.50, AdherenceBand.FAIR),
            (0.49, AdherenceBand.POOR), (0.30, AdherenceBand.POOR),
            (0.29, AdherenceBand.VERY_POOR), (0.0, AdherenceBand.VERY_POOR),
        ]
        for score, band in cases:
            with self.subTest(score=score):
                self.assertEqual(AdherenceEstimator.band(score), band)

    def test_08_drift_skipped_most_cycles(self):
        self.assertEqual(AdherenceEstimator.drift(0.75, FixedRng(roll=0.2, change=0.1)), 0.75)
        self.assertEqual(AdherenceEstimator.drift(0.75, FixedRng(roll=0.9, change=0.1)), 0.75)

    def test_09_drift_applies_and_clamps(self):
        self.assertAlmostEqual(AdherenceEstimator.drift(0.75, FixedRng(roll=0.1, change=0.1)), 0.85)
        self.assertEqual(AdherenceEstimator.drift(0.95, FixedRng(roll=0.1, change=0.15)), 1.0)
        self.assertEqual(AdherenceEstimator.drift(0.2, FixedRng(roll=0.1, change=-0.15)), 0.1)

    def test_10_drift_stays_in_range_over_time(self):
        rng = random.Random(99)
        value = 0.8
        changed = 0
        for _ in range(5000):
            new = AdherenceEstimator.drift(value, rng)
            if new != value:
                changed += 1
            value = new
            self.assertTrue(0.1 <= value <= 1.0)
        # roughly one cycle in five
        self.assertTrue(0.13 < changed / 5000 < 0.24)

    def test_11_baseline_adherence_range(self):
        rng = random.Random(5)
        for _ in range(200):
            self.assertTrue(0.6 <= AdherenceEstimator.baseline(rng) <= 0.9)


if __name__ == '__main__':
    unittest.main()
