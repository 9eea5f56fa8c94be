"""Tests for the hour-of-week baseline learner."""

import math
import unittest
from datetime import datetime

import pytest

from sqmctl._baseline import EMA_ALPHA, BaselineLearner, calculate_blended_speed
from sqmctl._models import BaselineTable, BucketKey, Sample

# Monday 18:00
NOW = datetime(2024, 1, 1, 18, 0)


def make_sample(download_mbps: float, day: int = 0, hour: int = 18, timestamp: datetime | None = None) -> Sample:
    return Sample(
        timestamp=timestamp,
        day_of_week=day,
        hour=hour,
        download_mbps=download_mbps,
        upload_mbps=20.0,
        latency_ms=18.0,
    )


def make_learner(table: BaselineTable | None = None) -> BaselineLearner:
    return BaselineLearner(table, clock=lambda: NOW)


class TestCalculateBlendedSpeed:
    """Tests for calculate_blended_speed()."""

    def test_within_threshold_uses_60_40(self):
        assert calculate_blended_speed(95, 100) == pytest.approx(98.0)

    def test_below_threshold_uses_80_20(self):
        assert calculate_blended_speed(80, 100) == pytest.approx(96.0)

    def test_boundary_is_within_threshold(self):
        """Exactly 10% below the baseline still trusts the measurement."""
        assert calculate_blended_speed(90, 100) == pytest.approx(0.6 * 100 + 0.4 * 90)

    def test_above_baseline_uses_60_40(self):
        assert calculate_blended_speed(120, 100) == pytest.approx(108.0)

    def test_learner_delegates(self):
        assert make_learner().calculate_blended_speed(80, 100) == pytest.approx(96.0)


class TestBatchCalculation(unittest.TestCase):
    """Tests for add_sample() + calculate_baseline()."""

    def test_median_of_odd_count(self):
        learner = make_learner()
        for value in (300, 100, 200):
            learner.add_sample(make_sample(value))

        baseline = learner.calculate_baseline().get(BucketKey(0, 18))
        self.assertEqual(baseline.median, 200)

    def test_median_of_even_count_averages_middle_values(self):
        learner = make_learner()
        for value in (100, 400, 200, 300):
            learner.add_sample(make_sample(value))

        baseline = learner.calculate_baseline().get(BucketKey(0, 18))
        self.assertEqual(baseline.median, 250)

    def test_descriptive_statistics(self):
        """Mean, min, max and population standard deviation per bucket."""
        learner = make_learner()
        for value in (200, 250, 300):
            learner.add_sample(make_sample(value))

        baseline = learner.calculate_baseline().get(BucketKey(0, 18))
        self.assertAlmostEqual(baseline.mean, 250.0)
        self.assertEqual(baseline.min, 200)
        self.assertEqual(baseline.max, 300)
        self.assertAlmostEqual(baseline.std_dev, math.sqrt((50 ** 2 + 0 + 50 ** 2) / 3))
        self.assertEqual(baseline.sample_count, 3)
        self.assertEqual(baseline.last_updated, NOW)

    def test_buckets_are_independent(self):
        learner = make_learner()
        learner.add_sample(make_sample(100, day=0, hour=18))
        learner.add_sample(make_sample(300, day=5, hour=3))

        table = learner.calculate_baseline()
        self.assertEqual(len(table), 2)
        self.assertEqual(table.get(BucketKey(5, 3)).median, 300)

    def test_buckets_without_new_samples_are_kept(self):
        """Imported buckets survive a batch recalculation."""
        learner = make_learner()
        learner.import_shell_format({"2_9": "180"})
        learner.add_sample(make_sample(240))

        table = learner.calculate_baseline()
        self.assertEqual(table.get(BucketKey(2, 9)).median, 180)
        self.assertEqual(table.get(BucketKey(0, 18)).median, 240)

    def test_collection_started_from_first_sample(self):
        learner = make_learner()
        first = datetime(2023, 12, 31, 23, 0)
        learner.add_sample(make_sample(240, timestamp=first))
        learner.add_sample(make_sample(250, timestamp=NOW))
        self.assertEqual(learner.table.collection_started, first)


class TestIncrementalUpdate(unittest.TestCase):
    """Tests for update_hourly_baseline()."""

    def test_first_sample_seeds_bucket(self):
        baseline = make_learner().update_hourly_baseline(make_sample(242))
        self.assertEqual(baseline.mean, 242)
        self.assertEqual(baseline.median, 242)
        self.assertEqual(baseline.min, 242)
        self.assertEqual(baseline.max, 242)
        self.assertEqual(baseline.std_dev, 0.0)
        self.assertEqual(baseline.sample_count, 1)

    def test_later_samples_use_ema(self):
        learner = make_learner()
        learner.update_hourly_baseline(make_sample(200))
        baseline = learner.update_hourly_baseline(make_sample(250))

        self.assertAlmostEqual(baseline.mean, EMA_ALPHA * 250 + (1 - EMA_ALPHA) * 200)
        self.assertAlmostEqual(baseline.median, 210.0)
        self.assertEqual(baseline.min, 200)
        self.assertEqual(baseline.max, 250)
        self.assertAlmostEqual(baseline.std_dev, math.sqrt(EMA_ALPHA * 50 ** 2))
        self.assertEqual(baseline.sample_count, 2)

    def test_min_and_max_widen(self):
        learner = make_learner()
        for value in (200, 150, 260):
            baseline = learner.update_hourly_baseline(make_sample(value))
        self.assertEqual(baseline.min, 150)
        self.assertEqual(baseline.max, 260)

    def test_table_timestamps(self):
        learner = make_learner()
        learner.update_hourly_baseline(make_sample(200))
        self.assertEqual(learner.table.collection_started, NOW)
        self.assertEqual(learner.table.last_updated, NOW)


class TestLearningProgress:
    """Tests for learning_progress() and completeness."""

    @pytest.mark.parametrize("populated", [0, 1, 2, 50, 84, 100, 167])
    def test_progress_is_rounded_percentage(self, populated):
        learner = make_learner()
        for bucket in BucketKey.all()[:populated]:
            learner.update_hourly_baseline(make_sample(200, day=bucket.day_of_week, hour=bucket.hour))

        assert learner.learning_progress() == round(100 * populated / 168)
        assert learner.table.is_complete is False

    def test_complete_table(self):
        learner = make_learner()
        for bucket in BucketKey.all():
            learner.update_hourly_baseline(make_sample(200, day=bucket.day_of_week, hour=bucket.hour))

        assert learner.learning_progress() == 100
        assert learner.table.is_complete is True


class TestCurrentBaselineSpeed(unittest.TestCase):
    """Tests for current_baseline_speed()."""

    def test_none_without_data(self):
        self.assertIsNone(make_learner().current_baseline_speed())

    def test_rounded_median_of_current_hour(self):
        learner = make_learner()
        learner.import_shell_format({"0_18": "241.6"})
        self.assertEqual(learner.current_baseline_speed(), 242)

    def test_explicit_time(self):
        learner = make_learner()
        learner.import_shell_format({"6_3": "190"})
        self.assertEqual(learner.current_baseline_speed(datetime(2024, 1, 7, 3, 59)), 190)
        self.assertIsNone(learner.current_baseline_speed())


class TestShellFormat(unittest.TestCase):
    """Tests for export_shell_format() and import_shell_format()."""

    def test_export_rounds_medians_to_integer_strings(self):
        learner = make_learner()
        learner.update_hourly_baseline(make_sample(241.6))
        learner.update_hourly_baseline(make_sample(199.4, day=1, hour=0))

        self.assertEqual(learner.export_shell_format(), {"0_18": "242", "1_0": "199"})

    def test_export_empty_table(self):
        self.assertEqual(make_learner().export_shell_format(), {})

    def test_round_trip_reproduces_rounded_medians(self):
        source = make_learner()
        for index, bucket in enumerate(BucketKey.all()):
            source.update_hourly_baseline(
                make_sample(150.5 + index * 0.7, day=bucket.day_of_week, hour=bucket.hour)
            )
        exported = source.export_shell_format()

        target = make_learner()
        self.assertEqual(target.import_shell_format(exported), 168)
        self.assertEqual(target.export_shell_format(), exported)
        self.assertTrue(target.table.is_complete)
        for baseline in source.table:
            self.assertEqual(target.table.get(baseline.bucket).median, round(baseline.median))

    def test_import_skips_malformed_entries(self):
        """Malformed keys and values are skipped one by one, never failing the whole import."""
        learner = make_learner()
        imported = learner.import_shell_format({
            "0_18": "242",
            "1_5": 230,
            "2_7": 199.5,
            "7_0": "200",      # day out of range
            "0_24": "200",     # hour out of range
            "x_y": "200",
            "3_3": "abc",
            "3_4": "2,5",      # locale separator
            "3_5": -10,
            "3_6": float("nan"),
            "3_7": True,
            "3_8": None,
        })

        self.assertEqual(imported, 3)
        self.assertEqual(learner.export_shell_format(), {"0_18": "242", "1_5": "230", "2_7": "200"})

    def test_import_replaces_existing_table(self):
        learner = make_learner()
        learner.update_hourly_baseline(make_sample(200, day=4, hour=4))
        learner.import_shell_format({"0_0": "100"})
        self.assertNotIn(BucketKey(4, 4), learner.table)

    def test_load_table_refreshes_completeness(self):
        table = make_learner().table
        table.is_complete = True
        learner = make_learner()
        learner.load_table(table)
        self.assertIs(learner.table, table)
        self.assertFalse(table.is_complete)


if __name__ == "__main__":
    unittest.main()
