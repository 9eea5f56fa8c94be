"""
Hour-of-week baseline learning.

The learner accumulates download measurements into 168 buckets (7 days x 24
hours) and keeps descriptive statistics per bucket. Two update paths exist:

- Batch: `add_sample()` then `calculate_baseline()` recomputes every bucket
  that has accumulated samples.
- Incremental: `update_hourly_baseline()` refines one bucket with an
  exponential moving average, so a live controller never replays history.

The table is exported to (and imported from) the compact `"{day}_{hour}" ->
"Mbps"` mapping consumed by the enforcement scripts.

BaselineLearner is not thread-safe: RateController serializes access to it.
"""

from __future__ import annotations

import logging
import math
import re
import statistics
from collections import defaultdict
from collections.abc import Callable, Mapping
from datetime import datetime

from sqmctl._models import (
    TOTAL_BUCKETS,
    BaselineTable,
    BucketKey,
    HourlyBaseline,
    Sample,
)
from sqmctl._utils import format_invariant

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.2
DEFAULT_BLEND_THRESHOLD = 0.1

_SPEED_PATTERN = re.compile(r"\d+(?:\.\d+)?", re.ASCII)


def local_now() -> datetime:
    """Current local time (timezone-aware). Buckets follow the link's wall clock."""
    return datetime.now().astimezone()


def calculate_blended_speed(
    measured: float,
    baseline: float,
    threshold_fraction: float = DEFAULT_BLEND_THRESHOLD,
) -> float:
    """
    Blend a live measurement with the learned baseline.

    When the measurement is close to (or above) the baseline, it is trusted
    more (60/40). When it drops more than `threshold_fraction` below the
    baseline it is most likely transient congestion, so the baseline
    dominates (80/20).

    Args:
        measured: Live measurement in Mbps.
        baseline: Learned baseline in Mbps.
        threshold_fraction: Relative drop that switches to the below-threshold weights.

    Returns:
        The blended speed in Mbps.

    Example:
        >>> calculate_blended_speed(95, 100)
        98.0
        >>> calculate_blended_speed(80, 100)
        96.0
    """
    if measured >= baseline * (1 - threshold_fraction):
        return 0.6 * baseline + 0.4 * measured
    return 0.8 * baseline + 0.2 * measured


class BaselineLearner:
    """
    Learns typical download throughput for each hour of the week.

    Example:
        >>> learner = BaselineLearner()
        >>> learner.update_hourly_baseline(sample)
        >>> learner.learning_progress()
        1
        >>> learner.export_shell_format()["0_18"]
        '242'
    """

    def __init__(
        self,
        table: BaselineTable | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            table: Previously learned table to start from. A new empty table if None.
            clock: Returns "now" for current-hour lookups and timestamps.
                Defaults to the local wall clock.
        """
        self._table: BaselineTable = table if table is not None else BaselineTable()
        self._samples: dict[BucketKey, list[float]] = defaultdict(list)
        self._clock: Callable[[], datetime] = clock or local_now

    @property
    def table(self) -> BaselineTable:
        return self._table

    def load_table(self, table: BaselineTable) -> None:
        """Replace the whole table (e.g. after loading it from storage)."""
        assert table is not None, "Baseline table can not be None."
        table.refresh_completeness()
        self._table = table

    # ======================
    # Batch path
    # ======================

    def add_sample(self, sample: Sample) -> None:
        """Accumulate a sample in its bucket for the next `calculate_baseline()`."""
        self._samples[sample.bucket].append(sample.download_mbps)
        if self._table.collection_started is None:
            self._table.collection_started = sample.timestamp or self._clock()

    def calculate_baseline(self) -> BaselineTable:
        """
        Recompute statistics of every bucket from its accumulated samples.

        Buckets without accumulated samples (e.g. imported ones) are left as is.

        Returns:
            The updated table.
        """
        now = self._clock()
        for bucket, values in self._samples.items():
            if not values:
                continue
            self._table.baselines[bucket] = HourlyBaseline(
                day_of_week=bucket.day_of_week,
                hour=bucket.hour,
                mean=statistics.fmean(values),
                median=statistics.median(values),
                min=min(values),
                max=max(values),
                std_dev=statistics.pstdev(values),
                sample_count=len(values),
                last_updated=now,
            )

        self._table.last_updated = now
        self._table.refresh_completeness()
        logger.debug(
            f"Baseline recalculated: {len(self._table)}/{TOTAL_BUCKETS} buckets, "
            f"complete={self._table.is_complete}"
        )
        return self._table

    # ======================
    # Incremental path
    # ======================

    def update_hourly_baseline(self, sample: Sample) -> HourlyBaseline:
        """
        Refine the sample's bucket with an exponential moving average.

        The first observation seeds the bucket. Later ones move mean and median
        by EMA (alpha = 0.2), widen min/max and update the spread estimate.

        Returns:
            The updated bucket.
        """
        now = self._clock()
        bucket = sample.bucket
        value = sample.download_mbps
        current = self._table.baselines.get(bucket)

        if current is None:
            current = HourlyBaseline(
                day_of_week=bucket.day_of_week,
                hour=bucket.hour,
                mean=value,
                median=value,
                min=value,
                max=value,
                std_dev=0.0,
                sample_count=1,
                last_updated=now,
            )
            self._table.baselines[bucket] = current
        else:
            deviation = value - current.mean
            current.mean = EMA_ALPHA * value + (1 - EMA_ALPHA) * current.mean
            current.median = EMA_ALPHA * value + (1 - EMA_ALPHA) * current.median
            current.std_dev = math.sqrt(
                (1 - EMA_ALPHA) * current.std_dev ** 2 + EMA_ALPHA * deviation ** 2
            )
            current.min = min(current.min, value)
            current.max = max(current.max, value)
            current.sample_count += 1
            current.last_updated = now

        if self._table.collection_started is None:
            self._table.collection_started = sample.timestamp or now
        self._table.last_updated = now
        self._table.refresh_completeness()
        return current

    # ======================
    # Queries
    # ======================

    def calculate_blended_speed(
        self,
        measured: float,
        baseline: float,
        threshold_fraction: float = DEFAULT_BLEND_THRESHOLD,
    ) -> float:
        """See `calculate_blended_speed()`."""
        return calculate_blended_speed(measured, baseline, threshold_fraction)

    def learning_progress(self) -> int:
        """Share of buckets with data, as an integer percentage (0-100)."""
        return round(100 * len(self._table) / TOTAL_BUCKETS)

    def current_baseline_speed(self, now: datetime | None = None) -> int | None:
        """Rounded median (Mbps) of the current hour's bucket, or None if it has no data."""
        baseline = self._table.get_for(now or self._clock())
        if baseline is None:
            return None
        return round(baseline.median)

    # ======================
    # Shell format
    # ======================

    def export_shell_format(self) -> dict[str, str]:
        """
        Export each bucket's median as a rounded integer string.

        Keys are `"{day}_{hour}"`, in bucket order. Values never contain a
        locale-dependent decimal separator.
        """
        return {
            baseline.bucket.key: format_invariant(round(baseline.median))
            for baseline in self._table
        }

    def import_shell_format(self, data: Mapping[str, object]) -> int:
        """
        Replace the table with the buckets of a shell export.

        Malformed keys (wrong shape, day outside 0-6, hour outside 0-23) and
        non-numeric values are skipped individually; the import never fails
        as a whole.

        Args:
            data: Mapping of `"{day}_{hour}"` to a Mbps value.

        Returns:
            The number of buckets imported.
        """
        now = self._clock()
        table = BaselineTable(collection_started=now, last_updated=now)

        for key, raw_value in data.items():
            bucket = BucketKey.parse(key)
            if bucket is None:
                logger.debug(f"Skipping baseline entry with malformed key: {key!r}")
                continue
            speed = _parse_speed(raw_value)
            if speed is None:
                logger.debug(f"Skipping baseline entry {key!r} with malformed value: {raw_value!r}")
                continue
            table.baselines[bucket] = HourlyBaseline(
                day_of_week=bucket.day_of_week,
                hour=bucket.hour,
                mean=speed,
                median=speed,
                min=speed,
                max=speed,
                std_dev=0.0,
                sample_count=1,
                last_updated=now,
            )

        table.refresh_completeness()
        self._table = table
        logger.debug(f"Imported {len(table)} baseline buckets ({len(data)} entries)")
        return len(table)


def _parse_speed(raw_value: object) -> float | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int | float):
        value = float(raw_value)
        return value if math.isfinite(value) and value >= 0 else None
    if isinstance(raw_value, str) and _SPEED_PATTERN.fullmatch(raw_value.strip()):
        return float(raw_value.strip())
    return None
