"""
Latency-feedback rate adjustment.

Given the latest latency measurement and the rate currently enforced by the
shaper, LatencyAdjuster decides whether to lower, raise or hold the rate.
It is a pure function of its configuration and inputs: it holds no state
between calls and needs no locking.

Decision tree (evaluated in order):

1. High latency (`latency >= baseline + threshold`): geometric decrease,
   `rate * decrease ** deviations`, where deviations counts how many
   thresholds latency sits above the baseline.
2. Low latency (`latency <= baseline - 0.4ms`): the link has headroom.
   Below 92% of the absolute max, apply a double increase step; between
   92% and 94%, snap to the optimal rate (94%); otherwise hold.
3. Normal latency (at most 0.3ms above baseline): below 90% of the absolute
   max, apply one increase step; between 90% and 92%, snap to the optimal
   rate; otherwise hold.
4. Elevated latency that is still below the threshold: hold.

Every returned rate is clamped into [180 Mbps, safety ceiling], where the
ceiling is `min(0.95 * absolute_max, max_download_speed)`.
"""

from __future__ import annotations

import logging
import math

from sqmctl._config import SqmConfiguration
from sqmctl._models import RateAdjustmentResult, RateBounds
from sqmctl._utils import format_invariant

logger = logging.getLogger(__name__)

MIN_SAFE_RATE = 180.0
OPTIMAL_RATE_FACTOR = 0.94
MAX_RATE_FACTOR = 0.95
RECOVERY_THRESHOLD_FACTOR = 0.92
NORMAL_INCREASE_BOUND_FACTOR = 0.90
LOW_LATENCY_MARGIN = 0.4
NORMAL_LATENCY_BAND = 0.3


class LatencyAdjuster:
    """
    Decides the next shaper rate from the current latency.

    Example:
        >>> adjuster = LatencyAdjuster(SqmConfiguration(baseline_latency=18.0, latency_threshold=2.0))
        >>> result = adjuster.calculate_rate_adjustment(latency=24.5, current_rate=260.0)
        >>> result.reason
        'High latency: 24.5ms (threshold: 20.0ms), decreased by 11.5% (4 deviations)'
    """

    def __init__(self, config: SqmConfiguration):
        assert config is not None, "SQM configuration can not be None."
        assert config.latency_threshold > 0, "latency_threshold must be greater than 0."
        self.config = config

    # ======================
    # Classification
    # ======================

    @property
    def threshold_latency(self) -> float:
        return self.config.baseline_latency + self.config.latency_threshold

    def is_latency_high(self, latency: float) -> bool:
        """True iff latency reached the baseline plus the threshold (inclusive)."""
        return latency >= self.threshold_latency

    def deviation_count(self, latency: float) -> int:
        """How many thresholds latency sits above the baseline (never negative)."""
        deviations = math.ceil(
            (latency - self.config.baseline_latency) / self.config.latency_threshold
        )
        return max(deviations, 0)

    def decrease_multiplier(self, deviations: int) -> float:
        return self.config.latency_decrease ** deviations

    def increase_multiplier(self, steps: int = 1) -> float:
        return self.config.latency_increase ** steps

    # ======================
    # Bounds
    # ======================

    def rate_bounds(self) -> RateBounds:
        """
        Safe operating range derived only from the absolute max download speed.

        Example:
            >>> LatencyAdjuster(SqmConfiguration(absolute_max_download_speed=300)).rate_bounds()
            RateBounds(min_rate=180.0, optimal_rate=282.0, max_rate=285.0)
        """
        absolute_max = self.config.absolute_max_download_speed
        return RateBounds(
            min_rate=MIN_SAFE_RATE,
            optimal_rate=absolute_max * OPTIMAL_RATE_FACTOR,
            max_rate=absolute_max * MAX_RATE_FACTOR,
        )

    def needs_recovery(self, current_rate: float) -> bool:
        """True iff the rate is below 92% of the absolute max."""
        return current_rate < self.config.absolute_max_download_speed * RECOVERY_THRESHOLD_FACTOR

    def clamp_rate(self, rate: float) -> float:
        """
        Clamp a rate into the safe range and round it to 0.1 Mbps.

        The safety ceiling wins over the floor on links slower than the floor.
        """
        ceiling = min(self.rate_bounds().max_rate, float(self.config.max_download_speed))
        return round(min(max(rate, MIN_SAFE_RATE), ceiling), 1)

    # ======================
    # Decision
    # ======================

    def calculate_rate_adjustment(self, latency: float, current_rate: float) -> RateAdjustmentResult:
        """
        Decide the next rate from the measured latency.

        Args:
            latency: Average round-trip time of the last probe, in ms.
            current_rate: Rate currently enforced by the shaper, in Mbps.

        Returns:
            The clamped rate and a human-readable reason.
        """
        assert latency is not None and math.isfinite(latency), "latency must be a finite number."
        assert current_rate is not None and math.isfinite(current_rate), "current_rate must be a finite number."

        config = self.config
        absolute_max = config.absolute_max_download_speed
        optimal_rate = absolute_max * OPTIMAL_RATE_FACTOR
        latency_text = format_invariant(latency, decimals=1)

        if self.is_latency_high(latency):
            deviations = self.deviation_count(latency)
            multiplier = self.decrease_multiplier(deviations)
            reason = (
                f"High latency: {latency_text}ms "
                f"(threshold: {format_invariant(self.threshold_latency, decimals=1)}ms), "
                f"decreased by {format_invariant((1 - multiplier) * 100, decimals=1)}% "
                f"({deviations} deviations)"
            )
            return RateAdjustmentResult(self.clamp_rate(current_rate * multiplier), reason)

        if latency <= config.baseline_latency - LOW_LATENCY_MARGIN:
            if current_rate < absolute_max * RECOVERY_THRESHOLD_FACTOR:
                new_rate = current_rate * self.increase_multiplier(steps=2)
                reason = f"Latency reduced: {latency_text}ms, rate significantly below baseline, applying 2x increase"
            elif current_rate < optimal_rate:
                new_rate = optimal_rate
                reason = f"Latency reduced: {latency_text}ms, normalizing to optimal bandwidth"
            else:
                new_rate = current_rate
                reason = f"Latency reduced: {latency_text}ms, keeping current rate"
            return RateAdjustmentResult(self.clamp_rate(new_rate), reason)

        if latency - config.baseline_latency <= NORMAL_LATENCY_BAND:
            if current_rate < absolute_max * NORMAL_INCREASE_BOUND_FACTOR:
                new_rate = current_rate * self.increase_multiplier()
                reason = f"Normal latency: {latency_text}ms (within 0.3ms), rate below threshold, applying increase"
            elif current_rate < absolute_max * RECOVERY_THRESHOLD_FACTOR:
                new_rate = optimal_rate
                reason = f"Normal latency: {latency_text}ms (within 0.3ms), normalizing to optimal bandwidth"
            else:
                new_rate = current_rate
                reason = f"Normal latency: {latency_text}ms, maintaining current rate"
            return RateAdjustmentResult(self.clamp_rate(new_rate), reason)

        reason = (
            f"Elevated latency: {latency_text}ms "
            f"(threshold: {format_invariant(self.threshold_latency, decimals=1)}ms), holding current rate"
        )
        return RateAdjustmentResult(self.clamp_rate(current_rate), reason)
