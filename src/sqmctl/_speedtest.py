"""
Speedtest processing: validation, effective rate and baseline blending.

A raw speedtest measurement is turned into a shaper rate in three steps:

1. Effective rate: the measured download is scaled by the overhead
   multiplier and clamped to the configured [min, max] range.
2. Blending: if a baseline exists for the current hour, the effective rate
   is blended with it. The weights depend on how far the measurement falls
   below the baseline (config-driven, 60/40 vs 80/20 by default).
3. Safety ceiling: the result never exceeds 95% of the absolute max.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from datetime import datetime

from sqmctl._baseline import local_now
from sqmctl._config import SqmConfiguration
from sqmctl._models import BlendRatio, BucketKey, Sample, SpeedtestResult
from sqmctl._utils import run_command

logger = logging.getLogger(__name__)

MIN_PLAUSIBLE_MBPS = 1.0
MAX_PLAUSIBLE_MBPS = 10_000.0
BLEND_VARIANCE_THRESHOLD_PERCENT = -10.0
SAFETY_CEILING_FACTOR = 0.95


def bytes_per_sec_to_mbps(bytes_per_sec: float) -> float:
    """
    Convert bytes per second to megabits per second.

    Example:
        >>> bytes_per_sec_to_mbps(25_000_000)
        200.0
    """
    return bytes_per_sec * 8 / 1_000_000


def build_speedtest_command(interface: str, server_id: str | None = None) -> list[str]:
    """
    Build the speedtest command line (Ookla CLI, JSON output).

    Example:
        >>> build_speedtest_command("eth2")
        ['speedtest', '--accept-license', '--accept-gdpr', '--format=json', '--interface=eth2']
    """
    assert interface, "Speedtest interface can not be empty."
    command = ["speedtest", "--accept-license", "--accept-gdpr", "--format=json", f"--interface={interface}"]
    if server_id:
        command.append(f"--server-id={server_id}")
    return command


class SpeedtestProcessor:
    """
    Converts speedtest measurements into shaper rates.

    Example:
        >>> processor = SpeedtestProcessor(SqmConfiguration(overhead_multiplier=1.0, max_download_speed=300,
        ...                                                 min_download_speed=100, absolute_max_download_speed=300))
        >>> result = processor.parse_result(raw_json)
        >>> processor.process_result(result, baseline_speed=None)
        200.0
    """

    def __init__(
        self,
        config: SqmConfiguration,
        clock: Callable[[], datetime] | None = None,
    ):
        assert config is not None, "SQM configuration can not be None."
        self.config = config
        self._clock: Callable[[], datetime] = clock or local_now

    # ======================
    # Parsing & validation
    # ======================

    def parse_result(self, raw_json: str | bytes | None) -> SpeedtestResult | None:
        """
        Deserialize speedtest JSON output.

        Returns:
            The parsed result, or None if the payload is not a well-formed speedtest document.
        """
        if not raw_json:
            return None
        try:
            return SpeedtestResult.from_dict(json.loads(raw_json))
        except (ValueError, TypeError, KeyError, OverflowError) as e:
            # json.JSONDecodeError is a ValueError
            logger.debug(f"Malformed speedtest output: {e}")
            return None

    def is_valid_result(self, result: SpeedtestResult | None) -> bool:
        """
        Reject missing, zero and implausible measurements.

        Rejected results never reach the baseline or the rate logic: clamping
        them into range would poison the learned statistics.
        """
        if result is None:
            return False
        if result.download_bandwidth <= 0 or result.upload_bandwidth <= 0:
            return False
        if not math.isfinite(result.latency_ms) or result.latency_ms <= 0:
            return False

        download_mbps = bytes_per_sec_to_mbps(result.download_bandwidth)
        return MIN_PLAUSIBLE_MBPS <= download_mbps <= MAX_PLAUSIBLE_MBPS

    # ======================
    # Rate calculation
    # ======================

    def bytes_per_sec_to_mbps(self, bytes_per_sec: float) -> float:
        return bytes_per_sec_to_mbps(bytes_per_sec)

    def calculate_effective_rate(self, measured_mbps: float) -> float:
        """Apply overhead headroom, clamp to [min, max] and round to a whole number."""
        effective = measured_mbps * self.config.overhead_multiplier
        effective = max(effective, self.config.min_download_speed)
        effective = min(effective, self.config.max_download_speed)
        return float(round(effective))

    def calculate_variance_percent(self, measured: float, baseline: float) -> float:
        """Relative deviation of the measurement from the baseline; 0 when there is no baseline."""
        if baseline == 0:
            return 0.0
        return 100.0 * (measured - baseline) / baseline

    def determine_blend_ratio(self, variance_percent: float) -> BlendRatio:
        """Within 10% below the baseline (or above it): within-threshold weights; otherwise below-threshold weights."""
        if variance_percent >= BLEND_VARIANCE_THRESHOLD_PERCENT:
            weight = self.config.blend_weight_within_threshold
        else:
            weight = self.config.blend_weight_below_threshold
        return BlendRatio(baseline_weight=weight, measured_weight=1.0 - weight)

    def process_result(self, result: SpeedtestResult, baseline_speed: float | None = None) -> float:
        """
        Turn a validated measurement into the rate the shaper should enforce.

        Args:
            result: A result accepted by `is_valid_result()`.
            baseline_speed: Learned baseline (Mbps) for the current hour, or None.

        Returns:
            The new rate in whole Mbps.
        """
        effective = self.calculate_effective_rate(bytes_per_sec_to_mbps(result.download_bandwidth))

        rate = effective
        if baseline_speed is not None:
            ratio = self.determine_blend_ratio(self.calculate_variance_percent(effective, baseline_speed))
            rate = ratio.baseline_weight * baseline_speed + ratio.measured_weight * effective

        ceiling = self.config.absolute_max_download_speed * SAFETY_CEILING_FACTOR
        return float(round(min(rate, ceiling)))

    def create_sample(self, result: SpeedtestResult, now: datetime | None = None) -> Sample:
        """
        Project a validated result into the current hour's bucket.

        The bucket comes from the local clock at processing time; the sample
        keeps the timestamp reported by the speedtest.
        """
        bucket = BucketKey.from_datetime(now or self._clock())
        return Sample(
            timestamp=result.timestamp,
            day_of_week=bucket.day_of_week,
            hour=bucket.hour,
            download_mbps=bytes_per_sec_to_mbps(result.download_bandwidth),
            upload_mbps=bytes_per_sec_to_mbps(result.upload_bandwidth),
            latency_ms=result.latency_ms,
        )


class SpeedtestRunner:
    """
    Runs the speedtest CLI as an external process.

    Example:
        >>> runner = SpeedtestRunner(interface="eth2", timeout=120.0)
        >>> raw_json = runner.run()
    """

    def __init__(self, interface: str, timeout: float = 120.0, server_id: str | None = None):
        assert interface, "Speedtest interface can not be empty."
        assert timeout > 0, "Speedtest timeout must be greater than 0."

        self.interface = interface
        self.timeout = timeout
        self.server_id = server_id

    def run(self) -> str | None:
        """Run one speedtest. Returns the raw JSON output, or None if it failed or timed out."""
        return run_command(build_speedtest_command(self.interface, self.server_id), timeout=self.timeout)
