"""
Connection profiles: sensible starting values per access technology.

A profile turns "I pay for N Mbps of <technology>" into a complete
SqmConfiguration plus a seed baseline for the 168 hourly buckets, so the
controller behaves reasonably before learning mode has collected real data.

Example:
    >>> from sqmctl import ConnectionProfile, ConnectionType, RateController
    >>> profile = ConnectionProfile(ConnectionType.DOCSIS_CABLE, nominal_download_mbps=300)
    >>> controller = RateController(profile.to_configuration())
    >>> controller.import_baseline(profile.initial_baseline())
    168
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from sqmctl._config import SqmConfiguration
from sqmctl._models import DAYS_PER_WEEK, HOURS_PER_DAY, BucketKey


class ConnectionType(enum.StrEnum):
    """
    Access technology of the WAN link.

    Attributes:
        DOCSIS_CABLE: Cable (coax). Stable speeds with peak-hour congestion.
        STARLINK: Satellite. Variable speeds, weather-sensitive, higher latency.
        FIBER: FTTH/FTTP. Very stable, low latency, high speed.
        DSL: ADSL/VDSL. Stable, lower speeds, distance-dependent.
        FIXED_WIRELESS: WISP. Variable, weather-sensitive.
        CELLULAR_HOME: Fixed LTE/5G. Variable, cell congestion-sensitive.
    """
    DOCSIS_CABLE = "docsis_cable"
    STARLINK = "starlink"
    FIBER = "fiber"
    DSL = "dsl"
    FIXED_WIRELESS = "fixed_wireless"
    CELLULAR_HOME = "cellular_home"

    def __str__(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return _TRAITS[self].display_name

    @property
    def description(self) -> str:
        return _TRAITS[self].description


@dataclass(frozen=True)
class _ConnectionTraits:
    display_name: str
    description: str
    max_speed_factor: float
    min_speed_factor: float
    absolute_max_factor: float
    overhead_multiplier: float
    baseline_latency: float
    latency_threshold: float
    latency_decrease: float
    latency_increase: float
    blend_weight_within_threshold: float
    blend_weight_below_threshold: float
    default_speedtest_server_id: str | None = None


_TRAITS: dict[ConnectionType, _ConnectionTraits] = {
    ConnectionType.DOCSIS_CABLE: _ConnectionTraits(
        display_name="DOCSIS Cable",
        description="Stable with peak-hour congestion (190-285 Mbps typical for 300 Mbps plan)",
        max_speed_factor=0.95, min_speed_factor=0.65, absolute_max_factor=0.98,
        overhead_multiplier=1.05, baseline_latency=18.0, latency_threshold=2.5,
        latency_decrease=0.97, latency_increase=1.04,
        blend_weight_within_threshold=0.60, blend_weight_below_threshold=0.80,
    ),
    ConnectionType.STARLINK: _ConnectionTraits(
        display_name="Starlink",
        description="Variable speeds (50-300+ Mbps), weather-sensitive, 20-80ms latency",
        max_speed_factor=1.10, min_speed_factor=0.35, absolute_max_factor=1.15,
        overhead_multiplier=1.15, baseline_latency=25.0, latency_threshold=4.0,
        latency_decrease=0.97, latency_increase=1.04,
        blend_weight_within_threshold=0.50, blend_weight_below_threshold=0.70,
        # BBR-enabled server near common Starlink PoPs
        default_speedtest_server_id="59762",
    ),
    ConnectionType.FIBER: _ConnectionTraits(
        display_name="Fiber (FTTH)",
        description="Very stable, low latency (~5ms), typically exceeds advertised speeds",
        max_speed_factor=1.05, min_speed_factor=0.90, absolute_max_factor=1.02,
        overhead_multiplier=1.02, baseline_latency=5.0, latency_threshold=2.0,
        latency_decrease=0.98, latency_increase=1.03,
        blend_weight_within_threshold=0.70, blend_weight_below_threshold=0.85,
    ),
    ConnectionType.DSL: _ConnectionTraits(
        display_name="DSL",
        description="Stable but speed limited by distance from DSLAM, 10-100 Mbps typical",
        max_speed_factor=0.95, min_speed_factor=0.85, absolute_max_factor=0.98,
        overhead_multiplier=1.03, baseline_latency=20.0, latency_threshold=3.0,
        latency_decrease=0.97, latency_increase=1.03,
        blend_weight_within_threshold=0.65, blend_weight_below_threshold=0.80,
    ),
    ConnectionType.FIXED_WIRELESS: _ConnectionTraits(
        display_name="Fixed Wireless (WISP)",
        description="Variable (25-500 Mbps), weather and interference sensitive",
        max_speed_factor=1.10, min_speed_factor=0.50, absolute_max_factor=1.15,
        overhead_multiplier=1.10, baseline_latency=15.0, latency_threshold=4.0,
        latency_decrease=0.96, latency_increase=1.05,
        blend_weight_within_threshold=0.50, blend_weight_below_threshold=0.65,
    ),
    ConnectionType.CELLULAR_HOME: _ConnectionTraits(
        display_name="Fixed LTE/5G",
        description="Variable (100-1000 Mbps), cell congestion affects speeds",
        max_speed_factor=1.20, min_speed_factor=0.40, absolute_max_factor=1.25,
        overhead_multiplier=1.12, baseline_latency=35.0, latency_threshold=5.0,
        latency_decrease=0.95, latency_increase=1.05,
        blend_weight_within_threshold=0.50, blend_weight_below_threshold=0.65,
    ),
}


# =============================================================================
# Hourly patterns (fraction of the nominal speed, [day][hour], Monday first)
# =============================================================================

def _uniform_week(daily: list[float]) -> tuple[tuple[float, ...], ...]:
    assert len(daily) == HOURS_PER_DAY, f"Daily pattern must have {HOURS_PER_DAY} hours."
    return tuple(tuple(daily) for _ in range(DAYS_PER_WEEK))


def _banded_day(night: float, day: float, evening: float) -> list[float]:
    # 00-05 night, 06-17 day, 18-21 evening peak, 22-23 night
    return [night] * 6 + [day] * 12 + [evening] * 4 + [night] * 2


_DOCSIS_WEEKDAY = _banded_day(0.87, 0.85, 0.75)
# Sunday evenings are slightly better
_DOCSIS_SUNDAY = [0.87] * 6 + [0.85] * 12 + [0.77, 0.77, 0.77, 0.79, 0.85, 0.87]

_PATTERNS: dict[ConnectionType, tuple[tuple[float, ...], ...]] = {
    ConnectionType.DOCSIS_CABLE: tuple(tuple(_DOCSIS_WEEKDAY) for _ in range(6)) + (tuple(_DOCSIS_SUNDAY),),
    # Normalized from 150-417 Mbps observations on a ~400 Mbps plan
    ConnectionType.STARLINK: (
        (0.75, 0.77, 0.47, 0.46, 0.44, 0.44, 0.41, 0.91, 0.66, 0.42, 0.41, 0.38,
         0.80, 0.76, 0.73, 0.71, 0.68, 0.65, 0.42, 0.85, 0.51, 0.48, 0.43, 0.38),
        (0.90, 0.98, 0.78, 0.84, 0.86, 0.73, 0.89, 0.79, 0.87, 0.85, 0.72, 0.74,
         0.74, 0.68, 0.58, 0.84, 0.64, 0.70, 0.49, 0.66, 0.62, 0.59, 0.56, 0.75),
        (0.64, 0.65, 0.56, 0.47, 0.40, 0.42, 0.55, 0.68, 0.73, 0.43, 0.44, 0.38,
         1.04, 0.76, 0.61, 0.94, 0.79, 0.65, 0.54, 0.69, 0.73, 0.64, 0.63, 0.80),
        (0.72, 0.80, 0.67, 0.50, 0.49, 0.55, 0.48, 0.50, 0.57, 0.88, 0.86, 0.84,
         0.82, 0.80, 0.78, 0.65, 0.67, 0.68, 0.66, 0.64, 0.49, 0.39, 0.57, 0.75),
        (0.59, 0.73, 0.74, 0.59, 0.45, 0.43, 0.44, 0.68, 0.80, 0.55, 0.48, 0.55,
         0.45, 0.55, 0.65, 0.60, 0.40, 0.77, 0.77, 0.77, 1.01, 0.74, 0.54, 0.73),
        (0.64, 0.56, 0.85, 0.76, 0.69, 0.58, 0.53, 0.54, 0.41, 0.62, 0.40, 0.53,
         0.66, 0.80, 0.81, 0.74, 0.68, 0.61, 0.55, 0.45, 0.85, 0.74, 0.66, 0.51),
        (0.77, 0.75, 0.79, 0.67, 0.49, 0.44, 0.41, 0.43, 0.52, 0.87, 0.71, 0.55,
         0.60, 0.51, 0.66, 0.77, 0.72, 0.71, 0.71, 0.70, 0.70, 0.48, 0.41, 0.62),
    ),
    ConnectionType.FIBER: _uniform_week(_banded_day(0.98, 0.97, 0.95)),
    ConnectionType.DSL: _uniform_week(_banded_day(0.92, 0.90, 0.85)),
    ConnectionType.FIXED_WIRELESS: _uniform_week(
        [0.85] * 6 + [0.80] * 3 + [0.75] * 6 + [0.70] * 3 + [0.65] * 3 + [0.70, 0.80, 0.85]
    ),
    ConnectionType.CELLULAR_HOME: _uniform_week(
        [0.90] * 5 + [0.85, 0.75, 0.70, 0.70, 0.75, 0.75, 0.75, 0.70, 0.70, 0.70, 0.70,
                      0.65, 0.60, 0.55, 0.55, 0.60, 0.70, 0.80, 0.85]
    ),
}


@dataclass(frozen=True)
class ConnectionProfile:
    """
    Starting configuration for a link, derived from its technology and nominal speed.

    Speeds are the nominal download speed scaled by per-technology factors and
    truncated to whole Mbps.

    Attributes:
        connection_type: Access technology.
        nominal_download_mbps: Advertised download speed (what the plan promises).
        interface: WAN interface name.
        ping_host: Latency probe target.
        speedtest_server_id: Preferred speedtest server. Falls back to the
            technology default (only Starlink has one).

    Example:
        >>> profile = ConnectionProfile(ConnectionType.STARLINK, nominal_download_mbps=400)
        >>> profile.max_download_speed, profile.min_download_speed
        (440, 140)
        >>> profile.preferred_speedtest_server_id
        '59762'
    """

    connection_type: ConnectionType
    nominal_download_mbps: int
    interface: str = "eth2"
    ping_host: str = "1.1.1.1"
    speedtest_server_id: str | None = None

    def __post_init__(self) -> None:
        assert self.nominal_download_mbps > 0, "Nominal download speed must be greater than 0."
        assert self.interface, "Interface can not be empty."

    @property
    def traits(self) -> _ConnectionTraits:
        return _TRAITS[self.connection_type]

    @property
    def preferred_speedtest_server_id(self) -> str | None:
        return self.speedtest_server_id or self.traits.default_speedtest_server_id

    @property
    def max_download_speed(self) -> int:
        return int(self.nominal_download_mbps * self.traits.max_speed_factor)

    @property
    def min_download_speed(self) -> int:
        return int(self.nominal_download_mbps * self.traits.min_speed_factor)

    @property
    def absolute_max_download_speed(self) -> int:
        """
        Best throughput the link achieves.

        Never below `max_download_speed`: fiber plans exceed their nominal
        speed by more than their absolute-max factor.
        """
        return max(int(self.nominal_download_mbps * self.traits.absolute_max_factor), self.max_download_speed)

    def to_configuration(self) -> SqmConfiguration:
        """Build the rate-control configuration for this profile."""
        traits = self.traits
        return SqmConfiguration(
            interface=self.interface,
            ping_host=self.ping_host,
            baseline_latency=traits.baseline_latency,
            latency_threshold=traits.latency_threshold,
            latency_decrease=traits.latency_decrease,
            latency_increase=traits.latency_increase,
            max_download_speed=self.max_download_speed,
            min_download_speed=self.min_download_speed,
            absolute_max_download_speed=self.absolute_max_download_speed,
            overhead_multiplier=traits.overhead_multiplier,
            blend_weight_within_threshold=traits.blend_weight_within_threshold,
            blend_weight_below_threshold=traits.blend_weight_below_threshold,
        )

    def hourly_pattern(self) -> tuple[tuple[float, ...], ...]:
        """Expected share of the nominal speed per [day][hour], Monday first."""
        return _PATTERNS[self.connection_type]

    def initial_baseline(self) -> dict[str, str]:
        """
        Seed baseline in shell format (`"{day}_{hour}" -> "<Mbps>"`) for all 168 buckets.

        Suitable for `BaselineLearner.import_shell_format()`.
        """
        pattern = self.hourly_pattern()
        return {
            bucket.key: str(int(pattern[bucket.day_of_week][bucket.hour] * self.nominal_download_mbps))
            for bucket in BucketKey.all()
        }
