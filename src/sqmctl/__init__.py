"""
sqmctl: adaptive Smart Queue Management controller.

Keeps the download shaper of a WAN link just below the link's real capacity,
so queues build in the gateway (where fair queuing can manage them) instead
of in the ISP's equipment. Two feedback signals drive the rate:

- Periodic speedtests, blended with a learned hour-of-week baseline.
- Frequent latency probes: rising latency means the queue is building
  upstream, so the rate is cut; low latency means there is headroom.

Quick Start:
    >>> from sqmctl import ConnectionProfile, ConnectionType, ControlLoop, RateController
    >>> profile = ConnectionProfile(ConnectionType.DOCSIS_CABLE, nominal_download_mbps=300)
    >>> controller = RateController(profile.to_configuration())
    >>> controller.import_baseline(profile.initial_baseline())
    >>> controller.start_learning_mode()
    >>> loop = ControlLoop.from_config(controller)
    >>> loop.start()

Global Configuration:
    >>> from sqmctl import SQMCTL
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> interface = SQMCTL.config.sqm.interface
    >>>
    >>> # Custom configuration
    >>> SQMCTL.configure(
    ...     sqm={"interface": "eth8", "max_download_speed": 475, "absolute_max_download_speed": 490},
    ...     scheduler={"speedtest_interval": 7200},
    ...     tc_monitor={"enabled": True, "host": "192.168.1.1"},
    ... )

Main Classes:
    - RateController: Decides the rate the shaper should enforce.
    - LatencyAdjuster: Latency-feedback rate decisions.
    - SpeedtestProcessor: Turns speedtest results into rates.
    - BaselineLearner: Learns throughput for each hour of the week.
    - ControlLoop: Runs the ping and speedtest loops in background threads.
    - ConnectionProfile: Starting configuration per access technology.

Configuration:
    - SQMCTL: Global singleton for configuration.
    - SqmctlConfig: Root configuration dataclass.
    - SqmConfiguration: Rate-control configuration.
    - SchedulerConfig: Measurement loop configuration.
    - TcMonitorConfig: Gateway rate reader configuration.
    - SqmConfigurationError: Raised when a rate-control configuration is invalid.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

Retry:
    - Retrying: Attempts of one gateway read, with exponential backoff.
    - RetryPolicy: Attempt and wait limits for one gateway read.
    - FailureKind: Transient or permanent kinds of gateway failures.
    - MaxRetriesExceededError: Raised when the gateway stayed unreachable.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("sqmctl")

from sqmctl._baseline import BaselineLearner, calculate_blended_speed
from sqmctl._config import (
    SQMCTL,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    SchedulerConfig,
    SqmConfiguration,
    SqmConfigurationError,
    SqmctlConfig,
    TcMonitorConfig,
)
from sqmctl._controller import InvalidSpeedtestResultError, RateController
from sqmctl._event_listeners import SqmEventListener, StatusFileListener
from sqmctl._latency import LatencyAdjuster
from sqmctl._models import (
    BaselineTable,
    BlendRatio,
    BucketKey,
    HourlyBaseline,
    RateAdjustmentResult,
    RateBounds,
    Sample,
    SpeedtestResult,
    SqmStatus,
)
from sqmctl._ping import PingProbe, parse_ping_output
from sqmctl._profiles import ConnectionProfile, ConnectionType
from sqmctl._retry import (
    FailureKind,
    MaxRetriesExceededError,
    Retrying,
    RetryPolicy,
)
from sqmctl._scheduler import ControlLoop
from sqmctl._script_params import render_ping_parameters, render_speedtest_parameters
from sqmctl._speedtest import SpeedtestProcessor, SpeedtestRunner
from sqmctl._tc_monitor import InterfaceRate, TcMonitorClient, TcMonitorError

__all__ = [
    "__version__",
    # Configuration
    "SQMCTL",
    "SqmctlConfig",
    "SqmConfiguration",
    "SchedulerConfig",
    "TcMonitorConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "SqmConfigurationError",
    # Models
    "BucketKey",
    "Sample",
    "HourlyBaseline",
    "BaselineTable",
    "SpeedtestResult",
    "RateAdjustmentResult",
    "RateBounds",
    "BlendRatio",
    "SqmStatus",
    # Controller
    "RateController",
    "InvalidSpeedtestResultError",
    "LatencyAdjuster",
    "SpeedtestProcessor",
    "BaselineLearner",
    "calculate_blended_speed",
    # Event listeners
    "SqmEventListener",
    "StatusFileListener",
    # Measurement
    "PingProbe",
    "parse_ping_output",
    "SpeedtestRunner",
    "ControlLoop",
    # Profiles
    "ConnectionType",
    "ConnectionProfile",
    # Gateway
    "TcMonitorClient",
    "TcMonitorError",
    "InterfaceRate",
    "render_speedtest_parameters",
    "render_ping_parameters",
    # Retry
    "Retrying",
    "RetryPolicy",
    "FailureKind",
    "MaxRetriesExceededError",
]
