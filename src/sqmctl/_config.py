"""
Global configuration for the sqmctl package.

This module provides a simple configuration system following Convention over Configuration (CoC).
Users can optionally call SQMCTL.configure() at application startup to customize defaults.
If not called, the DOCSIS cable defaults (300 Mbps plan) are used.

Hierarchy of precedence (highest to lowest):
1. Configuration objects passed to constructors (e.g. RateController(config=...))
2. Values set via SQMCTL.configure()
3. Environment variables (SQMCTL_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from sqmctl import SQMCTL
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> interface = SQMCTL.config.sqm.interface
    >>>
    >>> # Custom configuration
    >>> SQMCTL.configure(
    ...     sqm={"interface": "eth8", "baseline_latency": 12.5},
    ...     scheduler={"speedtest_interval": 7200},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from functools import wraps
from typing import Any, Self

# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


class SqmConfigurationError(ValueError):
    """
    Raised when an SqmConfiguration violates one or more invariants.

    Unlike ConfigValidationError, it carries every violation at once, so a
    caller can surface all problems in a single pass.

    Attributes:
        errors: Human-readable description of each violation.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid SQM configuration: " + "; ".join(self.errors))


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("SQMCTL_SQM_MAX_DOWNLOAD_SPEED", type_hint=int)
        285
        >>> EnvVars.get("SQMCTL_SQM_INTERFACE")
        'eth2'
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial
    field updates. Unknown field names are rejected to catch typos early.

    Example:
        >>> config = SqmConfiguration()
        >>> custom = config.with_overrides({"max_download_speed": 475})
        >>> custom.max_download_speed
        475
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
                       Only existing fields are allowed.
            allow_none_fields: Set of field names that accept None as a valid value.
                       By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class SqmConfiguration(OverridableConfig):
    """
    Rate-control configuration for one WAN interface.

    The whole object is validated as a unit and is never mutated in place:
    a reconfiguration replaces the instance (see `RateController.configure()`).
    Defaults match a DOCSIS cable link on a 300 Mbps plan.

    Attributes:
        interface: WAN interface the shaper is attached to (e.g. "eth2").
            Env var: SQMCTL_SQM_INTERFACE

        ping_host: Host probed by the latency loop. Ideally the first ISP hop.
            Env var: SQMCTL_SQM_PING_HOST

        baseline_latency: Unloaded round-trip time in ms.
            Env var: SQMCTL_SQM_BASELINE_LATENCY

        latency_threshold: Latency deviation in ms that counts as one step of congestion.
            Env var: SQMCTL_SQM_LATENCY_THRESHOLD

        latency_decrease: Multiplicative factor applied per deviation when latency is high.
            Must be in (0, 1.0].
            Env var: SQMCTL_SQM_LATENCY_DECREASE

        latency_increase: Multiplicative factor applied per step when latency is normal.
            Must be in [1.0, 1.2].
            Env var: SQMCTL_SQM_LATENCY_INCREASE

        max_download_speed: Ceiling in Mbps for any commanded rate.
            Env var: SQMCTL_SQM_MAX_DOWNLOAD_SPEED

        min_download_speed: Floor in Mbps for speedtest-derived rates.
            Env var: SQMCTL_SQM_MIN_DOWNLOAD_SPEED

        absolute_max_download_speed: Best throughput the link ever achieves, in Mbps.
            Rate bounds are derived from it.
            Env var: SQMCTL_SQM_ABSOLUTE_MAX_DOWNLOAD_SPEED

        overhead_multiplier: Protocol overhead headroom applied to measured speeds.
            Must be in [1.0, 1.2].
            Env var: SQMCTL_SQM_OVERHEAD_MULTIPLIER

        blend_weight_within_threshold: Baseline weight when the measurement is within
            10% of the learned baseline (measured weight is the complement).
            Env var: SQMCTL_SQM_BLEND_WEIGHT_WITHIN_THRESHOLD

        blend_weight_below_threshold: Baseline weight when the measurement is more
            than 10% below the learned baseline.
            Env var: SQMCTL_SQM_BLEND_WEIGHT_BELOW_THRESHOLD

        ping_adjustment_interval: Minutes between latency-driven adjustments.
            Env var: SQMCTL_SQM_PING_ADJUSTMENT_INTERVAL

    Example:
        >>> config = SqmConfiguration(interface="eth8", max_download_speed=950)
        >>> config.validation_errors()
        ['absolute_max_download_speed must be greater than or equal to max_download_speed']
    """

    interface: str = field(default="eth2", metadata={"env": "SQMCTL_SQM_INTERFACE"})
    ping_host: str = field(default="1.1.1.1", metadata={"env": "SQMCTL_SQM_PING_HOST"})
    baseline_latency: float = field(default=17.9, metadata={"env": "SQMCTL_SQM_BASELINE_LATENCY"})
    latency_threshold: float = field(default=2.2, metadata={"env": "SQMCTL_SQM_LATENCY_THRESHOLD"})
    latency_decrease: float = field(default=0.97, metadata={"env": "SQMCTL_SQM_LATENCY_DECREASE"})
    latency_increase: float = field(default=1.04, metadata={"env": "SQMCTL_SQM_LATENCY_INCREASE"})
    max_download_speed: int = field(default=285, metadata={"env": "SQMCTL_SQM_MAX_DOWNLOAD_SPEED"})
    min_download_speed: int = field(default=190, metadata={"env": "SQMCTL_SQM_MIN_DOWNLOAD_SPEED"})
    absolute_max_download_speed: int = field(default=294, metadata={"env": "SQMCTL_SQM_ABSOLUTE_MAX_DOWNLOAD_SPEED"})
    overhead_multiplier: float = field(default=1.05, metadata={"env": "SQMCTL_SQM_OVERHEAD_MULTIPLIER"})
    blend_weight_within_threshold: float = field(default=0.60, metadata={"env": "SQMCTL_SQM_BLEND_WEIGHT_WITHIN_THRESHOLD"})
    blend_weight_below_threshold: float = field(default=0.80, metadata={"env": "SQMCTL_SQM_BLEND_WEIGHT_BELOW_THRESHOLD"})
    ping_adjustment_interval: int = field(default=5, metadata={"env": "SQMCTL_SQM_PING_ADJUSTMENT_INTERVAL"})

    @property
    def ifb_device(self) -> str:
        """Name of the intermediate functional block device used for ingress shaping."""
        return f"ifb{self.interface}"

    def validation_errors(self) -> list[str]:
        """
        Check every invariant and collect all violations.

        Never raises: an empty list means the configuration is valid.

        Returns:
            One human-readable message per violated invariant.
        """
        errors: list[str] = []

        if not self.interface or not self.interface.strip():
            errors.append("interface is required")
        if not self.ping_host or not self.ping_host.strip():
            errors.append("ping_host is required")
        if self.max_download_speed <= 0:
            errors.append("max_download_speed must be greater than 0")
        if self.min_download_speed >= self.max_download_speed:
            errors.append("min_download_speed must be less than max_download_speed")
        if self.absolute_max_download_speed < self.max_download_speed:
            errors.append("absolute_max_download_speed must be greater than or equal to max_download_speed")
        if not 1.0 <= self.overhead_multiplier <= 1.2:
            errors.append("overhead_multiplier must be between 1.0 and 1.2 (0-20% overhead)")
        if self.baseline_latency <= 0:
            errors.append("baseline_latency must be greater than 0")
        if self.latency_threshold <= 0:
            errors.append("latency_threshold must be greater than 0")
        if not 0 < self.latency_decrease <= 1.0:
            errors.append("latency_decrease must be greater than 0 and at most 1.0")
        if not 1.0 <= self.latency_increase <= 1.2:
            errors.append("latency_increase must be between 1.0 and 1.2 (0-20% increase)")
        if self.ping_adjustment_interval < 1:
            errors.append("ping_adjustment_interval must be at least 1 minute")
        if not 0.0 <= self.blend_weight_within_threshold <= 1.0:
            errors.append("blend_weight_within_threshold must be between 0 and 1")
        if not 0.0 <= self.blend_weight_below_threshold <= 1.0:
            errors.append("blend_weight_below_threshold must be between 0 and 1")

        return errors

    def validate(self) -> Self:
        """
        Validate the configuration as a whole.

        Raises:
            SqmConfigurationError: With every violation, if there is any.
        """
        errors = self.validation_errors()
        if errors:
            raise SqmConfigurationError(errors)
        return self


@dataclass(frozen=True)
class SchedulerConfig(OverridableConfig):
    """
    Configuration for the periodic measurement loops.

    Attributes:
        speedtest_interval: Seconds between speedtests in normal operation.
            Env var: SQMCTL_SCHEDULER_SPEEDTEST_INTERVAL

        learning_speedtest_interval: Seconds between speedtests while learning mode
            is active (denser sampling to fill the 168 hourly buckets).
            Env var: SQMCTL_SCHEDULER_LEARNING_SPEEDTEST_INTERVAL

        ping_timeout: Maximum seconds a ping probe may run before the cycle is skipped.
            Env var: SQMCTL_SCHEDULER_PING_TIMEOUT

        speedtest_timeout: Maximum seconds a speedtest may run before the cycle is skipped.
            Env var: SQMCTL_SCHEDULER_SPEEDTEST_TIMEOUT

        speedtest_server_id: Preferred speedtest server. None lets the client choose.
            Env var: SQMCTL_SCHEDULER_SPEEDTEST_SERVER_ID
    """

    speedtest_interval: float = field(default=21600.0, metadata={"env": "SQMCTL_SCHEDULER_SPEEDTEST_INTERVAL"})
    learning_speedtest_interval: float = field(default=3600.0, metadata={"env": "SQMCTL_SCHEDULER_LEARNING_SPEEDTEST_INTERVAL"})
    ping_timeout: float = field(default=30.0, metadata={"env": "SQMCTL_SCHEDULER_PING_TIMEOUT"})
    speedtest_timeout: float = field(default=120.0, metadata={"env": "SQMCTL_SCHEDULER_SPEEDTEST_TIMEOUT"})
    speedtest_server_id: str | None = field(default=None, metadata={"env": "SQMCTL_SCHEDULER_SPEEDTEST_SERVER_ID"})

    def validate(self) -> Self:
        """Validate scheduler configuration fields."""
        for name in ("speedtest_interval", "learning_speedtest_interval", "ping_timeout", "speedtest_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigValidationError(
                    name, value,
                    "Must be greater than 0.", section="scheduler"
                )
        return self


@dataclass(frozen=True)
class TcMonitorConfig(OverridableConfig):
    """
    Configuration for reading the enforced shaper rate from the gateway.

    The gateway runs a small HTTP endpoint (tc-monitor) that reports the
    rate currently programmed on each WAN interface.

    Attributes:
        enabled: Whether the ping loop should read the current rate from tc-monitor.
            Env var: SQMCTL_TC_MONITOR_ENABLED

        host: Gateway address.
            Env var: SQMCTL_TC_MONITOR_HOST

        port: tc-monitor HTTP port.
            Env var: SQMCTL_TC_MONITOR_PORT

        request_timeout: HTTP request timeout in seconds.
            Env var: SQMCTL_TC_MONITOR_REQUEST_TIMEOUT

        retry_max_retries: Maximum retry attempts for failed requests.
            Env var: SQMCTL_TC_MONITOR_RETRY_MAX_RETRIES

        retry_backoff_factor: Base delay in seconds for exponential backoff.
            Env var: SQMCTL_TC_MONITOR_RETRY_BACKOFF_FACTOR

        retry_max_total_wait: Most seconds spent sleeping between retries of one read.
            The read has to finish well inside a ping cycle.
            Env var: SQMCTL_TC_MONITOR_RETRY_MAX_TOTAL_WAIT
    """

    enabled: bool = field(default=False, metadata={"env": "SQMCTL_TC_MONITOR_ENABLED"})
    host: str | None = field(default=None, metadata={"env": "SQMCTL_TC_MONITOR_HOST"})
    port: int = field(default=8088, metadata={"env": "SQMCTL_TC_MONITOR_PORT"})
    request_timeout: float = field(default=5.0, metadata={"env": "SQMCTL_TC_MONITOR_REQUEST_TIMEOUT"})
    retry_max_retries: int = field(default=3, metadata={"env": "SQMCTL_TC_MONITOR_RETRY_MAX_RETRIES"})
    retry_backoff_factor: float = field(default=0.5, metadata={"env": "SQMCTL_TC_MONITOR_RETRY_BACKOFF_FACTOR"})
    retry_max_total_wait: float = field(default=10.0, metadata={"env": "SQMCTL_TC_MONITOR_RETRY_MAX_TOTAL_WAIT"})

    def validate(self) -> Self:
        """Validate tc-monitor configuration fields."""
        if self.enabled and not self.host:
            raise ConfigValidationError(
                "host", self.host,
                "Required when tc-monitor is enabled.", section="tc_monitor"
            )
        if not 0 < self.port < 65536:
            raise ConfigValidationError(
                "port", self.port,
                "Must be between 1 and 65535.", section="tc_monitor"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="tc_monitor"
            )
        if self.retry_max_retries < 0:
            raise ConfigValidationError(
                "retry_max_retries", self.retry_max_retries,
                "Must be >= 0.", section="tc_monitor"
            )
        if self.retry_backoff_factor <= 0:
            raise ConfigValidationError(
                "retry_backoff_factor", self.retry_backoff_factor,
                "Must be greater than 0.", section="tc_monitor"
            )
        if self.retry_max_total_wait < 0:
            raise ConfigValidationError(
                "retry_max_total_wait", self.retry_max_total_wait,
                "Must be >= 0.", section="tc_monitor"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "baseline_latency").
        value: The resolved value.
        source: Where the value came from:
            - "default": Hardcoded default value
            - "env:VAR_NAME": Environment variable
            - "user": Set via SQMCTL.configure()

    Example:
        >>> entry = ConfigEntry("baseline_latency", 12.5, "user")
        >>> entry.formatted_value
        '12.5'
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """Return value formatted for display, truncating long strings."""
        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."

        return str_value


_SECTIONS: tuple[str, ...] = ("sqm", "scheduler", "tc_monitor")


@dataclass(frozen=True)
class ConfigTracker:
    """
    Tracks the source of config field values.

    Immutable: every tracked change returns a new tracker. Used by
    SqmctlConfig for debugging via SQMCTL.explain().

    Attributes:
        sources: Dict tracking source of each field value.
            Structure: {"section": {"field": "source"}}
    """

    sources: dict[str, dict[str, str]] = field(default_factory=dict)

    @staticmethod
    def track_changes(
        source_type: str,
    ) -> Callable[[Callable[..., SqmctlConfig]], Callable[..., SqmctlConfig]]:
        """
        Decorator that records which fields the decorated method touched.

        Args:
            source_type: Source label ("env" or "user").
        """

        def decorator(
            method: Callable[..., SqmctlConfig],
        ) -> Callable[..., SqmctlConfig]:
            @wraps(method)
            def wrapper(self: SqmctlConfig, *args: Any, **kwargs: Any) -> SqmctlConfig:
                new_config = method(self, *args, **kwargs)
                new_tracker = self._tracker.with_changes_tracked(
                    new_config, source_type, overrides=kwargs
                )
                return replace(new_config, _tracker=new_tracker)

            return wrapper

        return decorator

    def with_changes_tracked(
        self,
        new_config: SqmctlConfig,
        source_type: str,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigTracker:
        """
        Return new tracker with the fields touched by the source recorded.

        A field counts as touched when its env var is set (for "env") or when
        it appears in the section overrides (for "user"), even if the value
        itself did not change.
        """
        new_sources = {section: dict(flds) for section, flds in self.sources.items()}

        for section_name in _SECTIONS:
            section_config = getattr(new_config, section_name)
            section_overrides = (overrides or {}).get(section_name) or {}

            for f in fields(section_config):
                if source_type == "env":
                    env_var = f.metadata.get("env")
                    if env_var and os.environ.get(env_var):
                        new_sources.setdefault(section_name, {})[f.name] = f"env:{env_var}"
                elif source_type == "user" and f.name in section_overrides:
                    new_sources.setdefault(section_name, {})[f.name] = source_type

        return ConfigTracker(sources=new_sources)


@dataclass(frozen=True)
class SqmctlConfig:
    """
    Global configuration for the sqmctl package.

    Attributes:
        sqm: Rate-control configuration.
        scheduler: Periodic loop configuration.
        tc_monitor: Gateway rate reader configuration.

    Example:
        >>> from sqmctl import SQMCTL
        >>> SQMCTL.config.sqm.max_download_speed
        285
        >>> SQMCTL.config.tc_monitor.enabled
        False
    """

    sqm: SqmConfiguration = field(default_factory=SqmConfiguration)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tc_monitor: TcMonitorConfig = field(default_factory=TcMonitorConfig)
    _tracker: ConfigTracker = field(default_factory=ConfigTracker, repr=False)

    @ConfigTracker.track_changes("env")
    def with_env_vars(self) -> SqmctlConfig:
        """Return a new config with SQMCTL_* environment variables applied on top."""
        return SqmctlConfig(
            sqm=self.sqm.with_env_vars(),
            scheduler=self.scheduler.with_env_vars(),
            tc_monitor=self.tc_monitor.with_env_vars(),
            _tracker=self._tracker,
        )

    @ConfigTracker.track_changes("user")
    def with_section_overrides(
        self,
        *,
        sqm: dict[str, Any] | None = None,
        scheduler: dict[str, Any] | None = None,
        tc_monitor: dict[str, Any] | None = None,
    ) -> SqmctlConfig:
        """
        Return a new config with overrides applied to nested sections.

        Each section dict is merged with the existing section config,
        only overriding the specified fields.
        """
        return SqmctlConfig(
            sqm=self.sqm.with_overrides(sqm or {}),
            scheduler=self.scheduler.with_overrides(scheduler or {}),
            tc_monitor=self.tc_monitor.with_overrides(tc_monitor or {}),
            _tracker=self._tracker,
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return config data structured for explain output.

        Returns:
            Dict mapping section names to list of ConfigEntry objects.
        """
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._tracker.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _SQMCTL:
    """
    Singleton for package configuration.

    Use `SQMCTL.configure()` to customize settings and `SQMCTL.config`
    to access current configuration.

    Example:
        >>> from sqmctl import SQMCTL
        >>> SQMCTL.configure(sqm={"interface": "eth8"})
        >>> print(SQMCTL.config.sqm.ifb_device)
        ifbeth8
    """

    def __init__(self) -> None:
        self._config: SqmctlConfig = SqmctlConfig().with_env_vars()

    def configure(
        self,
        *,
        sqm: dict[str, Any] | None = None,
        scheduler: dict[str, Any] | None = None,
        tc_monitor: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> SqmctlConfig:
        """
        Configure package settings.

        Call at application startup to customize defaults.

        Args:
            sqm: Rate-control overrides (interface, latencies, speeds, blend weights).
            scheduler: Measurement loop overrides (intervals, timeouts).
            tc_monitor: Gateway rate reader overrides (enabled, host, port).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured SqmctlConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If a scheduler or tc-monitor value is invalid.
            SqmConfigurationError: If the rate-control section is invalid.
        """
        base = SqmctlConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            sqm=sqm,
            scheduler=scheduler,
            tc_monitor=tc_monitor,
        )
        return self.validate()

    @property
    def config(self) -> SqmctlConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> SqmctlConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = SqmctlConfig().with_env_vars()
        return self.validate()

    def validate(self) -> SqmctlConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If a scheduler or tc-monitor value is invalid.
            SqmConfigurationError: If the rate-control section is invalid.
        """
        self._config.sqm.validate()
        self._config.scheduler.validate()
        self._config.tc_monitor.validate()
        return self._config

    def explain(
        self,
        output: Callable[[str], None] = print,
    ) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `SQMCTL.explain(logger.info)`
        """
        name_width = 30
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("SQMCTL Configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"SQMCTL(config={self._config!r})"


# Global singleton instance - always reflects current configuration
SQMCTL: _SQMCTL = _SQMCTL()
SQMCTL.validate()  # Validate defaults + env vars on module load
