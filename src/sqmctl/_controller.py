"""
Rate controller: the orchestrator of the adaptive SQM loop.

RateController owns the configuration, the learned baseline and the current
status. It routes speedtest results through SpeedtestProcessor (and, in
learning mode, BaselineLearner) and latency measurements through
LatencyAdjuster, and publishes the resulting rate in an immutable SqmStatus
snapshot for the enforcement renderer and dashboards.

Concurrency model:
    The ping loop and the speedtest loop call the controller from different
    threads. A single lock guards the configuration reference, the learner
    and the status. Evaluations are pure and run off-lock against a
    consistent snapshot of the configuration; only the brief read of inputs
    and the final state update happen under the lock.

    Listeners are notified after the lock is released, so snapshots from the
    two loops can reach them out of order. Each published snapshot carries a
    `sequence` number taken under the lock for listeners that need ordering.

Example:
    >>> from sqmctl import RateController, SqmConfiguration
    >>> controller = RateController(SqmConfiguration(interface="eth8"))
    >>> controller.start_learning_mode()
    >>> controller.trigger_speedtest(raw_json)
    242.0
    >>> controller.apply_rate_adjustment(latency=23.1, current_rate=242.0)
    RateAdjustmentResult(adjusted_rate=227.7, reason='High latency: 23.1ms ...')
"""

from __future__ import annotations

import copy
import logging
import math
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from sqmctl._baseline import BaselineLearner, local_now
from sqmctl._config import SqmConfiguration, SqmConfigurationError
from sqmctl._event_listeners import SqmEventListener
from sqmctl._latency import LatencyAdjuster
from sqmctl._models import BaselineTable, RateAdjustmentResult, RateBounds, SqmStatus
from sqmctl._speedtest import SpeedtestProcessor, bytes_per_sec_to_mbps
from sqmctl._utils import format_invariant

logger = logging.getLogger(__name__)


class InvalidSpeedtestResultError(ValueError):
    """
    Raised when a speedtest payload can not be parsed or is implausible.

    This is the one fatal path of the controller: applying a rate derived
    from a bogus measurement would destabilize the link.
    """

    def __init__(self, message: str = "Invalid speedtest result"):
        super().__init__(message)


class RateController:
    """
    Decides the rate the shaper should enforce on one WAN interface.

    Attributes:
        listeners: Observers notified after every state change.
    """

    def __init__(
        self,
        config: SqmConfiguration | None = None,
        baseline: BaselineTable | None = None,
        listeners: list[SqmEventListener] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the controller.

        Args:
            config: Rate-control configuration. If None, uses `SQMCTL.config.sqm`.
            baseline: Previously learned baseline table. Starts empty if None.
            listeners: Event listeners for observing state changes.
            clock: Returns "now" (local, timezone-aware). Used for bucket lookups
                and status timestamps.

        Raises:
            SqmConfigurationError: If the configuration is invalid.
        """
        if config is None:
            from sqmctl._config import SQMCTL
            config = SQMCTL.config.sqm

        config.validate()

        self._clock: Callable[[], datetime] = clock or local_now
        self._lock = threading.Lock()
        self._config: SqmConfiguration = config
        self._adjuster = LatencyAdjuster(config)
        self._processor = SpeedtestProcessor(config, clock=self._clock)
        self._learner = BaselineLearner(baseline, clock=self._clock)
        self._learning_mode = False
        self._status = SqmStatus()
        self.listeners: list[SqmEventListener] = listeners if listeners is not None else []

    # ======================
    # Configuration
    # ======================

    @property
    def config(self) -> SqmConfiguration:
        with self._lock:
            return self._config

    def validate_configuration(self, config: SqmConfiguration | None = None) -> list[str]:
        """
        List every invariant violated by a configuration (the current one by default).

        Never raises.
        """
        return (config or self.config).validation_errors()

    def configure(self, new_config: SqmConfiguration) -> None:
        """
        Replace the configuration as a whole unit.

        Evaluations already in flight finish against the configuration they
        started with; later ones see the new one. Fields are never updated
        in place.

        Raises:
            SqmConfigurationError: If the new configuration is invalid. The
                current configuration is kept in that case.
        """
        errors = new_config.validation_errors()
        if errors:
            raise SqmConfigurationError(errors)

        adjuster = LatencyAdjuster(new_config)
        processor = SpeedtestProcessor(new_config, clock=self._clock)
        with self._lock:
            self._config = new_config
            self._adjuster = adjuster
            self._processor = processor

        logger.info(f"{self._prefix(new_config)} | SQM | Configuration replaced.")
        self._notify_listeners("on_config_changed", config=new_config)

    # ======================
    # Learning mode
    # ======================

    def start_learning_mode(self) -> None:
        """Start feeding speedtest samples into the baseline. Existing data is kept."""
        with self._lock:
            self._learning_mode = True
            self._status = self._refreshed_status()
            progress = self._status.learning_mode_progress
        logger.info(f"{self._prefix()} | SQM | 🎓 Learning mode started ({progress}% of the week learned).")

    def stop_learning_mode(self) -> None:
        """Stop feeding the baseline. Progress keeps reflecting the actual coverage."""
        with self._lock:
            self._learning_mode = False
            self._status = self._refreshed_status()
            progress = self._status.learning_mode_progress
        logger.info(f"{self._prefix()} | SQM | Learning mode stopped ({progress}% of the week learned).")

    @property
    def learning_mode_active(self) -> bool:
        with self._lock:
            return self._learning_mode

    def learning_progress(self) -> int:
        with self._lock:
            return self._learner.learning_progress()

    def is_learning_complete(self) -> bool:
        with self._lock:
            return self._learner.table.is_complete

    # ======================
    # Evaluations
    # ======================

    def trigger_speedtest(self, raw_json: str | bytes | None) -> float:
        """
        Apply a speedtest result.

        Parses and validates the payload, feeds the baseline when learning
        mode is active, then computes and publishes the new rate.

        Args:
            raw_json: Speedtest CLI JSON output.

        Returns:
            The new rate in Mbps.

        Raises:
            InvalidSpeedtestResultError: If the payload is malformed or implausible.
        """
        with self._lock:
            processor = self._processor

        result = processor.parse_result(raw_json)
        if result is None or not processor.is_valid_result(result):
            raise InvalidSpeedtestResultError()
        sample = processor.create_sample(result)

        with self._lock:
            if self._learning_mode:
                self._learner.update_hourly_baseline(sample)
            baseline_speed = self._learner.current_baseline_speed()

        rate = processor.process_result(result, baseline_speed)
        measured = bytes_per_sec_to_mbps(result.download_bandwidth)
        reason = f"Speedtest: {format_invariant(measured, decimals=0)} Mbps → {format_invariant(rate, decimals=0)} Mbps"
        now = self._clock()

        with self._lock:
            self._status = replace(
                self._refreshed_status(),
                current_rate=rate,
                last_speedtest_mbps=measured,
                last_speedtest_time=result.timestamp or now,
                last_adjustment=now,
                last_adjustment_reason=reason,
                sequence=self._status.sequence + 1,
            )
            status = self._status

        logger.info(f"{self._prefix(processor.config)} | SQM | 🚀 {reason}")
        self._notify_listeners("on_speedtest_applied", status=status, result=result)
        return rate

    def apply_rate_adjustment(self, latency: float | None, current_rate: float) -> RateAdjustmentResult | None:
        """
        Apply a latency-driven adjustment.

        Args:
            latency: Average RTT of the last probe in ms, or None if the probe
                produced no result.
            current_rate: Rate currently enforced by the shaper, in Mbps.

        Returns:
            The applied adjustment, or None if the cycle was skipped (the
            status is left unchanged).
        """
        if latency is None or not math.isfinite(latency):
            self.record_skipped_cycle("ping", "no latency measurement")
            return None

        with self._lock:
            adjuster = self._adjuster

        adjustment = adjuster.calculate_rate_adjustment(latency, current_rate)
        now = self._clock()

        with self._lock:
            self._status = replace(
                self._refreshed_status(),
                current_rate=adjustment.adjusted_rate,
                current_latency=latency,
                last_adjustment=now,
                last_adjustment_reason=adjustment.reason,
                sequence=self._status.sequence + 1,
            )
            status = self._status

        prefix = self._prefix(adjuster.config)
        if adjustment.adjusted_rate < current_rate:
            logger.warning(
                f"{prefix} | SQM | 📉 Rate {format_invariant(current_rate, decimals=1)} → "
                f"{format_invariant(adjustment.adjusted_rate, decimals=1)} Mbps: {adjustment.reason}"
            )
        else:
            logger.info(
                f"{prefix} | SQM | Rate {format_invariant(current_rate, decimals=1)} → "
                f"{format_invariant(adjustment.adjusted_rate, decimals=1)} Mbps: {adjustment.reason}"
            )

        self._notify_listeners("on_rate_adjusted", status=status, adjustment=adjustment)
        return adjustment

    def record_skipped_cycle(self, kind: str, reason: str) -> None:
        """Log a cycle that produced no data and notify listeners. The status is not touched."""
        logger.warning(f"{self._prefix()} | SQM | ⚠️ Skipping {kind} cycle: {reason}")
        self._notify_listeners("on_cycle_skipped", kind=kind, reason=reason)

    # ======================
    # Queries
    # ======================

    def status(self) -> SqmStatus:
        """Current status snapshot (learning progress and baseline refreshed for the current hour)."""
        with self._lock:
            return self._refreshed_status()

    def rate_bounds(self) -> RateBounds:
        with self._lock:
            adjuster = self._adjuster
        return adjuster.rate_bounds()

    def needs_recovery(self, current_rate: float) -> bool:
        with self._lock:
            adjuster = self._adjuster
        return adjuster.needs_recovery(current_rate)

    # ======================
    # Baseline hand-off
    # ======================

    def load_baseline(self, table: BaselineTable) -> None:
        """Replace the learned baseline with a table loaded from storage."""
        table = copy.deepcopy(table)
        with self._lock:
            self._learner.load_table(table)
            self._status = self._refreshed_status()
        logger.info(f"{self._prefix()} | SQM | Baseline loaded ({len(table)} buckets).")

    def import_baseline(self, data: dict[str, str]) -> int:
        """Replace the learned baseline with a shell-format export. Returns the number of buckets imported."""
        with self._lock:
            imported = self._learner.import_shell_format(data)
            self._status = self._refreshed_status()
        return imported

    def baseline_table(self) -> BaselineTable:
        """A copy of the learned baseline, for persistence."""
        with self._lock:
            return copy.deepcopy(self._learner.table)

    def export_baseline(self) -> dict[str, str]:
        """Shell-format export of the learned baseline."""
        with self._lock:
            return self._learner.export_shell_format()

    # ======================
    # Internals
    # ======================

    def _refreshed_status(self) -> SqmStatus:
        # Caller must hold self._lock
        return replace(
            self._status,
            learning_mode_active=self._learning_mode,
            learning_mode_progress=self._learner.learning_progress(),
            baseline_speed=self._learner.current_baseline_speed(),
        )

    def _prefix(self, config: SqmConfiguration | None = None) -> str:
        interface = (config or self._config).interface
        return f"{interface[:26]:<26}"

    def _notify_listeners(self, event: str, **kwargs: Any) -> None:
        """
        Notifies all registered listeners about an event.

        Exceptions raised by listeners are logged but do not interrupt the control cycle.
        """
        for listener in self.listeners:
            try:
                method = getattr(listener, event, None)
                if method and callable(method):
                    method(**kwargs)
            except Exception as e:
                listener_name = listener.__class__.__name__
                logger.warning(
                    f"{self._prefix()} | SQM | Event listener `{listener_name}.{event}()` raised an exception: {e}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
