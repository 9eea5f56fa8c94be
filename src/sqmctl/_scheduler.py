"""
Periodic driver for the rate controller.

ControlLoop runs the two measurement loops of a link in background threads:

- Ping loop: every `ping_adjustment_interval` minutes, probe latency and
  apply a latency-driven adjustment starting from the rate currently enforced.
- Speedtest loop: every `speedtest_interval` seconds (or the denser
  `learning_speedtest_interval` while learning mode is active), run a
  speedtest and apply it.

A cycle that produces no data is skipped: the controller keeps its last
known state and the loop waits for the next tick. Both loops wait on a
single stop event so that `stop()` interrupts them immediately.

Example:
    >>> from sqmctl import ControlLoop, RateController
    >>> loop = ControlLoop.from_config(RateController())
    >>> loop.start()
    >>> ...
    >>> loop.stop()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

import requests

from sqmctl._config import SchedulerConfig, SqmctlConfig
from sqmctl._controller import InvalidSpeedtestResultError, RateController
from sqmctl._models import RateAdjustmentResult
from sqmctl._ping import PingProbe
from sqmctl._retry import MaxRetriesExceededError
from sqmctl._speedtest import SpeedtestRunner
from sqmctl._tc_monitor import TcMonitorClient, TcMonitorError
from sqmctl._utils import is_timeout_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

RateReader = Callable[[], float | None]


class ControlLoop:
    """
    Runs the ping and speedtest loops for one controller.

    Attributes:
        controller: The rate controller being driven.
        ping_probe: Latency probe for the WAN interface.
        speedtest_runner: Speedtest process runner for the WAN interface.
        rate_reader: Returns the rate currently enforced by the shaper (e.g.
            `TcMonitorClient.get_primary_wan_rate`), or None if unknown.
        scheduler_config: Loop intervals and timeouts.
    """

    def __init__(
        self,
        controller: RateController,
        ping_probe: PingProbe,
        speedtest_runner: SpeedtestRunner,
        rate_reader: RateReader | None = None,
        scheduler_config: SchedulerConfig | None = None,
    ):
        assert controller is not None, "Rate controller can not be None."
        assert ping_probe is not None, "Ping probe can not be None."
        assert speedtest_runner is not None, "Speedtest runner can not be None."

        if scheduler_config is None:
            from sqmctl._config import SQMCTL
            scheduler_config = SQMCTL.config.scheduler

        self.controller = controller
        self.ping_probe = ping_probe
        self.speedtest_runner = speedtest_runner
        self.rate_reader = rate_reader
        self.scheduler_config = scheduler_config.validate()

        self._stop_event = threading.Event()
        self._speedtest_lock = threading.Lock()
        self._threads_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_config(cls, controller: RateController, config: SqmctlConfig | None = None) -> ControlLoop:
        """
        Build a loop with the standard ping probe, speedtest runner and (if
        enabled) tc-monitor rate reader.

        Args:
            controller: The rate controller to drive.
            config: Package configuration. If None, uses `SQMCTL.config`.
        """
        if config is None:
            from sqmctl._config import SQMCTL
            config = SQMCTL.config

        sqm = controller.config
        scheduler = config.scheduler
        rate_reader: RateReader | None = None
        if config.tc_monitor.enabled:
            rate_reader = TcMonitorClient.from_config(config.tc_monitor).get_primary_wan_rate

        return cls(
            controller=controller,
            ping_probe=PingProbe(sqm.interface, sqm.ping_host, timeout=scheduler.ping_timeout),
            speedtest_runner=SpeedtestRunner(
                sqm.interface,
                timeout=scheduler.speedtest_timeout,
                server_id=scheduler.speedtest_server_id,
            ),
            rate_reader=rate_reader,
            scheduler_config=scheduler,
        )

    # ======================
    # Intervals
    # ======================

    def ping_interval(self) -> float:
        """Seconds between ping cycles (follows reconfigurations of the controller)."""
        return self.controller.config.ping_adjustment_interval * 60.0

    def speedtest_interval(self) -> float:
        """Seconds between speedtest cycles; shorter while learning mode is active."""
        if self.controller.learning_mode_active:
            return self.scheduler_config.learning_speedtest_interval
        return self.scheduler_config.speedtest_interval

    # ======================
    # Cycles
    # ======================

    def current_rate(self) -> float:
        """
        Rate the next latency adjustment starts from.

        The rate reported by the gateway wins. Without it, the last rate the
        controller published is used, or the configured max before the first
        evaluation.
        """
        if self.rate_reader is not None:
            try:
                rate = self.rate_reader()
                if rate is not None and rate > 0:
                    return rate
                logger.warning(f"{self._prefix()} | SQM | ⚠️ Gateway reported no active rate.")
            except (MaxRetriesExceededError, TcMonitorError, requests.RequestException) as e:
                problem = "timed out" if is_timeout_exception(e) else "failed"
                logger.warning(
                    f"{self._prefix()} | SQM | ⚠️ Reading the enforced rate from the gateway {problem}: {e}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )

        status = self.controller.status()
        if status.current_rate > 0:
            return status.current_rate
        return float(self.controller.config.max_download_speed)

    def run_ping_cycle(self) -> RateAdjustmentResult | None:
        """
        Probe latency once and apply the resulting adjustment.

        Returns:
            The applied adjustment, or None if the probe produced no result.
        """
        latency = self.ping_probe.measure()
        if latency is None:
            self.controller.record_skipped_cycle("ping", "no latency measurement")
            return None
        return self.controller.apply_rate_adjustment(latency, self.current_rate())

    def run_speedtest_cycle(self) -> float | None:
        """
        Run one speedtest and apply it.

        Only one speedtest runs at a time: a cycle that starts while another
        one is still running is rejected.

        Returns:
            The new rate, or None if the cycle was skipped.
        """
        if not self._speedtest_lock.acquire(blocking=False):
            self.controller.record_skipped_cycle("speedtest", "another speedtest is still running")
            return None

        try:
            raw_json = self.speedtest_runner.run()
            if raw_json is None:
                self.controller.record_skipped_cycle("speedtest", "speedtest produced no result")
                return None
            try:
                return self.controller.trigger_speedtest(raw_json)
            except InvalidSpeedtestResultError as e:
                self.controller.record_skipped_cycle("speedtest", str(e))
                return None
        finally:
            self._speedtest_lock.release()

    # ======================
    # Lifecycle
    # ======================

    @property
    def is_running(self) -> bool:
        with self._threads_lock:
            return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start both loops. Does nothing if they are already running."""
        with self._threads_lock:
            if any(thread.is_alive() for thread in self._threads):
                return

            self._stop_event.clear()
            interface = self.controller.config.interface
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=("ping", self.run_ping_cycle, self.ping_interval, False),
                    name=f"sqmctl-ping-{interface}",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=("speedtest", self.run_speedtest_cycle, self.speedtest_interval, True),
                    name=f"sqmctl-speedtest-{interface}",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()

        logger.info(f"{self._prefix()} | SQM | Control loops started.")

    def stop(self, timeout: float | None = None) -> None:
        """
        Stop both loops and wait for them to finish. Does nothing if they are not running.

        A cycle already in progress (e.g. a running speedtest) is not
        interrupted; `timeout` bounds how long to wait for each thread.
        """
        with self._threads_lock:
            threads, self._threads = self._threads, []
            self._stop_event.set()

        for thread in threads:
            thread.join(timeout)

        if threads:
            logger.info(f"{self._prefix()} | SQM | Control loops stopped.")

    # ======================
    # Internals
    # ======================

    def _loop(
        self,
        name: str,
        cycle: Callable[[], T],
        interval: Callable[[], float],
        run_first: bool,
    ) -> None:
        if run_first:
            self._run_safely(name, cycle)
        while not self._stop_event.wait(interval()):
            self._run_safely(name, cycle)

    def _run_safely(self, name: str, cycle: Callable[[], T]) -> T | None:
        try:
            return cycle()
        except Exception as e:
            logger.error(
                f"{self._prefix()} | SQM | ❌ Unexpected error in {name} cycle: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return None

    def _prefix(self) -> str:
        return f"{self.controller.config.interface[:26]:<26}"
