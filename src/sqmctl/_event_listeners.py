"""
Event listeners for the rate controller.

This module contains the SqmEventListener base class and concrete implementations
for observing controller events.

Available Listeners:
    - SqmEventListener: Base class for all event listeners.
    - StatusFileListener: Persists the latest status snapshot to a JSON file.

Example:
    >>> from sqmctl import RateController, StatusFileListener
    >>> listener = StatusFileListener("/var/lib/sqmctl/status.json")
    >>> controller = RateController(config, listeners=[listener])
"""

import logging
import threading
from pathlib import Path
from typing import override

from sqmctl._config import SqmConfiguration
from sqmctl._models import RateAdjustmentResult, SpeedtestResult, SqmStatus
from sqmctl._utils import save_json_file

logger = logging.getLogger(__name__)


class SqmEventListener:
    """
    Base class for observing controller events.

    Listeners are read-only observers: they can react to events, log, notify
    or render enforcement artifacts, but they receive immutable snapshots and
    can not change the controller state. They are called after the state has
    been applied, outside the controller lock.

    All methods have default empty implementations, so subclasses only need to
    override the methods they care about.

    Example:
        >>> class ShaperListener(SqmEventListener):
        ...     def on_rate_adjusted(self, status, adjustment):
        ...         push_rate_to_gateway(status.current_rate)
    """

    def on_speedtest_applied(self, status: SqmStatus, result: SpeedtestResult) -> None:
        """
        Called after a speedtest result changed the current rate.

        Args:
            status: The status snapshot after the update.
            result: The accepted speedtest result.
        """
        pass

    def on_rate_adjusted(self, status: SqmStatus, adjustment: RateAdjustmentResult) -> None:
        """
        Called after a latency-driven adjustment was applied.

        Args:
            status: The status snapshot after the update.
            adjustment: The adjustment that was applied.
        """
        pass

    def on_cycle_skipped(self, kind: str, reason: str) -> None:
        """
        Called when a ping or speedtest cycle produced no usable data.

        The status is left unchanged in that case.

        Args:
            kind: "ping" or "speedtest".
            reason: Why the cycle was skipped.
        """
        pass

    def on_config_changed(self, config: SqmConfiguration) -> None:
        """
        Called after the configuration was replaced.

        Args:
            config: The new configuration.
        """
        pass


class StatusFileListener(SqmEventListener):
    """
    Listener that writes the status snapshot to a JSON file after every change.

    Dashboards and report generators read this file instead of talking to the
    controller. The ping and speedtest loops notify from different threads, so
    snapshots older than the one already written (by `SqmStatus.sequence`) are
    dropped, and the file always holds the latest evaluation.

    Example:
        >>> listener = StatusFileListener(Path("/var/lib/sqmctl/status.json"))
    """

    def __init__(self, file_path: Path | str):
        """
        Args:
            file_path: Destination JSON file. Its parent directory is created if needed.
        """
        assert file_path, "Status file path is required."

        self.file_path: Path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._last_sequence = -1

    @override
    def on_speedtest_applied(self, status: SqmStatus, result: SpeedtestResult) -> None:
        """Writes the status after a speedtest."""
        self._write(status)

    @override
    def on_rate_adjusted(self, status: SqmStatus, adjustment: RateAdjustmentResult) -> None:
        """Writes the status after a latency adjustment."""
        self._write(status)

    def _write(self, status: SqmStatus) -> None:
        with self._lock:
            if status.sequence < self._last_sequence:
                logger.debug(
                    f"Dropping stale status #{status.sequence} (#{self._last_sequence} already written)."
                )
                return
            save_json_file(data=status.to_dict(), file_path=self.file_path)
            self._last_sequence = status.sequence
