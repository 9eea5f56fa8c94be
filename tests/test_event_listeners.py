"""Tests for Event Listeners."""

import json
import shutil
import tempfile
import threading
import unittest
from datetime import datetime
from pathlib import Path

from sqmctl._config import SqmConfiguration
from sqmctl._controller import RateController
from sqmctl._event_listeners import SqmEventListener, StatusFileListener
from sqmctl._models import RateAdjustmentResult, SpeedtestResult, SqmStatus

NOW = datetime(2024, 1, 1, 18, 0)


class TestSqmEventListener(unittest.TestCase):
    """Tests for the SqmEventListener base class."""

    def test_default_methods_do_nothing(self):
        """All hooks should be optional no-ops."""
        listener = SqmEventListener()
        status = SqmStatus()
        self.assertIsNone(listener.on_speedtest_applied(status=status, result=SpeedtestResult(None, 18.0, 1, 1)))
        self.assertIsNone(listener.on_rate_adjusted(status=status, adjustment=RateAdjustmentResult(200.0, "x")))
        self.assertIsNone(listener.on_cycle_skipped(kind="ping", reason="timeout"))
        self.assertIsNone(listener.on_config_changed(config=SqmConfiguration()))

    def test_subclass_overrides_only_what_it_needs(self):
        class SkipCounter(SqmEventListener):
            def __init__(self):
                self.skips: list[tuple[str, str]] = []

            def on_cycle_skipped(self, kind, reason):
                self.skips.append((kind, reason))

        listener = SkipCounter()
        controller = RateController(SqmConfiguration(), listeners=[listener], clock=lambda: NOW)

        controller.apply_rate_adjustment(latency=None, current_rate=240.0)
        controller.apply_rate_adjustment(latency=18.0, current_rate=240.0)

        self.assertEqual(listener.skips, [("ping", "no latency measurement")])


class TestStatusFileListenerInit(unittest.TestCase):
    """Tests for StatusFileListener initialization."""

    def test_init_creates_parent_directory(self):
        """Should create the parent directory (including parents) if it doesn't exist."""
        with tempfile.TemporaryDirectory() as tmp:
            file_path = Path(tmp) / "nested" / "dir" / "status.json"

            listener = StatusFileListener(file_path)

            self.assertTrue(file_path.parent.is_dir())
            self.assertEqual(listener.file_path, file_path)

    def test_init_accepts_string_path(self):
        """Should accept str and convert to Path internally."""
        with tempfile.TemporaryDirectory() as tmp:
            listener = StatusFileListener(f"{tmp}/status.json")
            self.assertIsInstance(listener.file_path, Path)

    def test_init_fails_when_path_is_empty(self):
        with self.assertRaises(AssertionError):
            StatusFileListener("")


class TestStatusFileListenerEvents(unittest.TestCase):
    """Tests for StatusFileListener writing snapshots."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.file_path = self.tmp_dir / "status.json"
        self.listener = StatusFileListener(self.file_path)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def read_status(self) -> dict:
        return json.loads(self.file_path.read_text(encoding="utf-8"))

    def test_writes_status_after_rate_adjustment(self):
        status = SqmStatus(current_rate=208.0, current_latency=18.0, last_adjustment=NOW, last_adjustment_reason="ok")

        self.listener.on_rate_adjusted(status=status, adjustment=RateAdjustmentResult(208.0, "ok"))

        data = self.read_status()
        self.assertEqual(data["current_rate"], 208.0)
        self.assertEqual(data["current_latency"], 18.0)
        self.assertEqual(data["last_adjustment"], "2024-01-01T18:00:00")
        self.assertEqual(data["last_adjustment_reason"], "ok")

    def test_writes_status_after_speedtest(self):
        controller = RateController(
            SqmConfiguration(overhead_multiplier=1.0, max_download_speed=300,
                             min_download_speed=100, absolute_max_download_speed=300),
            listeners=[self.listener],
            clock=lambda: NOW,
        )

        controller.trigger_speedtest(json.dumps({
            "ping": {"latency": 18.2},
            "download": {"bandwidth": 25_000_000},
            "upload": {"bandwidth": 2_500_000},
        }))

        data = self.read_status()
        self.assertEqual(data["current_rate"], 200.0)
        self.assertEqual(data["last_speedtest_mbps"], 200.0)
        self.assertEqual(data["last_adjustment_reason"], "Speedtest: 200 Mbps → 200 Mbps")

    def test_skipped_cycle_does_not_write(self):
        self.listener.on_cycle_skipped(kind="speedtest", reason="timeout")
        self.assertFalse(self.file_path.exists())

    def test_stale_snapshot_is_dropped(self):
        """A snapshot older than the one already written never replaces it."""
        self.listener.on_rate_adjusted(
            status=SqmStatus(current_rate=210.0, sequence=2), adjustment=RateAdjustmentResult(210.0, "newer"),
        )
        self.listener.on_rate_adjusted(
            status=SqmStatus(current_rate=260.0, sequence=1), adjustment=RateAdjustmentResult(260.0, "older"),
        )

        data = self.read_status()
        self.assertEqual(data["current_rate"], 210.0)
        self.assertEqual(data["sequence"], 2)

    def test_file_matches_controller_when_notifications_interleave(self):
        """The ping and speedtest threads may notify out of order; the file keeps the latest evaluation."""
        held = threading.Event()
        release = threading.Event()

        class HoldFirstNotification(SqmEventListener):
            def __init__(self):
                self.calls = 0

            def on_rate_adjusted(self, status, adjustment):
                self.calls += 1
                if self.calls == 1:
                    held.set()
                    release.wait(timeout=5)

        controller = RateController(
            SqmConfiguration(), listeners=[HoldFirstNotification(), self.listener], clock=lambda: NOW,
        )

        slow = threading.Thread(target=controller.apply_rate_adjustment, args=(30.0, 260.0))
        slow.start()
        try:
            self.assertTrue(held.wait(timeout=5))
            controller.apply_rate_adjustment(latency=17.9, current_rate=200.0)
        finally:
            release.set()
            slow.join(timeout=5)

        self.assertEqual(controller.status().current_rate, 208.0)
        self.assertEqual(self.read_status()["current_rate"], 208.0)
        self.assertEqual(self.read_status()["sequence"], 2)

    def test_overwrites_previous_snapshot(self):
        self.listener.on_rate_adjusted(status=SqmStatus(current_rate=200.0), adjustment=RateAdjustmentResult(200.0, "a"))
        self.listener.on_rate_adjusted(status=SqmStatus(current_rate=210.0), adjustment=RateAdjustmentResult(210.0, "b"))
        self.assertEqual(self.read_status()["current_rate"], 210.0)


if __name__ == "__main__":
    unittest.main()
