"""
Data models for the rate controller.

This module contains the core data structures shared by the controller components:
- BucketKey: (day of week, hour) slot of the weekly baseline (frozen/immutable)
- Sample: One speedtest measurement projected into a bucket (frozen/immutable)
- HourlyBaseline: Learned statistics for one bucket (mutable, owned by BaselineLearner)
- BaselineTable: The 168 hourly baselines
- SpeedtestResult: Parsed speedtest output (frozen/immutable)
- RateAdjustmentResult, RateBounds, BlendRatio: Value types produced per evaluation
- SqmStatus: Read-only snapshot of the controller state
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, NamedTuple

DAYS_PER_WEEK = 7
HOURS_PER_DAY = 24
TOTAL_BUCKETS = DAYS_PER_WEEK * HOURS_PER_DAY

_BUCKET_KEY_PATTERN = re.compile(r"(\d+)_(\d+)", re.ASCII)


@dataclass(frozen=True, order=True)
class BucketKey:
    """
    One hour-of-the-week slot.

    Attributes:
        day_of_week: 0 (Monday) to 6 (Sunday).
        hour: 0 to 23.

    Example:
        >>> BucketKey(0, 18).key
        '0_18'
        >>> BucketKey.parse("6_23")
        BucketKey(day_of_week=6, hour=23)
        >>> BucketKey.parse("7_0") is None
        True
    """

    day_of_week: int
    hour: int

    def __post_init__(self) -> None:
        assert 0 <= self.day_of_week < DAYS_PER_WEEK, f"day_of_week must be between 0 and 6, got {self.day_of_week}."
        assert 0 <= self.hour < HOURS_PER_DAY, f"hour must be between 0 and 23, got {self.hour}."

    @property
    def key(self) -> str:
        """Serialized form used by the shell export (`"{day}_{hour}"`)."""
        return f"{self.day_of_week}_{self.hour}"

    @classmethod
    def parse(cls, text: str) -> BucketKey | None:
        """
        Parse a `"{day}_{hour}"` key.

        Returns:
            The bucket, or None if the key is malformed or out of range.
        """
        if not isinstance(text, str):
            return None
        match = _BUCKET_KEY_PATTERN.fullmatch(text.strip())
        if not match:
            return None
        day, hour = int(match.group(1)), int(match.group(2))
        if not (0 <= day < DAYS_PER_WEEK and 0 <= hour < HOURS_PER_DAY):
            return None
        return cls(day, hour)

    @classmethod
    def from_datetime(cls, when: datetime) -> BucketKey:
        """Bucket for a point in time (Monday=0, as `datetime.weekday()`)."""
        return cls(when.weekday(), when.hour)

    @classmethod
    def all(cls) -> tuple[BucketKey, ...]:
        """All 168 buckets, Monday 00h first."""
        return tuple(cls(day, hour) for day in range(DAYS_PER_WEEK) for hour in range(HOURS_PER_DAY))


@dataclass(frozen=True)
class Sample:
    """
    A validated throughput/latency measurement assigned to a bucket.

    Produced only by SpeedtestProcessor.create_sample().

    Attributes:
        timestamp: When the measurement was taken (None if the speedtest did not report it).
        day_of_week: Bucket day, 0 (Monday) to 6 (Sunday).
        hour: Bucket hour, 0 to 23.
        download_mbps: Measured download throughput.
        upload_mbps: Measured upload throughput.
        latency_ms: Idle latency reported by the speedtest.
    """

    timestamp: datetime | None
    day_of_week: int
    hour: int
    download_mbps: float
    upload_mbps: float
    latency_ms: float

    def __post_init__(self) -> None:
        BucketKey(self.day_of_week, self.hour)

    @property
    def bucket(self) -> BucketKey:
        return BucketKey(self.day_of_week, self.hour)


@dataclass
class HourlyBaseline:
    """
    Learned download statistics (Mbps) for one bucket.

    Created on the first sample for the bucket and mutated by BaselineLearner
    on every subsequent one. Never mutated anywhere else.
    """

    day_of_week: int
    hour: int
    mean: float
    median: float
    min: float
    max: float
    std_dev: float
    sample_count: int
    last_updated: datetime | None = None

    @property
    def bucket(self) -> BucketKey:
        return BucketKey(self.day_of_week, self.hour)


@dataclass
class BaselineTable:
    """
    Mapping of bucket to learned baseline.

    Attributes:
        baselines: One HourlyBaseline per bucket that has data.
        collection_started: When the first sample was recorded.
        last_updated: When any bucket last changed.
        is_complete: True iff all 168 buckets have data.
    """

    TOTAL_BUCKETS: ClassVar[int] = TOTAL_BUCKETS

    baselines: dict[BucketKey, HourlyBaseline] = field(default_factory=dict)
    collection_started: datetime | None = None
    last_updated: datetime | None = None
    is_complete: bool = False

    def __len__(self) -> int:
        return len(self.baselines)

    def __contains__(self, bucket: object) -> bool:
        return bucket in self.baselines

    def __iter__(self) -> Iterator[HourlyBaseline]:
        for bucket in sorted(self.baselines):
            yield self.baselines[bucket]

    def get(self, bucket: BucketKey) -> HourlyBaseline | None:
        return self.baselines.get(bucket)

    def get_for(self, when: datetime) -> HourlyBaseline | None:
        """Baseline of the bucket `when` falls into."""
        return self.baselines.get(BucketKey.from_datetime(when))

    def completion_percentage(self) -> float:
        return 100.0 * len(self.baselines) / TOTAL_BUCKETS

    def refresh_completeness(self) -> bool:
        self.is_complete = len(self.baselines) == TOTAL_BUCKETS
        return self.is_complete


@dataclass(frozen=True)
class SpeedtestResult:
    """
    A parsed speedtest measurement (Ookla CLI JSON output).

    Bandwidths are in bytes per second, as reported by the CLI.

    Attributes:
        timestamp: Measurement time, or None if absent.
        latency_ms: Idle ping latency.
        download_bandwidth: Download throughput in bytes/s.
        upload_bandwidth: Upload throughput in bytes/s.
        isp: ISP name, if reported.
        server_id: Speedtest server id, if reported.
        result_url: Shareable result URL, if reported.
    """

    timestamp: datetime | None
    latency_ms: float
    download_bandwidth: int
    upload_bandwidth: int
    isp: str = ""
    server_id: int | None = None
    result_url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpeedtestResult:
        """
        Build a result from the decoded speedtest JSON document.

        Missing measurement sections default to 0 so that validation (not
        parsing) is what rejects them.

        Raises:
            TypeError: If the document or one of its sections is not an object.
            ValueError: If a numeric field or the timestamp can not be converted.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Speedtest result must be a JSON object, got {type(data).__name__}.")

        ping = _section(data, "ping")
        download = _section(data, "download")
        upload = _section(data, "upload")
        server = _section(data, "server")
        result = _section(data, "result")

        raw_timestamp = data.get("timestamp")
        timestamp = _parse_timestamp(raw_timestamp) if raw_timestamp else None

        return cls(
            timestamp=timestamp,
            latency_ms=float(ping.get("latency", 0.0)),
            download_bandwidth=int(download.get("bandwidth", 0)),
            upload_bandwidth=int(upload.get("bandwidth", 0)),
            isp=str(data.get("isp") or ""),
            server_id=int(server["id"]) if server.get("id") is not None else None,
            result_url=str(result.get("url") or ""),
        )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"Speedtest result section '{name}' must be a JSON object.")
    return value


def _parse_timestamp(raw: Any) -> datetime:
    if not isinstance(raw, str):
        raise ValueError(f"Invalid speedtest timestamp: {raw!r}")
    return datetime.fromisoformat(raw)


class RateAdjustmentResult(NamedTuple):
    """
    Outcome of one rate evaluation.

    `reason` is for observability only; no control decision depends on it.
    """

    adjusted_rate: float
    reason: str


class RateBounds(NamedTuple):
    """Safe operating range derived from the absolute max download speed (Mbps)."""

    min_rate: float
    optimal_rate: float
    max_rate: float


class BlendRatio(NamedTuple):
    """Weights given to the learned baseline and the live measurement (summing to 1)."""

    baseline_weight: float
    measured_weight: float


@dataclass(frozen=True)
class SqmStatus:
    """
    Read-only snapshot of the controller state.

    The controller replaces the whole snapshot after every evaluation, so a
    reader never observes a partially updated status.

    Attributes:
        current_rate: Rate (Mbps) the shaper should enforce now. 0 until the first evaluation.
        last_speedtest_mbps: Download throughput of the last accepted speedtest.
        last_speedtest_time: Timestamp of the last accepted speedtest.
        current_latency: Last measured latency in ms (None until a ping cycle succeeds).
        baseline_speed: Learned baseline (Mbps) for the current hour, if any.
        learning_mode_active: Whether speedtests are feeding the baseline.
        learning_mode_progress: Share of the 168 buckets with data, 0-100.
        last_adjustment: When current_rate was last changed.
        last_adjustment_reason: Why current_rate was last changed.
        sequence: Increases with every published snapshot. Observers that receive
            snapshots from several threads use it to drop stale ones.
    """

    current_rate: float = 0.0
    last_speedtest_mbps: float | None = None
    last_speedtest_time: datetime | None = None
    current_latency: float | None = None
    baseline_speed: int | None = None
    learning_mode_active: bool = False
    learning_mode_progress: int = 0
    last_adjustment: datetime | None = None
    last_adjustment_reason: str | None = None
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict (datetimes as ISO 8601 strings)."""
        data = dataclasses.asdict(self)
        for name, value in data.items():
            if isinstance(value, datetime):
                data[name] = value.isoformat()
        return data
