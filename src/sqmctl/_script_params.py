"""
Variable blocks for the shaper scripts that run on the gateway.

The gateway applies rates with shell scripts (tc, bc, awk). This module
renders only the parameter section those scripts start with: the controller
settings and the learned baseline as a bash associative array.

Every number goes through `format_invariant`, so the output is identical
whatever the locale of the process: bash arithmetic and `bc` only accept
`.` as decimal separator.

Example:
    >>> print(render_ping_parameters(SqmConfiguration(), {"0_0": "261"}))
    INTERFACE="eth2"
    IFB_DEVICE="ifbeth2"
    ...
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from sqmctl._config import SqmConfiguration
from sqmctl._models import BucketKey
from sqmctl._utils import format_invariant

_SAFE_VALUE_PATTERN = re.compile(r"[A-Za-z0-9._:@%+-]+", re.ASCII)
_DECIMAL_PATTERN = re.compile(r"\d+(?:\.\d+)?", re.ASCII)


def _quoted(value: str) -> str:
    """Double-quoted shell word. Only values that need no escaping are accepted."""
    if not _SAFE_VALUE_PATTERN.fullmatch(value):
        raise ValueError(f"Unsafe value for a shell variable: {value!r}")
    return f'"{value}"'


def _number(value: float | int | str) -> str:
    if isinstance(value, str):
        # Already rendered by a shell export
        if not _DECIMAL_PATTERN.fullmatch(value):
            raise ValueError(f"Not a plain decimal number: {value!r}")
        return value
    return format_invariant(value)


def render_baseline(baseline: Mapping[str, float | int | str]) -> list[str]:
    """
    Render the learned baseline as a bash associative array, in bucket order.

    Keys that are not valid `"{day}_{hour}"` buckets are skipped.

    Raises:
        ValueError: If a value is not a finite, plain decimal number.

    Example:
        >>> render_baseline({"1_0": 250, "0_18": "225"})
        ['declare -A BASELINE', 'BASELINE[0_18]="225"', 'BASELINE[1_0]="250"']
    """
    entries: list[tuple[BucketKey, str]] = []
    for key, value in baseline.items():
        bucket = BucketKey.parse(key)
        if bucket is None:
            continue
        entries.append((bucket, _number(value)))

    lines = ["declare -A BASELINE"]
    lines.extend(f'BASELINE[{bucket.key}]="{value}"' for bucket, value in sorted(entries))
    return lines


def render_speedtest_parameters(
    config: SqmConfiguration,
    baseline: Mapping[str, float | int | str],
) -> str:
    """
    Parameter block of the speedtest script.

    Args:
        config: Rate-control configuration.
        baseline: Shell-format baseline (see `BaselineLearner.export_shell_format()`).
    """
    lines = [
        f'MAX_DOWNLOAD_SPEED="{format_invariant(config.max_download_speed)}"',
        f'MIN_DOWNLOAD_SPEED="{format_invariant(config.min_download_speed)}"',
        f'DOWNLOAD_SPEED_MULTIPLIER="{format_invariant(config.overhead_multiplier)}"',
        f"INTERFACE={_quoted(config.interface)}",
        f"IFB_DEVICE={_quoted(config.ifb_device)}",
        "",
        *render_baseline(baseline),
    ]
    return "\n".join(lines) + "\n"


def render_ping_parameters(
    config: SqmConfiguration,
    baseline: Mapping[str, float | int | str],
    current_rate: float | None = None,
) -> str:
    """
    Parameter block of the latency-adjustment script.

    Args:
        config: Rate-control configuration.
        baseline: Shell-format baseline (see `BaselineLearner.export_shell_format()`).
        current_rate: Rate to start from, in Mbps. If None, the script reads it from tc.
    """
    lines = [
        f"INTERFACE={_quoted(config.interface)}",
        f"IFB_DEVICE={_quoted(config.ifb_device)}",
        "",
        *render_baseline(baseline),
        "",
        f"ISP_PING_HOST={_quoted(config.ping_host)}",
        f"BASELINE_LATENCY={format_invariant(config.baseline_latency)}",
        f"LATENCY_THRESHOLD={format_invariant(config.latency_threshold)}",
        f"LATENCY_DECREASE={format_invariant(config.latency_decrease)}",
        f"LATENCY_INCREASE={format_invariant(config.latency_increase)}",
        f'ABSOLUTE_MAX_DOWNLOAD_SPEED="{format_invariant(config.absolute_max_download_speed)}"',
    ]
    if current_rate is not None:
        lines.append(f'CURRENT_RATE="{format_invariant(current_rate, decimals=1)}"')
    return "\n".join(lines) + "\n"
