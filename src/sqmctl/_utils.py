"""
Utility functions for the sqmctl package.

This module provides internal helper functions used throughout the controller.
These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
import math
import random
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def sleep_with_jitter(seconds: float, jitter_factor: float = 0.1) -> None:
    """
    Sleep for the given duration with random jitter.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.

    Example:
        >>> sleep_with_jitter(10.0)  # Sleeps between 9.0 and 11.0 seconds
    """
    jitter = random.uniform(-jitter_factor, jitter_factor)
    sleep_time = max(0.0, seconds * (1 + jitter))
    time.sleep(sleep_time)


def format_invariant(value: float | int, decimals: int | None = None) -> str:
    """
    Render a number with `.` as decimal separator, whatever the process locale is.

    Values rendered here end up in POSIX shell arithmetic (`bc`, `awk`) on the
    enforcement host, where a `,` separator silently breaks the expression.
    Only the `f` format spec is used: it never consults `locale` and never
    switches to exponent notation, which `bc` and `awk` can not read.

    Args:
        value: The number to render.
        decimals: Fixed number of decimal places. If None, integral values are
            rendered without a fractional part and other values in fixed-point
            notation with up to 10 decimals, trailing zeros removed.

    Returns:
        The formatted number.

    Raises:
        ValueError: If value is NaN or infinite.

    Example:
        >>> format_invariant(1.05)
        '1.05'
        >>> format_invariant(285.0)
        '285'
        >>> format_invariant(17.94, decimals=1)
        '17.9'
    """
    if isinstance(value, bool):
        raise TypeError("Boolean values can not be rendered as numbers.")

    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Non-finite values can not be rendered: {value!r}")

    if decimals is not None:
        assert decimals >= 0, "decimals must be >= 0."
        return f"{number:.{decimals}f}"

    if number.is_integer():
        return str(int(number))
    text = f"{number:.10f}".rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Save data as JSON to the specified file path.

    Writes a Python dict to disk as formatted JSON with UTF-8 encoding.
    Non-serializable values are converted to strings using the default=str option.
    The data goes to a temporary file next to the destination first, which then
    replaces the destination, so readers never see a half-written file.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).

    Example:
        >>> save_json_file({"key": "value"}, Path("output/status.json"))
    """
    tmp_path = file_path.with_name(f".{file_path.name}.tmp")
    try:
        with tmp_path.open(mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=4, ensure_ascii=False, default=str
            )
        tmp_path.replace(file_path)
    except Exception as e:
        tmp_path.unlink(missing_ok=True)
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e


def run_command(args: Sequence[str], timeout: float) -> str | None:
    """
    Run an external measurement process and return its standard output.

    A measurement that cannot be taken is not an error for the control loop:
    a missing binary, a non-zero exit status or a timeout all yield None so
    the caller can skip the cycle and keep its last known state.

    Args:
        args: The command and its arguments (no shell is involved).
        timeout: Maximum seconds to wait for the process to finish.

    Returns:
        The process stdout, or None if the measurement failed.
    """
    assert args, "Command can not be empty."
    assert timeout > 0, "Command timeout must be greater than 0."

    try:
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning(f"⚠️ Command `{args[0]}` timed out after {timeout:.1f}s: {e}")
        return None
    except OSError as e:
        logger.warning(
            f"⚠️ Command `{args[0]}` could not be started: {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        return None

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        logger.warning(
            f"⚠️ Command `{args[0]}` exited with status {completed.returncode}: {stderr[:200]}"
        )
        return None

    return completed.stdout


def is_timeout_exception(exc: Exception) -> bool:
    """
    Determine if an exception indicates a timeout condition.

    This is the single source of truth for identifying timeout exceptions,
    including exceptions wrapped in MaxRetriesExceededError.

    Args:
        exc: The exception to check.

    Returns:
        True if the exception indicates a timeout, False otherwise.

    Supported timeout exceptions:
        - requests.Timeout: HTTP request timeout (tc-monitor)
        - subprocess.TimeoutExpired: ping or speedtest process timeout
        - TimeoutError: Python built-in
        - MaxRetriesExceededError: If last_exception is a timeout (recursive)
    """
    # Lazy imports to avoid circular dependencies
    import requests

    from sqmctl._retry import MaxRetriesExceededError

    timeout_exceptions_types = (
        requests.Timeout,
        subprocess.TimeoutExpired,
        TimeoutError,
    )

    if isinstance(exc, timeout_exceptions_types):
        return True

    # Check wrapped exceptions in MaxRetriesExceededError (recursive)
    if isinstance(exc, MaxRetriesExceededError):
        last_exc = exc.last_exception
        if last_exc is not None:
            return is_timeout_exception(last_exc)

    return False
