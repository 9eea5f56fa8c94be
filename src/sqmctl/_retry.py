"""
Retry policy for reading the enforced rate from the gateway.

The ping loop asks tc-monitor for the enforced rate once per cycle. A
gateway that is rebooting or briefly overloaded should not cost the cycle,
but the read must also finish long before the latency sample it is paired
with goes stale. So a read is bounded twice: by a number of attempts and by
the total time spent sleeping between them.

Failures fall into a few kinds (see `FailureKind`):

- timeouts, refused connections and 5xx/408 answers are retried;
- other 4xx answers propagate as-is: the host, port or path is wrong and
  asking again will not fix it;
- anything else (a report that is not JSON, a programming error) propagates.

Measurement processes (ping, speedtest) are never retried: a failed
measurement simply skips the cycle.

Example:
    >>> policy = RetryPolicy(max_retries=3, backoff_factor=0.5)
    >>> for attempt in Retrying(policy, logger_prefix="192.168.1.1 | TcMonitor"):
    ...     with attempt:
    ...         response = session.get(url, timeout=5)
    ...         response.raise_for_status()
    ...         return response.json()
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass

import requests

from sqmctl._config import TcMonitorConfig
from sqmctl._utils import is_timeout_exception, sleep_with_jitter

logger = logging.getLogger(__name__)


class MaxRetriesExceededError(Exception):
    """
    Raised when the gateway stayed unreachable for every allowed attempt.

    Attributes:
        last_exception: The failure of the last attempt.
        attempts: How many requests were sent.

    Example:
        >>> try:
        ...     client.get_primary_wan_rate()
        ... except MaxRetriesExceededError as e:
        ...     print(f"Gateway unreachable after {e.attempts} attempts: {e.last_exception}")
    """

    def __init__(self, message: str, last_exception: Exception | None = None, attempts: int = 0):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


class FailureKind(enum.StrEnum):
    """Why a gateway request failed."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    SERVER_ERROR = "server error"
    REJECTED = "rejected"
    OTHER = "other"

    @property
    def is_transient(self) -> bool:
        """Whether asking again later can succeed."""
        return self in (FailureKind.TIMEOUT, FailureKind.UNREACHABLE, FailureKind.SERVER_ERROR)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How hard to try before a gateway read gives up.

    Attributes:
        max_retries: Retries after the first request. 0 sends a single request
            and lets its failure propagate unwrapped.
        backoff_factor: Delay before the first retry, in seconds. Doubles on
            every further retry.
        max_backoff: Upper bound for a single delay, in seconds.
        max_total_wait: Upper bound for the sum of all delays of one read, in
            seconds. A retry whose delay would exceed it is not attempted.
    """

    max_retries: int = 3
    backoff_factor: float = 0.5
    max_backoff: float = 4.0
    max_total_wait: float = 10.0

    def __post_init__(self) -> None:
        assert self.max_retries >= 0, f"max_retries must be >= 0, got {self.max_retries}"
        assert self.backoff_factor > 0, f"backoff_factor must be > 0, got {self.backoff_factor}"
        assert self.max_backoff > 0, f"max_backoff must be > 0, got {self.max_backoff}"
        assert self.max_total_wait >= 0, f"max_total_wait must be >= 0, got {self.max_total_wait}"

    @classmethod
    def from_config(cls, config: TcMonitorConfig) -> RetryPolicy:
        return cls(
            max_retries=config.retry_max_retries,
            backoff_factor=config.retry_backoff_factor,
            max_total_wait=config.retry_max_total_wait,
        )

    @staticmethod
    def classify(exception: Exception) -> FailureKind:
        """Sort a request failure into a FailureKind."""
        if is_timeout_exception(exception):
            return FailureKind.TIMEOUT
        if isinstance(exception, requests.ConnectionError):
            return FailureKind.UNREACHABLE
        if isinstance(exception, requests.HTTPError):
            response = getattr(exception, "response", None)
            status_code = getattr(response, "status_code", None)
            if status_code is None:
                return FailureKind.OTHER
            if status_code >= 500 or status_code == 408:
                return FailureKind.SERVER_ERROR
            return FailureKind.REJECTED
        return FailureKind.OTHER

    def backoff(self, retry_number: int) -> float:
        """Delay before retry number `retry_number` (0 for the first retry)."""
        return min(self.backoff_factor * (2 ** retry_number), self.max_backoff)


class Retrying:
    """
    Iterable of attempts for one gateway read.

    Each attempt is a context manager. A transient failure inside it is
    suppressed (after sleeping) so the loop moves on to the next attempt;
    any other exception propagates. The caller returns from inside the
    `with` block on success.

    Attributes:
        policy: Limits for this read.
        failures: Kind of every failed attempt so far, in order.
        total_wait: Seconds slept so far (before jitter).

    Raises:
        MaxRetriesExceededError: When the attempts or the wait budget run out.
    """

    def __init__(self, policy: RetryPolicy | None = None, logger_prefix: str = ""):
        self.policy = policy or RetryPolicy()
        self.logger_prefix = logger_prefix
        self.failures: list[FailureKind] = []
        self.total_wait = 0.0

    def __iter__(self) -> Iterator[Attempt]:
        for number in range(self.policy.max_retries + 1):
            yield Attempt(self, number)

    @property
    def max_attempts(self) -> int:
        return self.policy.max_retries + 1

    def _on_failure(self, exception: Exception, number: int) -> bool:
        """Returns True when the failure is absorbed and another attempt follows."""
        kind = self.policy.classify(exception)
        if not kind.is_transient:
            return False

        self.failures.append(kind)
        if self.policy.max_retries == 0:
            return False

        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        wait = self.policy.backoff(number)
        out_of_attempts = number + 1 >= self.max_attempts
        out_of_time = self.total_wait + wait > self.policy.max_total_wait

        if out_of_attempts or out_of_time:
            limit = "attempts" if out_of_attempts else f"wait budget of {self.policy.max_total_wait:.1f}s"
            history = ", ".join(self.failures)
            logger.error(
                f"{prefix}❌ Giving up after {number + 1} attempts, out of {limit} ({history}). "
                f"Last error: {exception}"
            )
            raise MaxRetriesExceededError(
                f"Gateway read failed after {number + 1} attempts ({history}). Last error: {exception}",
                last_exception=exception,
                attempts=number + 1,
            ) from exception

        logger.warning(
            f"{prefix}⚠️ Attempt {number + 1}/{self.max_attempts} failed ({kind}): {exception}. "
            f"Retrying in {wait:.1f}s..."
        )
        self.total_wait += wait
        sleep_with_jitter(wait)
        return True


class Attempt:
    """One request of a Retrying loop."""

    def __init__(self, retrying: Retrying, number: int):
        self._retrying = retrying
        self.number = number

    @property
    def is_last(self) -> bool:
        return self.number + 1 >= self._retrying.max_attempts

    def __enter__(self) -> Attempt:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        # KeyboardInterrupt and friends always propagate
        if not isinstance(exc_val, Exception):
            return False
        return self._retrying._on_failure(exc_val, self.number)
