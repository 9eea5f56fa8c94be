"""
Client for the gateway's tc-monitor endpoint.

The gateway runs a small HTTP service (port 8088 by default) that reports
the rate currently programmed into the shaper on each WAN interface. The
ping loop reads it so that latency adjustments start from the rate actually
enforced, not from the last rate the controller computed.

Two payload shapes are accepted:

    {"interfaces": [{"name": "Cable", "interface": "ifbeth2", "rate_mbps": 256.5,
                     "rate_raw": "256500Kbit", "status": "active"}, ...]}

and the legacy single/dual WAN form:

    {"wan1": {"name": "Cable", "interface": "ifbeth2", "rate_mbps": 256.5, "rate_raw": "256500Kbit"},
     "wan2": {...}}

Example:
    >>> from sqmctl import TcMonitorClient
    >>> client = TcMonitorClient(host="192.168.1.1")
    >>> client.get_primary_wan_rate()
    256.5
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import requests

from sqmctl._config import TcMonitorConfig
from sqmctl._retry import Retrying, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8088
_LEGACY_KEYS = ("wan1", "wan2")


class TcMonitorError(RuntimeError):
    """Raised when the tc-monitor endpoint answers with something that is not a rate report."""

    pass


@dataclass(frozen=True)
class InterfaceRate:
    """
    Shaper rate reported for one interface.

    Attributes:
        name: Friendly WAN name configured on the gateway.
        interface: Device the shaper is attached to (usually the IFB device).
        rate_mbps: Enforced rate in Mbps.
        rate_raw: Rate as printed by tc (e.g. "256500Kbit").
        status: "active", "inactive" or "unknown".
    """

    name: str
    interface: str
    rate_mbps: float
    rate_raw: str | None = None
    status: str = "unknown"

    @property
    def is_active(self) -> bool:
        return self.status.lower() == "active"

    @classmethod
    def from_dict(cls, data: dict[str, Any], status: str | None = None) -> InterfaceRate:
        """
        Build an entry from one JSON object of the report.

        Raises:
            TcMonitorError: If the entry is not an object or its rate is not a finite number.
        """
        if not isinstance(data, dict):
            raise TcMonitorError(f"Interface entry must be a JSON object, got {type(data).__name__}.")
        try:
            rate = float(data.get("rate_mbps") or 0.0)
        except (TypeError, ValueError) as e:
            raise TcMonitorError(f"Invalid rate_mbps: {data.get('rate_mbps')!r}") from e
        if not math.isfinite(rate):
            raise TcMonitorError(f"Invalid rate_mbps: {data.get('rate_mbps')!r}")

        raw = data.get("rate_raw")
        return cls(
            name=str(data.get("name") or ""),
            interface=str(data.get("interface") or ""),
            rate_mbps=rate,
            rate_raw=str(raw) if raw is not None else None,
            status=str(status or data.get("status") or "unknown"),
        )


def parse_rates(payload: Any) -> list[InterfaceRate]:
    """
    Normalize a tc-monitor report into a list of interface rates.

    The `interfaces` list wins when present and not empty. Otherwise the
    legacy `wan1`/`wan2` entries are used; they carry no status, so an entry
    is "active" iff its rate is positive.

    Raises:
        TcMonitorError: If the payload is not a rate report.
    """
    if not isinstance(payload, dict):
        raise TcMonitorError(f"tc-monitor report must be a JSON object, got {type(payload).__name__}.")

    interfaces = payload.get("interfaces")
    if interfaces:
        if not isinstance(interfaces, list):
            raise TcMonitorError("tc-monitor 'interfaces' must be a JSON array.")
        return [InterfaceRate.from_dict(entry) for entry in interfaces]

    rates: list[InterfaceRate] = []
    for key in _LEGACY_KEYS:
        entry = payload.get(key)
        if entry is None:
            continue
        rate = InterfaceRate.from_dict(entry)
        rates.append(InterfaceRate.from_dict(entry, status="active" if rate.rate_mbps > 0 else "inactive"))
    return rates


class TcMonitorClient:
    """
    Reads enforced shaper rates from the gateway.

    Transport errors (timeouts, connection errors and 5xx) are retried with
    exponential backoff, within `retry_policy`. When it runs out
    `MaxRetriesExceededError` is raised; callers treat it as "no data" for
    the cycle. 4xx answers and reports that are not JSON are not retried.

    Attributes:
        base_url: The endpoint URL (`http://host:port/`).
        timeout: HTTP request timeout in seconds.
        max_retries: Retry attempts after the first request.
        backoff_factor: Base delay in seconds for the exponential backoff.
        retry_policy: Limits for one read, built from the two values above
            unless given explicitly.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        timeout: float = 5.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        assert host, "tc-monitor host can not be empty."
        assert 0 < port < 65536, "tc-monitor port must be between 1 and 65535."
        assert timeout > 0, "tc-monitor timeout must be greater than 0."

        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}/"
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_retries=max_retries, backoff_factor=backoff_factor)
        self.max_retries = self.retry_policy.max_retries
        self.backoff_factor = self.retry_policy.backoff_factor
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: TcMonitorConfig, session: requests.Session | None = None) -> TcMonitorClient:
        """
        Build a client from the tc-monitor configuration section.

        Raises:
            ConfigValidationError: If the section is invalid.
        """
        config.validate()
        assert config.host, "tc-monitor host is not configured."
        return cls(
            host=config.host,
            port=config.port,
            timeout=config.request_timeout,
            session=session,
            retry_policy=RetryPolicy.from_config(config),
        )

    def get_rates(self) -> list[InterfaceRate]:
        """
        Fetch the rate report.

        Raises:
            MaxRetriesExceededError: If the endpoint stays unreachable.
            requests.HTTPError: On non-retryable HTTP errors (4xx).
            TcMonitorError: If the answer is not a rate report.
        """
        prefix = f"{self.host[:26]:<26} | TcMonitor"
        for attempt in Retrying(self.retry_policy, logger_prefix=prefix):
            with attempt:
                logger.debug(f"{prefix} | Polling {self.base_url} (attempt {attempt.number + 1})...")
                response = self.session.get(self.base_url, timeout=self.timeout)
                response.raise_for_status()
                try:
                    payload = response.json()
                except ValueError as e:
                    raise TcMonitorError(f"tc-monitor answered with invalid JSON: {e}") from e

                rates = parse_rates(payload)
                logger.debug(f"{prefix} | Received rates for {len(rates)} interfaces.")
                return rates

        # Should never reach here - Retrying raises MaxRetriesExceededError
        raise RuntimeError(
            "Unexpected error while polling tc-monitor: "
            "reached end of `get_rates` method without returning the rates."
        )

    def get_primary_wan_rate(self) -> float | None:
        """Rate of the first active interface, or None if no interface is active."""
        for rate in self.get_rates():
            if rate.is_active:
                return rate.rate_mbps
        return None

    def get_rate(self, interface: str) -> float | None:
        """
        Rate enforced on a given interface.

        Matches either the reported device (`ifbeth2`) or the WAN interface it
        shapes (`eth2`).
        """
        for rate in self.get_rates():
            if rate.interface in (interface, f"ifb{interface}"):
                return rate.rate_mbps
        return None
