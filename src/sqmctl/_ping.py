"""
Latency probe: ping command template and summary-line parsing.

The probe sends 20 echo requests 0.25s apart through the WAN interface and
only reads the summary line:

    rtt min/avg/max/mdev = 17.512/18.204/21.933/0.850 ms

A probe that produces no usable average yields None. Callers must treat None
as "skip this cycle", never as a latency of zero.
"""

from __future__ import annotations

import logging
import math
import re
import shlex

from sqmctl._utils import run_command

logger = logging.getLogger(__name__)

PING_COUNT = 20
PING_INTERVAL = 0.25

# Linux iputils prints "rtt", BSD/busybox print "round-trip"
_SUMMARY_PATTERN = re.compile(r"^\s*(?:rtt|round-trip)\s+min/avg/max(?:/\S+)?\s*=\s*(\S+)", re.ASCII)


def build_ping_command(interface: str, host: str) -> list[str]:
    """
    Build the probe command line.

    Example:
        >>> build_ping_command("eth2", "1.1.1.1")
        ['ping', '-I', 'eth2', '-c', '20', '-i', '0.25', '-q', '1.1.1.1']
    """
    assert interface, "Ping interface can not be empty."
    assert host, "Ping host can not be empty."
    return ["ping", "-I", interface, "-c", str(PING_COUNT), "-i", str(PING_INTERVAL), "-q", host]


def format_ping_command(interface: str, host: str) -> str:
    """Shell-quoted form of `build_ping_command()`, for scripts and logs."""
    return shlex.join(build_ping_command(interface, host))


def parse_ping_output(output: str | None) -> float | None:
    """
    Extract the average round-trip time from ping output.

    Returns:
        The average RTT in ms, or None if the summary line is absent or malformed.

    Example:
        >>> parse_ping_output("rtt min/avg/max/mdev = 17.512/18.204/21.933/0.850 ms")
        18.204
        >>> parse_ping_output("100% packet loss") is None
        True
    """
    if not output:
        return None

    for line in output.splitlines():
        match = _SUMMARY_PATTERN.match(line)
        if not match:
            continue
        parts = match.group(1).split("/")
        if len(parts) < 2:
            logger.debug(f"Malformed ping summary line: {line!r}")
            return None
        try:
            average = float(parts[1])
        except ValueError:
            logger.debug(f"Malformed ping average in summary line: {line!r}")
            return None
        if not math.isfinite(average) or average < 0:
            return None
        return average

    return None


class PingProbe:
    """
    Runs the latency probe as an external process.

    Example:
        >>> probe = PingProbe(interface="eth2", host="1.1.1.1", timeout=30.0)
        >>> probe.measure()
        18.204
    """

    def __init__(self, interface: str, host: str, timeout: float = 30.0):
        assert interface, "Ping interface can not be empty."
        assert host, "Ping host can not be empty."
        assert timeout > 0, "Ping timeout must be greater than 0."

        self.interface = interface
        self.host = host
        self.timeout = timeout

    def measure(self) -> float | None:
        """Run one probe. Returns the average RTT in ms, or None if no usable result."""
        output = run_command(build_ping_command(self.interface, self.host), timeout=self.timeout)
        latency = parse_ping_output(output)
        if latency is None and output is not None:
            logger.warning(f"⚠️ No usable ping summary from {self.host} via {self.interface}.")
        return latency
