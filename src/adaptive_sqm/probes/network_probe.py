#!/usr/bin/env python3
"""
WAN Latency Probe
Samples round-trip latency to a link's ping target with a burst of ICMP
probes. Lost probes are excluded from the average; a burst with no replies
at all is reported as unknown (None), never as zero latency.
"""

import re
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# iputils: "rtt min/avg/max/mdev = 10.123/12.456/15.789/2.345 ms"
# busybox: "round-trip min/avg/max = 10.123/12.456/15.789 ms"
# BSD/macOS: "round-trip min/avg/max/stddev = 10.123/12.456/15.789/2.345 ms"
RTT_REGEX = re.compile(r"(?:rtt|round-trip) min/avg/max(?:/(?:mdev|stddev))? = [\d.]+/([\d.]+)/")
LOSS_REGEX = re.compile(r"([\d.]+)% packet loss")


@dataclass
class LatencyResult:
    """Aggregate of one probe burst"""
    avg_ms: float
    loss_pct: float


class LatencyProbe:
    """Samples latency to a host; returns None when no probe was answered"""

    def sample(self, host: str, probe_count: int, interface: Optional[str] = None) -> Optional[LatencyResult]:
        raise NotImplementedError


def parse_ping_output(output: str) -> Optional[LatencyResult]:
    """
    Extract average latency and loss from ping summary output.

    Returns None if the summary has no rtt line (no replies) or loss is 100%.
    """
    loss_pct = 0.0
    loss_match = LOSS_REGEX.search(output)
    if loss_match:
        loss_pct = float(loss_match.group(1))

    rtt_match = RTT_REGEX.search(output)
    if not rtt_match or loss_pct >= 100.0:
        return None

    try:
        avg_ms = float(rtt_match.group(1))
    except ValueError:
        return None
    return LatencyResult(avg_ms=avg_ms, loss_pct=loss_pct)


class PingLatencyProbe(LatencyProbe):
    """Runs the system ping binary bound to the WAN interface"""

    def __init__(self, timeout: float = 15.0, interval: float = 0.25, ping_binary: str = "ping"):
        self.timeout = timeout
        self.interval = interval
        self.ping_binary = ping_binary

    def build_command(self, host: str, probe_count: int, interface: Optional[str] = None) -> List[str]:
        cmd = [self.ping_binary]
        if interface:
            cmd += ["-I", interface]
        cmd += ["-c", str(probe_count), "-i", str(self.interval), "-q", host]
        return cmd

    def sample(self, host, probe_count, interface=None):
        cmd = self.build_command(host, probe_count, interface)
        try:
            # ping exits non-zero on partial loss; the summary is still valid
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Ping to {host} timed out after {self.timeout}s")
            return None
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Cannot run {self.ping_binary}: {e}")
            return None

        parsed = parse_ping_output(result.stdout)
        if parsed is None:
            logger.warning(f"No ping replies from {host} ({probe_count} probes)")
            return None

        logger.debug(f"Ping {host}: avg={parsed.avg_ms:.2f}ms loss={parsed.loss_pct:.0f}%")
        return parsed
