#!/usr/bin/env python3
"""
Throughput Measurement Client
Runs the Ookla speedtest CLI against a WAN interface and converts the JSON
result to Mbps. Any tool error, timeout or malformed output is a failed
measurement (None).
"""

import json
import math
import logging
import subprocess
from typing import List, Optional

from ..controller.models import Direction

logger = logging.getLogger(__name__)

MIN_PLAUSIBLE_MBPS = 1.0
MAX_PLAUSIBLE_MBPS = 10000.0


class MeasurementClient:
    """Measures achievable throughput of one link direction"""

    def measure_throughput(self, link, direction: Direction) -> Optional[float]:
        raise NotImplementedError


def bytes_per_sec_to_mbps(bytes_per_sec: float) -> float:
    return (bytes_per_sec * 8.0) / 1_000_000.0


def parse_speedtest_json(output: str, direction: Direction) -> Optional[float]:
    """Extract the direction's bandwidth (bytes/s in the JSON) as Mbps"""
    try:
        data = json.loads(output)
        bandwidth = float(data[direction.value]['bandwidth'])
    except (ValueError, KeyError, TypeError):
        return None

    mbps = bytes_per_sec_to_mbps(bandwidth)
    if not math.isfinite(mbps) or not (MIN_PLAUSIBLE_MBPS <= mbps <= MAX_PLAUSIBLE_MBPS):
        logger.warning(f"Implausible {direction.value} result: {mbps:.2f} Mbps")
        return None
    return mbps


class SpeedtestCliClient(MeasurementClient):
    """
    Ookla speedtest CLI wrapper.

    A single CLI run measures both directions; the result is cached briefly so
    the upload measurement that follows a download measurement in the same
    learning cycle reuses it instead of running a second full test.
    """

    def __init__(self, timeout: float = 120.0, binary: str = "speedtest",
                 server_id: Optional[str] = None):
        self.timeout = timeout
        self.binary = binary
        self.server_id = server_id
        self._last_output = {}

    def build_command(self, interface: Optional[str]) -> List[str]:
        cmd = [self.binary, "--accept-license", "--format=json"]
        if interface:
            cmd.append(f"--interface={interface}")
        if self.server_id:
            cmd.append(f"--server-id={self.server_id}")
        return cmd

    def _run(self, interface: Optional[str]) -> Optional[str]:
        cmd = self.build_command(interface)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Speedtest timed out after {self.timeout}s")
            return None
        except FileNotFoundError:
            logger.error(f"Speedtest command not found: {self.binary}")
            return None

        if result.returncode != 0:
            logger.error(f"Speedtest failed (exit {result.returncode}): {result.stderr.strip()}")
            return None
        return result.stdout

    def measure_throughput(self, link, direction):
        link_id = link.link_id
        # Download is measured first in a cycle; it triggers the CLI run
        if direction == Direction.DOWNLOAD or link_id not in self._last_output:
            self._last_output[link_id] = self._run(link.interface)

        output = self._last_output.get(link_id)
        if direction == Direction.UPLOAD:
            self._last_output.pop(link_id, None)
        if output is None:
            return None

        mbps = parse_speedtest_json(output, direction)
        if mbps is None:
            logger.error(f"Malformed speedtest output for {link_id} ({direction.value})")
            return None

        logger.info(f"Speedtest {link_id} {direction.value}: {mbps:.2f} Mbps")
        return mbps
