"""
Shared fakes and fixtures for the SQM controller tests
"""

import threading
from datetime import datetime

import pytest

from adaptive_sqm.controller.config_loader import ControlConfig, DirectionBounds, WanLink
from adaptive_sqm.controller.gateway_executor import GatewayExecutor
from adaptive_sqm.controller.models import Direction
from adaptive_sqm.controller.profiles import ConnectionType
from adaptive_sqm.probes.network_probe import LatencyProbe, LatencyResult
from adaptive_sqm.probes.speedtest_client import MeasurementClient


def make_link(link_id="wan1", **overrides):
    """Cable link with 285/30 Mbps maximums"""
    fields = dict(
        link_id=link_id,
        interface="eth0",
        connection_type=ConnectionType.DOCSIS_CABLE,
        download=DirectionBounds(min_mbps=50.0, max_mbps=285.0, absolute_max_mbps=285.0),
        upload=DirectionBounds(min_mbps=5.0, max_mbps=30.0, absolute_max_mbps=30.0),
        ping_target_host="1.1.1.1",
        baseline_latency_ms=18.0,
        latency_threshold_ms=2.2,
    )
    fields.update(overrides)
    return WanLink(**fields)


def fast_control(**overrides):
    fields = dict(
        correction_interval_seconds=0.05,
        learning_schedule=[],
        tick_seconds=0.01,
        shutdown_timeout_seconds=2.0,
    )
    fields.update(overrides)
    return ControlConfig(**fields)


class FakeMeasurementClient(MeasurementClient):
    """Returns scripted throughput per direction; None simulates a failed test"""

    def __init__(self, download=None, upload=None):
        self.values = {Direction.DOWNLOAD: download, Direction.UPLOAD: upload}
        self.calls = []
        self.block = None

    def measure_throughput(self, link, direction):
        self.calls.append((link.link_id, direction))
        if self.block is not None:
            self.block.wait(5)
        value = self.values[direction]
        if isinstance(value, Exception):
            raise value
        return value


class FakeLatencyProbe(LatencyProbe):
    """Returns scripted latency readings in order, repeating the last one"""

    def __init__(self, *readings):
        self.readings = list(readings)
        self.calls = 0

    def sample(self, host, probe_count, interface=None):
        self.calls += 1
        if not self.readings:
            return None
        reading = self.readings.pop(0) if len(self.readings) > 1 else self.readings[0]
        if reading is None:
            return None
        return LatencyResult(avg_ms=reading, loss_pct=0.0)


class RecordingExecutor(GatewayExecutor):
    """Executor that records what reached the gateway; `fail` makes sends fail"""

    def __init__(self, apply_timeout=0.5):
        super().__init__(apply_timeout=apply_timeout)
        self.sent = []
        self.fail = False
        self.hang = None

    def _send(self, command):
        if self.hang is not None:
            self.hang.wait(5)
        if self.fail:
            return False
        self.sent.append((command.link_id, command.download_mbps, command.upload_mbps))
        return True


class FixedClock:
    def __init__(self, now=datetime(2024, 3, 4, 14, 5)):  # a Monday
        self.now = now
        self.lock = threading.Lock()

    def __call__(self):
        with self.lock:
            return self.now


@pytest.fixture
def link():
    return make_link()


@pytest.fixture
def clock():
    return FixedClock()
