"""
Unit tests for the latency correction loop
"""

from unittest.mock import Mock

import pytest

from adaptive_sqm.controller.gateway_executor import GatewayExecutor
from adaptive_sqm.controller.latency_controller import LatencyController, calculate_latency_adjustment
from adaptive_sqm.controller.models import (
    ControllerMode,
    ControllerState,
    CycleOutcome,
    Direction,
    LatencyAction,
)
from adaptive_sqm.probes.network_probe import LatencyProbe, LatencyResult

from conftest import FakeLatencyProbe, FixedClock, RecordingExecutor, make_link

CONGESTED_MS = 25.0  # 7ms above an 18ms baseline
CLEAR_MS = 10.0
NORMAL_MS = 19.0


def make_state(download=250.0, upload=25.0, recovery_download=None, recovery_upload=None):
    return ControllerState(link_id="wan1", download_mbps=download, upload_mbps=upload,
                           recovery_download_mbps=recovery_download, recovery_upload_mbps=recovery_upload)


def controller(*readings, executor=None):
    return LatencyController(FakeLatencyProbe(*readings), executor or RecordingExecutor(), FixedClock())


class TestCalculateLatencyAdjustment:
    """Pure decision function"""

    def setup_method(self):
        self.link = make_link()

    def test_congestion_backs_off(self):
        adjustment = calculate_latency_adjustment(self.link, make_state(), CONGESTED_MS)
        assert adjustment.action == LatencyAction.BACKING_OFF
        assert adjustment.backoff_exponent == 1
        assert adjustment.ceilings[Direction.DOWNLOAD] == 242.5

    def test_normal_band_drifts_toward_recovery(self):
        state = make_state(download=200.0, recovery_download=250.0)
        adjustment = calculate_latency_adjustment(self.link, state, NORMAL_MS)
        assert adjustment.action == LatencyAction.HOLDING
        assert adjustment.ceilings[Direction.DOWNLOAD] == 205.0

    def test_drift_snaps_onto_recovery_ceiling(self):
        state = make_state(download=249.95, recovery_download=250.0)
        adjustment = calculate_latency_adjustment(self.link, state, NORMAL_MS)
        assert adjustment.ceilings[Direction.DOWNLOAD] == 250.0

    def test_holding_without_recovery_ceiling_keeps_ceiling(self):
        adjustment = calculate_latency_adjustment(self.link, make_state(), NORMAL_MS)
        assert adjustment.ceilings[Direction.DOWNLOAD] == 250.0

    def test_recovery_capped_at_recovery_ceiling(self):
        state = make_state(download=245.0, recovery_download=250.0)
        adjustment = calculate_latency_adjustment(self.link, state, CLEAR_MS)
        assert adjustment.action == LatencyAction.RECOVERING
        assert adjustment.ceilings[Direction.DOWNLOAD] == 250.0

    def test_recovery_without_headroom_holds(self):
        state = make_state(download=260.0, recovery_download=250.0)
        adjustment = calculate_latency_adjustment(self.link, state, CLEAR_MS)
        assert adjustment.ceilings[Direction.DOWNLOAD] == 260.0

    def test_clamped_to_absolute_max(self):
        link = make_link()
        link.download.absolute_max_mbps = 260.0
        adjustment = calculate_latency_adjustment(link, make_state(download=258.0), CLEAR_MS)
        assert adjustment.ceilings[Direction.DOWNLOAD] == 260.0

    def test_clamped_to_minimum(self):
        adjustment = calculate_latency_adjustment(self.link, make_state(download=51.0), CONGESTED_MS)
        assert adjustment.ceilings[Direction.DOWNLOAD] == 50.0

    def test_state_not_modified(self):
        state = make_state()
        calculate_latency_adjustment(self.link, state, CONGESTED_MS)
        assert state.backoff_exponent == 0
        assert state.download_mbps == 250.0


class TestLatencyControllerCycle:
    """Cycles against fake probe and executor"""

    def setup_method(self):
        self.link = make_link()

    def test_compounding_backoff(self):
        """250 -> 242.5 -> 235.2 over two congested cycles"""
        state = make_state()
        ctl = controller(CONGESTED_MS)

        first = ctl.run_cycle(self.link, state)
        assert first.applied
        assert state.download_mbps == 242.5, f"Expected 242.5, got {state.download_mbps}"
        assert state.backoff_exponent == 1

        ctl.run_cycle(self.link, state)
        assert state.download_mbps == 235.2, f"Expected 235.2, got {state.download_mbps}"
        assert state.backoff_exponent == 2
        assert state.last_action == LatencyAction.BACKING_OFF
        assert state.mode == ControllerMode.IDLE

    def test_sustained_congestion_is_monotonic(self):
        state = make_state()
        ctl = controller(CONGESTED_MS)
        ceilings = [state.download_mbps]
        for _ in range(8):
            ctl.run_cycle(self.link, state)
            ceilings.append(state.download_mbps)

        assert all(b <= a for a, b in zip(ceilings, ceilings[1:])), f"Not non-increasing: {ceilings}"
        assert ceilings[-1] < ceilings[0]
        assert ceilings[-1] >= self.link.download.min_mbps

    def test_sustained_clear_latency_is_monotonic(self):
        state = make_state(download=200.0, upload=20.0, recovery_download=250.0, recovery_upload=25.0)
        ctl = controller(CLEAR_MS)
        ceilings = [state.download_mbps]
        for _ in range(8):
            ctl.run_cycle(self.link, state)
            ceilings.append(state.download_mbps)

        assert all(b >= a for a, b in zip(ceilings, ceilings[1:])), f"Not non-decreasing: {ceilings}"
        assert ceilings[-1] == 250.0
        assert state.recovery_exponent == self.link.max_recovery_exponent

    def test_normal_band_resets_backoff(self):
        state = make_state()
        ctl = controller(CONGESTED_MS, NORMAL_MS)
        ctl.run_cycle(self.link, state)
        ctl.run_cycle(self.link, state)

        assert state.backoff_exponent == 0
        assert state.backoff_anchor_download_mbps is None
        assert state.last_action == LatencyAction.HOLDING

    def test_probe_failure_leaves_ceiling_unchanged(self):
        executor = RecordingExecutor()
        state = make_state()
        result = controller(None, executor=executor).run_cycle(self.link, state)

        assert result.outcome == CycleOutcome.SKIPPED
        assert executor.sent == []
        assert state.download_mbps == 250.0

    def test_total_loss_is_unknown_latency(self):
        probe = Mock(spec=LatencyProbe)
        probe.sample.return_value = LatencyResult(avg_ms=0.0, loss_pct=100.0)
        executor = RecordingExecutor()
        result = LatencyController(probe, executor, FixedClock()).run_cycle(self.link, make_state())

        assert result.outcome == CycleOutcome.SKIPPED
        assert executor.sent == []

    def test_probe_exception_is_a_failure(self):
        probe = Mock(spec=LatencyProbe)
        probe.sample.side_effect = OSError("network unreachable")
        result = LatencyController(probe, RecordingExecutor(), FixedClock()).run_cycle(self.link, make_state())
        assert result.outcome == CycleOutcome.SKIPPED

    def test_no_ceiling_yet_skips(self):
        probe = FakeLatencyProbe(CONGESTED_MS)
        result = LatencyController(probe, RecordingExecutor(), FixedClock()).run_cycle(
            self.link, ControllerState(link_id="wan1"))
        assert result.outcome == CycleOutcome.SKIPPED
        assert probe.calls == 0

    def test_failed_apply_causes_no_drift(self):
        """A rejected apply leaves state untouched; the retry recomputes the same ceiling"""
        executor = Mock(spec=GatewayExecutor)
        executor.apply_ceiling.side_effect = [False, True]
        state = make_state()
        ctl = controller(CONGESTED_MS, executor=executor)

        failed = ctl.run_cycle(self.link, state)
        assert failed.outcome == CycleOutcome.FAILED
        assert state.download_mbps == 250.0
        assert state.backoff_exponent == 0

        ctl.run_cycle(self.link, state)
        assert state.download_mbps == 242.5
        assert state.backoff_exponent == 1

    def test_records_latency(self):
        state = make_state()
        controller(CONGESTED_MS).run_cycle(self.link, state)
        assert state.last_latency_ms == pytest.approx(CONGESTED_MS)
        assert state.last_adjustment_reason == "latency: backing_off"
