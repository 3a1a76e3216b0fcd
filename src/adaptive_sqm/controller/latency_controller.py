#!/usr/bin/env python3
"""
Latency Controller
Fast loop: samples latency to the link's ping target and nudges the ceiling.

Asymmetric control, favouring latency over throughput:
- Congested (deviation above threshold): multiplicative backoff that
  compounds while congestion persists
- Clear (deviation below -threshold): slower multiplicative recovery,
  capped at the learned recovery ceiling
- Normal band: drift a small step toward the recovery ceiling
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from .config_loader import WanLink
from .gateway_executor import GatewayExecutor
from .models import (
    AppliedRateCommand,
    ControllerMode,
    ControllerState,
    CycleOutcome,
    CycleResult,
    Direction,
    LatencyAction,
    LatencySample,
    clamp,
    round_tenth,
)
from ..probes.network_probe import LatencyProbe, LatencyResult

logger = logging.getLogger(__name__)

# Drift snaps onto the recovery ceiling once this close
DRIFT_SNAP_MBPS = 0.1


@dataclass
class LatencyAdjustment:
    """Decision of one correction cycle, committed only after the gateway acks it"""
    action: LatencyAction
    deviation_ms: float
    ceilings: Dict[Direction, float]
    backoff_exponent: int
    recovery_exponent: int
    anchors: Dict[Direction, Optional[float]] = field(default_factory=dict)


def _correction_bounds(link: WanLink, direction: Direction):
    bounds = link.bounds(direction)
    return bounds.min_mbps, min(bounds.absolute_max_mbps, bounds.max_mbps)


def calculate_latency_adjustment(link: WanLink, state: ControllerState, observed_ms: float) -> LatencyAdjustment:
    """
    Compute the next ceilings from the current state and one latency reading.

    Backoff is anchored on the ceiling in force when congestion began, so
    the n-th consecutive congested cycle yields anchor * decrease_factor^n.
    The state is not modified.
    """
    deviation = observed_ms - link.baseline_latency_ms
    ceilings = {}
    anchors = {}

    if deviation > link.latency_threshold_ms:
        action = LatencyAction.BACKING_OFF
        backoff_exponent = state.backoff_exponent + 1
        recovery_exponent = 0
        for direction in Direction:
            current = state.ceiling(direction)
            anchor = state.backoff_anchor(direction)
            if backoff_exponent == 1 or anchor is None:
                anchor = current
            anchors[direction] = anchor
            ceilings[direction] = anchor * (link.decrease_factor ** backoff_exponent)

    elif deviation < -link.latency_threshold_ms:
        action = LatencyAction.RECOVERING
        backoff_exponent = 0
        recovery_exponent = min(state.recovery_exponent + 1, link.max_recovery_exponent)
        for direction in Direction:
            current = state.ceiling(direction)
            target = current * (link.increase_factor ** recovery_exponent)
            recovery = state.recovery_ceiling(direction)
            if recovery is not None:
                # No headroom: hold rather than fall back to the recovery ceiling
                target = max(current, min(target, recovery))
            anchors[direction] = None
            ceilings[direction] = target

    else:
        action = LatencyAction.HOLDING
        backoff_exponent = 0
        recovery_exponent = 0
        for direction in Direction:
            current = state.ceiling(direction)
            recovery = state.recovery_ceiling(direction)
            target = current
            if recovery is not None:
                target = current + link.drift_fraction * (recovery - current)
                if abs(recovery - target) < DRIFT_SNAP_MBPS:
                    target = recovery
            anchors[direction] = None
            ceilings[direction] = target

    for direction in Direction:
        lower, upper = _correction_bounds(link, direction)
        ceilings[direction] = clamp(round_tenth(ceilings[direction]), lower, upper)

    return LatencyAdjustment(
        action=action,
        deviation_ms=deviation,
        ceilings=ceilings,
        backoff_exponent=backoff_exponent,
        recovery_exponent=recovery_exponent,
        anchors=anchors,
    )


class LatencyController:
    """Runs one correction cycle for a link"""

    def __init__(self, probe: LatencyProbe, executor: GatewayExecutor,
                 clock: Callable[[], datetime] = datetime.now):
        self.probe = probe
        self.executor = executor
        self.clock = clock

    def _sample(self, link: WanLink) -> Optional[LatencyResult]:
        try:
            return self.probe.sample(link.ping_target_host, link.ping_count, interface=link.interface or None)
        except Exception as e:
            logger.error(f"{link.link_id}: latency probe raised: {e}")
            return None

    def run_cycle(self, link: WanLink, state: ControllerState) -> CycleResult:
        if not state.has_ceiling:
            logger.info(f"{link.link_id}: no ceiling applied yet, skipping correction")
            return CycleResult(link.link_id, CycleOutcome.SKIPPED, "no ceiling applied yet")

        state.mode = ControllerMode.CORRECTING
        try:
            result = self._sample(link)
            if result is None or result.loss_pct >= 100.0:
                # A dead link is not a bandwidth problem
                logger.warning(f"{link.link_id}: latency unknown ({link.ping_target_host} unreachable), "
                               f"ceiling unchanged")
                return CycleResult(link.link_id, CycleOutcome.SKIPPED, "latency unknown",
                                   state.download_mbps, state.upload_mbps)

            now = self.clock()
            sample = LatencySample(
                timestamp=now,
                observed_ms=result.avg_ms,
                loss_pct=result.loss_pct,
                deviation_ms=result.avg_ms - link.baseline_latency_ms,
            )
            state.last_latency_ms = sample.observed_ms

            adjustment = calculate_latency_adjustment(link, state, sample.observed_ms)
            download = adjustment.ceilings[Direction.DOWNLOAD]
            upload = adjustment.ceilings[Direction.UPLOAD]

            logger.info(f"{link.link_id}: latency={sample.observed_ms:.1f}ms "
                        f"(deviation {sample.deviation_ms:+.1f}ms, loss {sample.loss_pct:.0f}%) "
                        f"[{adjustment.action.value.upper()}] "
                        f"{state.download_mbps}/{state.upload_mbps} -> {download}/{upload} Mbps")

            details = {
                "action": adjustment.action.value,
                "observed_ms": sample.observed_ms,
                "deviation_ms": sample.deviation_ms,
                "loss_pct": sample.loss_pct,
            }

            if not self.executor.apply_ceiling(link.link_id, download, upload):
                # Next cycle recomputes from the unchanged state
                logger.error(f"{link.link_id}: apply failed, keeping {state.download_mbps}/{state.upload_mbps} Mbps")
                return CycleResult(link.link_id, CycleOutcome.FAILED, "apply failed",
                                   state.download_mbps, state.upload_mbps, details)

            command = AppliedRateCommand(link_id=link.link_id, download_mbps=download,
                                         upload_mbps=upload, timestamp=now)
            state.record_applied(command, f"latency: {adjustment.action.value}")
            state.backoff_exponent = adjustment.backoff_exponent
            state.recovery_exponent = adjustment.recovery_exponent
            for direction, anchor in adjustment.anchors.items():
                state.set_backoff_anchor(direction, anchor)
            state.last_action = adjustment.action

            return CycleResult(link.link_id, CycleOutcome.APPLIED, adjustment.action.value,
                               download, upload, details)
        finally:
            state.mode = ControllerMode.IDLE
