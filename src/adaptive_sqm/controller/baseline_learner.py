#!/usr/bin/env python3
"""
Baseline Learner
Slow loop: measures real link throughput on a schedule, blends it into the
hour-of-week baseline and applies the resulting ceiling.

Blending trusts history. A reading that roughly confirms the stored baseline
moves it a little (60/40); an unusually low reading is treated as likely noise
and moves it even less (80/20).
"""

import math
import logging
from datetime import datetime
from numbers import Real
from typing import Callable, Optional, Tuple

from .baseline_store import BaselineStore, PersistenceError
from .config_loader import WanLink
from .gateway_executor import GatewayExecutor
from .models import (
    AppliedRateCommand,
    BaselineSlot,
    ControllerMode,
    ControllerState,
    CycleOutcome,
    CycleResult,
    Direction,
    clamp,
    truncate_mbps,
)
from ..probes.speedtest_client import MeasurementClient

logger = logging.getLogger(__name__)


def blend_speed(measured: float, baseline: float, threshold_fraction: float = 0.90,
                weight_within: float = 0.60, weight_below: float = 0.80) -> float:
    """
    Weighted average of a measurement and the stored baseline.

    Args:
        measured: Clamped measurement in Mbps
        baseline: Stored baseline for the same hour of week
        threshold_fraction: Readings below baseline * fraction count as low
        weight_within: Baseline weight for readings at or above the threshold
        weight_below: Baseline weight for low readings

    Returns:
        Blended value, always between measured and baseline
    """
    threshold = baseline * threshold_fraction
    weight = weight_within if measured >= threshold else weight_below
    return weight * baseline + (1.0 - weight) * measured


def compute_learned_ceiling(link: WanLink, direction: Direction, measured: float,
                            slot: Optional[BaselineSlot]) -> Tuple[float, float]:
    """
    Turn one measurement into (new slot value, ceiling to apply).

    The slot keeps the blended link throughput; the ceiling adds the
    overhead headroom and the secondary cap. With no slot the clamped
    measurement is used as-is (cold start).
    """
    bounds = link.bounds(direction)
    clamped = clamp(measured, bounds.min_mbps, bounds.max_mbps)

    if slot is None:
        learned = clamped
    else:
        baseline = clamp(slot.mbps, bounds.min_mbps, bounds.max_mbps)
        learned = blend_speed(clamped, baseline, link.blend_threshold_fraction,
                              link.blend_weight_within, link.blend_weight_below)

    adjusted = learned * link.overhead_multiplier
    cap = min(bounds.max_mbps, bounds.max_mbps * link.adjustment_cap_fraction)
    ceiling = float(truncate_mbps(clamp(adjusted, bounds.min_mbps, cap)))

    # Truncation must not push a fractional minimum out of range
    return learned, max(ceiling, bounds.min_mbps)


def is_valid_measurement(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


class BaselineLearner:
    """Runs one learning cycle for a link"""

    def __init__(self, baseline_store: BaselineStore, measurement_client: MeasurementClient,
                 executor: GatewayExecutor, clock: Callable[[], datetime] = datetime.now):
        self.baseline_store = baseline_store
        self.measurement_client = measurement_client
        self.executor = executor
        self.clock = clock

    def _measure(self, link: WanLink, direction: Direction) -> Optional[float]:
        try:
            value = self.measurement_client.measure_throughput(link, direction)
        except Exception as e:
            logger.error(f"{link.link_id}: {direction.value} measurement raised: {e}")
            return None

        if value is None:
            logger.warning(f"{link.link_id}: {direction.value} measurement failed")
            return None
        if not is_valid_measurement(value):
            logger.warning(f"{link.link_id}: discarding invalid {direction.value} measurement {value!r}")
            return None
        return float(value)

    def _apply(self, link_id: str, download: float, upload: float, now: datetime) -> Optional[AppliedRateCommand]:
        if self.executor.apply_ceiling(link_id, download, upload):
            return AppliedRateCommand(link_id=link_id, download_mbps=download,
                                      upload_mbps=upload, timestamp=now)
        return None

    def _restore(self, link: WanLink, state: ControllerState, previous: Tuple[Optional[float], Optional[float]],
                 now: datetime):
        download, upload = previous
        if download is None or upload is None:
            logger.warning(f"{link.link_id}: no previous ceiling to restore, leaving "
                           f"{state.download_mbps}/{state.upload_mbps} Mbps")
            return
        command = self._apply(link.link_id, download, upload, now)
        if command:
            state.record_applied(command, "learning aborted: previous ceiling restored")
            logger.info(f"{link.link_id}: restored ceiling {download}/{upload} Mbps")
        else:
            logger.error(f"{link.link_id}: failed to restore ceiling {download}/{upload} Mbps")

    def run_cycle(self, link: WanLink, state: ControllerState) -> CycleResult:
        """
        Raise to max, measure both directions, blend, persist, apply.

        ControllerState only ever records ceilings the gateway acknowledged.
        """
        now = self.clock()
        day, hour = now.weekday(), now.hour
        previous = (state.download_mbps, state.upload_mbps)
        persistence_degraded = False

        state.mode = ControllerMode.LEARNING
        try:
            logger.info(f"{link.link_id}: learning cycle for day={day} hour={hour}")

            # Take the shaper out of the way while measuring
            raised = self._apply(link.link_id, link.download.max_mbps, link.upload.max_mbps, now)
            if raised is None:
                logger.error(f"{link.link_id}: could not raise ceiling for measurement, keeping previous ceiling")
                return CycleResult(link.link_id, CycleOutcome.SKIPPED, "raise to max failed",
                                   state.download_mbps, state.upload_mbps)
            state.record_applied(raised, "learning: raised to max for measurement")

            # Measure, blend and persist each direction
            learned = {}
            for direction in Direction:
                measured = self._measure(link, direction)
                if measured is None:
                    continue

                slot = None
                try:
                    slot = self.baseline_store.get(link.link_id, direction, day, hour)
                except PersistenceError as e:
                    logger.error(f"{link.link_id}: baseline lookup failed, treating as cold start: {e}")
                    persistence_degraded = True

                slot_mbps, ceiling = compute_learned_ceiling(link, direction, measured, slot)
                mode = "cold start" if slot is None else f"blended with {slot.mbps:.1f}"
                logger.info(f"{link.link_id}: {direction.value} measured={measured:.2f} Mbps "
                            f"({mode}) -> baseline={slot_mbps:.2f} ceiling={ceiling:.0f} Mbps")

                try:
                    self.baseline_store.upsert(BaselineSlot(
                        link_id=link.link_id,
                        direction=direction,
                        day_of_week=day,
                        hour=hour,
                        mbps=slot_mbps,
                        sample_count=slot.sample_count + 1 if slot else 1,
                        last_updated=now,
                    ))
                except PersistenceError as e:
                    logger.error(f"{link.link_id}: baseline not persisted (degraded): {e}")
                    persistence_degraded = True

                learned[direction] = ceiling

            details = {"persistence_degraded": persistence_degraded,
                       "learned": {d.value: c for d, c in learned.items()}}

            if not learned:
                self._restore(link, state, previous, now)
                return CycleResult(link.link_id, CycleOutcome.SKIPPED, "all measurements failed",
                                   state.download_mbps, state.upload_mbps, details)

            # A direction that failed keeps its previous ceiling, or the one its slot implies
            ceilings = {}
            for direction in Direction:
                if direction in learned:
                    ceilings[direction] = learned[direction]
                    continue
                prior = previous[0] if direction == Direction.DOWNLOAD else previous[1]
                if prior is None:
                    slot = None
                    try:
                        slot = self.baseline_store.get(link.link_id, direction, day, hour)
                    except PersistenceError as e:
                        logger.error(f"{link.link_id}: baseline lookup failed: {e}")
                        persistence_degraded = True
                    if slot is not None:
                        # The stored value is pre-overhead, exactly like a cold-start measurement
                        _, prior = compute_learned_ceiling(link, direction, slot.mbps, None)
                        logger.info(f"{link.link_id}: {direction.value} not measured, using "
                                    f"baseline slot ceiling {prior:.0f} Mbps")
                ceilings[direction] = prior if prior is not None else link.bounds(direction).max_mbps
            details["persistence_degraded"] = persistence_degraded

            command = self._apply(link.link_id, ceilings[Direction.DOWNLOAD], ceilings[Direction.UPLOAD], now)
            if command is None:
                logger.error(f"{link.link_id}: applying learned ceiling failed")
                self._restore(link, state, previous, now)
                return CycleResult(link.link_id, CycleOutcome.FAILED, "apply failed",
                                   state.download_mbps, state.upload_mbps, details)

            state.record_applied(command, "learning: baseline updated")
            for direction in Direction:
                if direction in learned or state.recovery_ceiling(direction) is None:
                    state.set_recovery_ceiling(direction, ceilings[direction])
                state.set_backoff_anchor(direction, None)
            state.backoff_exponent = 0
            state.recovery_exponent = 0
            state.last_measurement_at = now

            logger.info(f"{link.link_id}: learned ceiling {command.download_mbps}/{command.upload_mbps} Mbps applied")
            return CycleResult(link.link_id, CycleOutcome.APPLIED, "baseline updated",
                               command.download_mbps, command.upload_mbps, details)
        finally:
            state.mode = ControllerMode.IDLE
