#!/usr/bin/env python3
"""
SQM Orchestrator
Runs one independent lane per WAN link. Each lane owns the link's
ControllerState, fires learning cycles on the configured schedule and
correction cycles on a fixed interval, and never lets the two interleave.

A lane that hits a configuration error is disabled, not crashed, and
re-checks its configuration every correction interval. Persistence failures
degrade durability only: shaping keeps working.
"""

import os
import json
import argparse
import sys
import time
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, time as dtime
from typing import Callable, Dict, List, Optional, Tuple

from prometheus_client import start_http_server

from . import metrics
from .baseline_learner import BaselineLearner
from .baseline_store import BaselineStore, PersistenceError, PersistenceStore, SqlitePersistenceStore
from .config_loader import (
    DEFAULT_CONFIG_PATH,
    ConfigLoader,
    ConfigProvider,
    ConfigurationError,
    ControlConfig,
    SystemConfig,
    WanLink,
    YamlConfigProvider,
    parse_schedule_time,
)
from .gateway_executor import GatewayExecutor, HttpGatewayExecutor, TcGatewayExecutor
from .latency_controller import LatencyController
from .models import AppliedRateCommand, ControllerState, CycleOutcome, CycleResult, Direction, clamp
from ..probes.network_probe import LatencyProbe, PingLatencyProbe
from ..probes.speedtest_client import MeasurementClient, SpeedtestCliClient

logger = logging.getLogger(__name__)

LEASE_POLL_SECONDS = 0.05


class LinkLane:
    """Scheduling state of one link"""

    def __init__(self, link_id: str):
        self.link_id = link_id
        self.state: Optional[ControllerState] = None
        self.thread: Optional[threading.Thread] = None

        # Held for the whole of a cycle; learning waits for it, correction never does
        self.cycle_lock = threading.Lock()
        self.learning_window = threading.Event()
        self.init_lock = threading.Lock()
        # Ceiling in force before the learning cycle raised the link to max
        self.pre_learning_ceiling: Tuple[Optional[float], Optional[float]] = (None, None)

        # Store lease shared by every cycle this process runs on the link
        self.lease_guard = threading.Lock()
        self.lease_depth = 0

        self.initialized = False
        self.learning_pending = False
        self.enabled = True
        self.error: Optional[str] = None
        self.control = ControlConfig()
        self.next_correction_at = 0.0
        self.next_config_check = 0.0
        self.next_init_attempt = 0.0
        self.last_schedule_check: Optional[datetime] = None
        self.last_result: Optional[CycleResult] = None


class SqmOrchestrator:
    """Per-link scheduling, mutual exclusion and restart recovery"""

    def __init__(self, config_provider: ConfigProvider, measurement_client: MeasurementClient,
                 latency_probe: LatencyProbe, executor: GatewayExecutor, persistence: PersistenceStore,
                 clock: Callable[[], datetime] = datetime.now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config_provider = config_provider
        self.executor = executor
        self.persistence = persistence
        self.clock = clock
        self.monotonic = monotonic

        self.baseline_store = BaselineStore(persistence)
        self.learner = BaselineLearner(self.baseline_store, measurement_client, executor, clock)
        self.latency_controller = LatencyController(latency_probe, executor, clock)

        self._lanes: Dict[str, LinkLane] = {}
        self._lanes_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.persistence_degraded = False
        # Lease owner; one-shot CLI runs and the daemon share the store
        self.owner_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Lane bookkeeping
    # ------------------------------------------------------------------

    def _get_lane(self, link_id: str) -> LinkLane:
        with self._lanes_lock:
            lane = self._lanes.get(link_id)
            if lane is None:
                lane = LinkLane(link_id)
                self._lanes[link_id] = lane
            return lane

    def _disable_lane(self, lane: LinkLane, error: str, recheck_at: float):
        if lane.enabled or lane.error != error:
            logger.error(f"{lane.link_id}: lane disabled by configuration error: {error}")
        lane.enabled = False
        lane.error = error
        lane.next_config_check = recheck_at
        metrics.set_lane_enabled(lane.link_id, False)

    def _enable_lane(self, lane: LinkLane):
        if not lane.enabled:
            logger.info(f"{lane.link_id}: configuration valid again, lane re-enabled")
        lane.enabled = True
        lane.error = None
        metrics.set_lane_enabled(lane.link_id, True)

    def _persist(self, lane: LinkLane):
        if lane.state is None:
            return
        state = lane.state
        if lane.learning_window.is_set():
            # Max is only in force for the measurement; a restart resumes from the ceiling before it
            download, upload = lane.pre_learning_ceiling
            state = replace(state, download_mbps=download, upload_mbps=upload,
                            last_adjustment_reason="learning interrupted: previous ceiling kept")
        try:
            if not self.persistence.save_state(state):
                logger.warning(f"{lane.link_id}: newer controller state already stored by another "
                               f"process, revision {state.revision} not written")
            self.persistence_degraded = False
        except PersistenceError as e:
            logger.error(f"{lane.link_id}: controller state not persisted (degraded): {e}")
            self.persistence_degraded = True

    def _try_lease(self, lane: LinkLane) -> bool:
        with lane.lease_guard:
            if lane.lease_depth == 0:
                try:
                    if not self.persistence.acquire_lease(lane.link_id, self.owner_id,
                                                          lane.control.lease_timeout_seconds):
                        return False
                except PersistenceError as e:
                    # Same rule as every other store failure: shaping goes on
                    logger.error(f"{lane.link_id}: cannot take link lease (degraded): {e}")
                    self.persistence_degraded = True
            lane.lease_depth += 1
            return True

    def _release_lease(self, lane: LinkLane):
        with lane.lease_guard:
            lane.lease_depth -= 1
            if lane.lease_depth > 0:
                return
            try:
                self.persistence.release_lease(lane.link_id, self.owner_id)
            except PersistenceError as e:
                logger.error(f"{lane.link_id}: cannot release link lease (degraded): {e}")
                self.persistence_degraded = True

    def _drop_lease(self, lane: LinkLane):
        """Release the link even if a stuck cycle still counts as holding it"""
        with lane.lease_guard:
            if lane.lease_depth == 0:
                return
            try:
                self.persistence.release_lease(lane.link_id, self.owner_id)
            except PersistenceError as e:
                logger.error(f"{lane.link_id}: cannot release link lease (degraded): {e}")
                self.persistence_degraded = True

    def _restore_pre_learning(self, lane: LinkLane):
        download, upload = lane.pre_learning_ceiling
        if download is None or upload is None:
            logger.warning(f"{lane.link_id}: stopped while learning, no previous ceiling to restore")
            return
        if self.executor.apply_ceiling(lane.link_id, download, upload):
            logger.info(f"{lane.link_id}: stopped while learning, restored ceiling {download}/{upload} Mbps")
        else:
            logger.error(f"{lane.link_id}: stopped while learning, failed to restore ceiling "
                         f"{download}/{upload} Mbps")

    @contextmanager
    def _link_lease(self, lane: LinkLane, wait: float = 0.0):
        """
        Hold the link against other processes sharing the store.

        Yields False when another process still holds it after `wait`
        seconds. Cycles of this process on the same link share the lease;
        they are kept apart by the lane's cycle lock.
        """
        deadline = time.monotonic() + wait
        held = self._try_lease(lane)
        while not held and time.monotonic() < deadline:
            time.sleep(LEASE_POLL_SECONDS)
            held = self._try_lease(lane)
        try:
            yield held
        finally:
            if held:
                self._release_lease(lane)

    def _adopt_newer_state(self, lane: LinkLane):
        """Take over state another process committed while this one was idle on the link"""
        if lane.state is None:
            return
        try:
            stored = self.persistence.load_state(lane.link_id)
        except PersistenceError as e:
            logger.error(f"{lane.link_id}: cannot load controller state (degraded): {e}")
            self.persistence_degraded = True
            return
        if stored is not None and stored.revision > lane.state.revision:
            logger.info(f"{lane.link_id}: controller state changed by another process "
                        f"(revision {lane.state.revision} -> {stored.revision}), adopting "
                        f"{stored.download_mbps}/{stored.upload_mbps} Mbps")
            lane.state = stored
            # The gateway was driven by someone else; resend on the next change
            self.executor.forget(lane.link_id)

    def _ensure_initialized(self, lane: LinkLane, link: WanLink) -> bool:
        """
        Load persisted state and reapply the last known good ceiling.

        Returns False while the reapply keeps failing; it is retried every
        correction interval.
        """
        with lane.init_lock:
            if lane.initialized:
                return True
            now_mono = self.monotonic()
            if now_mono < lane.next_init_attempt:
                return False

            if lane.state is None:
                state = None
                try:
                    state = self.persistence.load_state(link.link_id)
                except PersistenceError as e:
                    logger.error(f"{link.link_id}: cannot load controller state (degraded): {e}")
                    self.persistence_degraded = True
                lane.state = state or ControllerState(link_id=link.link_id)

            state = lane.state
            if state.has_ceiling:
                download = clamp(state.download_mbps, link.download.min_mbps, link.download.max_mbps)
                upload = clamp(state.upload_mbps, link.upload.min_mbps, link.upload.max_mbps)
                # The gateway may have been reset while we were down
                self.executor.forget(link.link_id)
                if not self.executor.apply_ceiling(link.link_id, download, upload):
                    logger.error(f"{link.link_id}: failed to reapply last ceiling {download}/{upload} Mbps")
                    lane.next_init_attempt = now_mono + lane.control.correction_interval_seconds
                    return False
                state.record_applied(
                    AppliedRateCommand(link.link_id, download, upload, self.clock()),
                    "restart: last ceiling reapplied")
                self._persist(lane)
                logger.info(f"{link.link_id}: reapplied last ceiling {download}/{upload} Mbps")
            elif lane.control.learn_on_first_start:
                logger.info(f"{link.link_id}: no ceiling on record, learning first")
                lane.learning_pending = True
            else:
                logger.warning(f"{link.link_id}: no ceiling on record, waiting for scheduled learning")

            lane.initialized = True
            lane.next_correction_at = now_mono
            metrics.export_state(state)
            return True

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _after_cycle(self, lane: LinkLane, loop: str, result: CycleResult) -> CycleResult:
        lane.last_result = result
        if result.details.get("persistence_degraded"):
            self.persistence_degraded = True
        self._persist(lane)
        metrics.export_state(lane.state)
        metrics.record_cycle(lane.link_id, loop, result.outcome.value)
        return result

    def _run_learning(self, lane: LinkLane, link: WanLink) -> CycleResult:
        with lane.cycle_lock:
            lane.pre_learning_ceiling = (lane.state.download_mbps, lane.state.upload_mbps)
            lane.learning_window.set()
            try:
                result = self.learner.run_cycle(link, lane.state)
            finally:
                lane.learning_window.clear()
            lane.learning_pending = not lane.state.has_ceiling
            return self._after_cycle(lane, "learning", result)

    def _run_correction(self, lane: LinkLane, link: WanLink) -> CycleResult:
        if lane.learning_window.is_set():
            logger.info(f"{link.link_id}: learning window open, skipping correction")
            return CycleResult(link.link_id, CycleOutcome.SKIPPED, "learning window open")
        if not lane.cycle_lock.acquire(blocking=False):
            # Lost to another correction, or to learning that has not opened its window yet
            logger.info(f"{link.link_id}: another cycle in progress, skipping correction")
            return CycleResult(link.link_id, CycleOutcome.SKIPPED, "cycle in progress")
        try:
            result = self.latency_controller.run_cycle(link, lane.state)
            return self._after_cycle(lane, "correction", result)
        finally:
            lane.cycle_lock.release()

    def _schedule_crossed(self, lane: LinkLane, now: datetime) -> bool:
        """True when a learning time fell between the previous check and now"""
        previous = lane.last_schedule_check
        lane.last_schedule_check = now
        if previous is None or now <= previous:
            return False
        for entry in lane.control.learning_schedule:
            hour, minute = parse_schedule_time(entry)
            for day in {previous.date(), now.date()}:
                at = datetime.combine(day, dtime(hour, minute))
                if previous < at <= now:
                    return True
        return False

    def _tick(self, lane: LinkLane) -> bool:
        """One scheduling step; returns False once the link has been removed"""
        now_mono = self.monotonic()
        if not lane.enabled and now_mono < lane.next_config_check:
            return True

        try:
            lane.control = self.config_provider.get_control()
            link = self.config_provider.get_link(lane.link_id)
        except ConfigurationError as e:
            self._disable_lane(lane, str(e), now_mono + lane.control.correction_interval_seconds)
            return True

        if link is None:
            logger.info(f"{lane.link_id}: link removed from configuration, stopping lane")
            return False

        self._enable_lane(lane)
        if not link.enabled:
            return True

        learning_due = self._schedule_crossed(lane, self.clock())
        init_due = not lane.initialized and now_mono >= lane.next_init_attempt
        if not (init_due or learning_due or now_mono >= lane.next_correction_at):
            return True

        with self._link_lease(lane) as held:
            if not held:
                logger.info(f"{lane.link_id}: link held by another process, retrying next interval")
                lane.learning_pending = lane.learning_pending or learning_due
                lane.next_correction_at = now_mono + lane.control.correction_interval_seconds
                return True

            self._adopt_newer_state(lane)
            if not self._ensure_initialized(lane, link):
                return True

            if learning_due or (lane.learning_pending and now_mono >= lane.next_correction_at):
                self._run_learning(lane, link)
                lane.next_correction_at = self.monotonic() + lane.control.correction_interval_seconds
            elif now_mono >= lane.next_correction_at:
                self._run_correction(lane, link)
                lane.next_correction_at = now_mono + lane.control.correction_interval_seconds
        return True

    def _run_lane(self, lane: LinkLane):
        logger.info(f"{lane.link_id}: lane started")
        metrics.set_lane_enabled(lane.link_id, True)
        while not self._stop_event.is_set():
            try:
                if not self._tick(lane):
                    break
            except Exception as e:
                # Keep the lane alive; the next tick starts from the last acknowledged state
                logger.error(f"{lane.link_id}: unexpected error in lane: {e}", exc_info=True)
            self._stop_event.wait(lane.control.tick_seconds)

        self._persist(lane)
        if not self._stop_event.is_set():
            with self._lanes_lock:
                self._lanes.pop(lane.link_id, None)
            metrics.set_lane_enabled(lane.link_id, False)
        logger.info(f"{lane.link_id}: lane stopped")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sync_lanes(self) -> List[str]:
        """Start a lane for every configured link that does not have a running one"""
        started = []
        for link_id in self.config_provider.get_link_ids():
            lane = self._get_lane(link_id)
            if lane.thread is not None and lane.thread.is_alive():
                continue
            lane.thread = threading.Thread(target=self._run_lane, args=(lane,),
                                           name=f"sqm-lane-{link_id}", daemon=True)
            lane.thread.start()
            started.append(link_id)
        return started

    def start(self) -> List[str]:
        self._stop_event.clear()
        started = self.sync_lanes()
        logger.info(f"Started {len(started)} link lanes: {started}")
        return started

    def run_forever(self):
        """Block until stop(), picking up links added to the configuration"""
        while not self._stop_event.is_set():
            interval = ControlConfig.correction_interval_seconds
            try:
                interval = self.config_provider.get_control().correction_interval_seconds
                self.sync_lanes()
            except ConfigurationError as e:
                logger.error(f"Cannot refresh link list: {e}")
            self._stop_event.wait(interval)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop all lanes and persist their state.

        In-flight cycles get until the timeout to finish; the persisted state
        is the last acknowledged one either way. A lane still measuring has
        its gateway put back to the ceiling it ran before learning, and no
        link stays leased to this process. Returns True when every lane
        thread exited in time.
        """
        if timeout is None:
            try:
                timeout = self.config_provider.get_control().shutdown_timeout_seconds
            except ConfigurationError:
                timeout = ControlConfig.shutdown_timeout_seconds

        self._stop_event.set()
        deadline = time.monotonic() + timeout

        with self._lanes_lock:
            lanes = list(self._lanes.values())

        all_stopped = True
        for lane in lanes:
            if lane.thread is not None:
                lane.thread.join(max(0.0, deadline - time.monotonic()))
                if lane.thread.is_alive():
                    logger.warning(f"{lane.link_id}: lane did not stop within {timeout}s")
                    all_stopped = False
            if lane.learning_window.is_set():
                self._restore_pre_learning(lane)
            self._persist(lane)
            self._drop_lease(lane)

        logger.info("Orchestrator stopped")
        return all_stopped

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def _prepare(self, link_id: str):
        """Resolve a link for an on-demand cycle; returns (lane, link, skip_result)"""
        try:
            link = self.config_provider.get_link(link_id)
        except ConfigurationError as e:
            return None, None, CycleResult(link_id, CycleOutcome.SKIPPED, f"configuration error: {e}")
        if link is None:
            return None, None, CycleResult(link_id, CycleOutcome.SKIPPED, "unknown link")

        lane = self._get_lane(link_id)
        try:
            lane.control = self.config_provider.get_control()
        except ConfigurationError as e:
            return None, None, CycleResult(link_id, CycleOutcome.SKIPPED, f"configuration error: {e}")
        return lane, link, None

    def _run_on_demand(self, link_id: str, learning: bool) -> CycleResult:
        lane, link, skipped = self._prepare(link_id)
        if skipped:
            return skipped

        # Learning waits out a correction running in another process
        wait = lane.control.probe_timeout_seconds + lane.control.apply_timeout_seconds if learning else 0.0
        with self._link_lease(lane, wait=wait) as held:
            if not held:
                logger.warning(f"{link_id}: link is held by another process, not running cycle")
                return CycleResult(link_id, CycleOutcome.SKIPPED, "link busy in another process")

            self._adopt_newer_state(lane)
            if not self._ensure_initialized(lane, link):
                return CycleResult(link_id, CycleOutcome.FAILED, "last ceiling could not be reapplied")
            if learning:
                return self._run_learning(lane, link)
            return self._run_correction(lane, link)

    def trigger_baseline_test_now(self, link_id: str) -> CycleResult:
        """Run a learning cycle immediately, waiting for any correction in progress"""
        return self._run_on_demand(link_id, learning=True)

    def trigger_latency_cycle_now(self, link_id: str) -> CycleResult:
        """Run a correction cycle immediately; skipped while learning"""
        return self._run_on_demand(link_id, learning=False)

    def get_current_state(self, link_id: str) -> Optional[ControllerState]:
        with self._lanes_lock:
            lane = self._lanes.get(link_id)
        if lane is not None and lane.state is not None:
            return replace(lane.state)
        try:
            return self.persistence.load_state(link_id)
        except PersistenceError as e:
            logger.error(f"{link_id}: cannot load controller state: {e}")
            self.persistence_degraded = True
            return None

    def get_baseline_table(self, link_id: str, direction: Direction = Direction.DOWNLOAD):
        """168-entry table keyed by (day_of_week, hour); None marks unlearned slots"""
        try:
            return self.baseline_store.table(link_id, direction)
        except PersistenceError as e:
            logger.error(f"{link_id}: cannot read baseline table: {e}")
            self.persistence_degraded = True
            return None

    def get_status(self) -> Dict:
        with self._lanes_lock:
            lanes = list(self._lanes.values())

        links = {}
        for lane in lanes:
            state = lane.state
            progress = {}
            for direction in Direction:
                try:
                    progress[direction.value] = self.baseline_store.completion(lane.link_id, direction)
                except PersistenceError:
                    progress[direction.value] = None
            links[lane.link_id] = {
                "enabled": lane.enabled,
                "error": lane.error,
                "running": lane.thread is not None and lane.thread.is_alive(),
                "mode": state.mode.value if state else None,
                "download_mbps": state.download_mbps if state else None,
                "upload_mbps": state.upload_mbps if state else None,
                "last_action": state.last_action.value if state and state.last_action else None,
                "learning_progress_pct": progress,
                "last_result": lane.last_result.reason if lane.last_result else None,
            }

        return {"persistence_degraded": self.persistence_degraded, "links": links}


def build_executor(config: SystemConfig, provider: ConfigProvider) -> GatewayExecutor:
    """Create the executor named in the gateway section"""
    apply_timeout = config.control.apply_timeout_seconds
    if config.gateway.executor == 'http':
        return HttpGatewayExecutor(config.gateway.endpoint, apply_timeout=apply_timeout,
                                   token=config.gateway.token)

    def resolve_link(link_id: str) -> WanLink:
        link = provider.get_link(link_id)
        if link is None:
            raise ConfigurationError(f"Unknown link {link_id}")
        return link

    return TcGatewayExecutor(resolve_link, apply_timeout=apply_timeout, dry_run=config.gateway.dry_run)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Adaptive SQM bandwidth controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the controller (default)
  adaptive-sqm --config /etc/adaptive-sqm/sqm-links.yaml

  # Run one learning cycle for a link now
  adaptive-sqm learn-now wan1

  # Run one latency correction cycle for a link now
  adaptive-sqm correct-now wan1

  # Show lane status and learning progress
  adaptive-sqm status

  # Dump the learned upload baseline of a link
  adaptive-sqm table wan1 --direction upload
        """
    )
    parser.add_argument('command', nargs='?', default='run',
                        choices=['run', 'status', 'learn-now', 'correct-now', 'table'],
                        help='What to do (default: run)')
    parser.add_argument('link_id', nargs='?', help='Link for learn-now, correct-now and table')
    parser.add_argument('--config', default=os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH),
                        help='Path to sqm-links.yaml (default: $CONFIG_PATH)')
    parser.add_argument('--direction', choices=[d.value for d in Direction], default=Direction.DOWNLOAD.value,
                        help='Direction for table (default: download)')
    args = parser.parse_args(argv)
    if args.command in ('learn-now', 'correct-now', 'table') and not args.link_id:
        parser.error(f"{args.command} requires a link_id")
    return args


def build_orchestrator(config: SystemConfig, config_path: str) -> SqmOrchestrator:
    provider = YamlConfigProvider(config_path)
    return SqmOrchestrator(
        config_provider=provider,
        measurement_client=SpeedtestCliClient(timeout=config.control.measurement_timeout_seconds),
        latency_probe=PingLatencyProbe(timeout=config.control.probe_timeout_seconds),
        executor=build_executor(config, provider),
        persistence=SqlitePersistenceStore(config.database_path),
    )


def run_once(orchestrator: SqmOrchestrator, args) -> int:
    """Execute a one-shot command and print its result as JSON"""
    if args.command == 'status':
        # Persisted view only; no lanes are started
        output = {}
        for link_id in orchestrator.config_provider.get_link_ids():
            state = orchestrator.get_current_state(link_id)
            output[link_id] = {
                "state": state.to_dict() if state else None,
                "learning_progress_pct": {
                    d.value: orchestrator.baseline_store.completion(link_id, d) for d in Direction
                },
            }
        print(json.dumps(output, indent=2))
        return 0

    if args.command == 'table':
        table = orchestrator.get_baseline_table(args.link_id, Direction(args.direction))
        if table is None:
            return 1
        learned = [
            {"day": day, "hour": hour, "mbps": round(slot.mbps, 2), "samples": slot.sample_count}
            for (day, hour), slot in sorted(table.items()) if slot is not None
        ]
        print(json.dumps({"link_id": args.link_id, "direction": args.direction,
                          "learned_slots": len(learned), "slots": learned}, indent=2))
        return 0

    if args.command == 'learn-now':
        result = orchestrator.trigger_baseline_test_now(args.link_id)
    else:
        result = orchestrator.trigger_latency_cycle_now(args.link_id)
    orchestrator.stop()

    print(json.dumps({
        "link_id": result.link_id,
        "outcome": result.outcome.value,
        "reason": result.reason,
        "download_mbps": result.download_mbps,
        "upload_mbps": result.upload_mbps,
    }, indent=2))
    return 1 if result.outcome == CycleOutcome.FAILED else 0


def main(argv=None):
    """Entry point"""
    args = parse_args(argv)
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(levelname)s - [%(name)s] %(message)s'
    )
    orchestrator = None

    try:
        if args.command != 'run':
            config = ConfigLoader.load(args.config)
            return run_once(build_orchestrator(config, args.config), args)

        metrics_port = int(os.getenv('METRICS_PORT', '8001'))
        start_http_server(metrics_port)
        logger.info(f"Started Prometheus metrics server on port {metrics_port}")

        config = ConfigLoader.load(args.config)
        if not ConfigLoader.validate(config):
            logger.error("Configuration validation failed")
            sys.exit(1)

        logger.info("=" * 60)
        logger.info("Starting Adaptive SQM Controller")
        logger.info(f"Executor: {config.gateway.executor} (dry_run={config.gateway.dry_run})")
        logger.info(f"Learning schedule: {config.control.learning_schedule}, "
                    f"correction every {config.control.correction_interval_seconds}s")
        for link in config.links:
            logger.info(f"  - {link.link_id} ({link.connection_type.value}) on {link.interface}: "
                        f"down {link.download.min_mbps}-{link.download.max_mbps} Mbps, "
                        f"up {link.upload.min_mbps}-{link.upload.max_mbps} Mbps")
        for link_id, error in config.link_errors.items():
            logger.warning(f"  - {link_id}: DISABLED ({error})")
        logger.info("=" * 60)

        orchestrator = build_orchestrator(config, args.config)
        orchestrator.start()
        orchestrator.run_forever()

    except KeyboardInterrupt:
        logger.info("Shutting down controller")
        if orchestrator is not None:
            orchestrator.stop()
    except Exception as e:
        logger.error(f"Controller startup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    sys.exit(main())
