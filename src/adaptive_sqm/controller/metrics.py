#!/usr/bin/env python3
"""
Prometheus metrics exported by the SQM controller
"""

from prometheus_client import Counter, Gauge

from .models import ControllerState, Direction

applied_ceiling_gauge = Gauge(
    'adaptive_sqm_applied_ceiling_mbps',
    'Ceiling last acknowledged by the gateway',
    ['link', 'direction']
)

recovery_ceiling_gauge = Gauge(
    'adaptive_sqm_recovery_ceiling_mbps',
    'Most recently learned ceiling the latency loop recovers toward',
    ['link', 'direction']
)

latency_gauge = Gauge(
    'adaptive_sqm_latency_ms',
    'Average latency observed by the last correction cycle',
    ['link']
)

backoff_exponent_gauge = Gauge(
    'adaptive_sqm_backoff_exponent',
    'Consecutive congested correction cycles',
    ['link']
)

lane_enabled_gauge = Gauge(
    'adaptive_sqm_lane_enabled',
    'Link lane status (1=running, 0=disabled by configuration error)',
    ['link']
)

cycle_counter = Counter(
    'adaptive_sqm_cycles',
    'Learning and correction cycles by outcome',
    ['link', 'loop', 'outcome']
)


def export_state(state: ControllerState):
    """Publish a link's ControllerState"""
    for direction in Direction:
        ceiling = state.ceiling(direction)
        if ceiling is not None:
            applied_ceiling_gauge.labels(link=state.link_id, direction=direction.value).set(ceiling)
        recovery = state.recovery_ceiling(direction)
        if recovery is not None:
            recovery_ceiling_gauge.labels(link=state.link_id, direction=direction.value).set(recovery)

    if state.last_latency_ms is not None:
        latency_gauge.labels(link=state.link_id).set(state.last_latency_ms)
    backoff_exponent_gauge.labels(link=state.link_id).set(state.backoff_exponent)


def record_cycle(link_id: str, loop: str, outcome: str):
    cycle_counter.labels(link=link_id, loop=loop, outcome=outcome).inc()


def set_lane_enabled(link_id: str, enabled: bool):
    lane_enabled_gauge.labels(link=link_id).set(1 if enabled else 0)
