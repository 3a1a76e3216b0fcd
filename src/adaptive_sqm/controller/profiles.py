#!/usr/bin/env python3
"""
Connection Type Profiles
Default tuning per access technology. Values not given explicitly in the
link configuration are filled in from the profile of the link's connection
type; bounds can be derived from the advertised (nominal) speed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ConnectionType(str, Enum):
    DOCSIS_CABLE = "docsis_cable"
    STARLINK = "starlink"
    FIBER = "fiber"
    DSL = "dsl"
    FIXED_WIRELESS = "fixed_wireless"
    CELLULAR_HOME = "cellular_home"


@dataclass(frozen=True)
class ConnectionProfile:
    """Tuning defaults for one connection type"""
    max_fraction: float           # ceiling as fraction of nominal speed
    min_fraction: float           # floor as fraction of nominal speed
    absolute_max_fraction: float  # hard safety bound for latency corrections
    overhead_multiplier: float
    baseline_latency_ms: float
    latency_threshold_ms: float
    decrease_factor: float
    increase_factor: float
    blend_weight_within: float    # baseline weight when measurement confirms history
    blend_weight_below: float     # baseline weight when measurement is unusually low


PROFILES: Dict[ConnectionType, ConnectionProfile] = {
    # Fiber often exceeds advertised speeds and barely varies
    ConnectionType.FIBER: ConnectionProfile(
        max_fraction=1.05, min_fraction=0.90, absolute_max_fraction=1.02,
        overhead_multiplier=1.02, baseline_latency_ms=5.0, latency_threshold_ms=2.0,
        decrease_factor=0.98, increase_factor=1.03,
        blend_weight_within=0.70, blend_weight_below=0.85,
    ),
    # DOCSIS: stable with predictable peak-hour congestion
    ConnectionType.DOCSIS_CABLE: ConnectionProfile(
        max_fraction=0.95, min_fraction=0.65, absolute_max_fraction=0.98,
        overhead_multiplier=1.05, baseline_latency_ms=18.0, latency_threshold_ms=2.5,
        decrease_factor=0.97, increase_factor=1.04,
        blend_weight_within=0.60, blend_weight_below=0.80,
    ),
    # Starlink: wide variation, can drop to ~35% of nominal
    ConnectionType.STARLINK: ConnectionProfile(
        max_fraction=1.10, min_fraction=0.35, absolute_max_fraction=1.15,
        overhead_multiplier=1.15, baseline_latency_ms=25.0, latency_threshold_ms=4.0,
        decrease_factor=0.97, increase_factor=1.04,
        blend_weight_within=0.50, blend_weight_below=0.70,
    ),
    ConnectionType.DSL: ConnectionProfile(
        max_fraction=0.95, min_fraction=0.85, absolute_max_fraction=0.98,
        overhead_multiplier=1.03, baseline_latency_ms=20.0, latency_threshold_ms=3.0,
        decrease_factor=0.97, increase_factor=1.03,
        blend_weight_within=0.65, blend_weight_below=0.80,
    ),
    ConnectionType.FIXED_WIRELESS: ConnectionProfile(
        max_fraction=1.10, min_fraction=0.50, absolute_max_fraction=1.15,
        overhead_multiplier=1.10, baseline_latency_ms=15.0, latency_threshold_ms=4.0,
        decrease_factor=0.96, increase_factor=1.05,
        blend_weight_within=0.50, blend_weight_below=0.65,
    ),
    # Fixed LTE/5G: cell congestion makes this the noisiest link type
    ConnectionType.CELLULAR_HOME: ConnectionProfile(
        max_fraction=1.20, min_fraction=0.40, absolute_max_fraction=1.25,
        overhead_multiplier=1.12, baseline_latency_ms=35.0, latency_threshold_ms=5.0,
        decrease_factor=0.95, increase_factor=1.05,
        blend_weight_within=0.50, blend_weight_below=0.65,
    ),
}


def get_profile(connection_type: ConnectionType) -> ConnectionProfile:
    return PROFILES[connection_type]


def bounds_from_nominal(connection_type: ConnectionType, nominal_mbps: float):
    """
    Derive (min, max, absolute_max) Mbps from an advertised speed.

    The absolute max never exceeds max, so latency corrections stay inside
    the configured ceiling.
    """
    profile = get_profile(connection_type)
    max_mbps = int(nominal_mbps * profile.max_fraction)
    min_mbps = int(nominal_mbps * profile.min_fraction)
    absolute_max = min(int(nominal_mbps * profile.absolute_max_fraction), max_mbps)
    return min_mbps, max_mbps, absolute_max
