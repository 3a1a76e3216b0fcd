#!/usr/bin/env python3
"""
WAN Link Configuration Loader
Parses sqm-links.yaml into WanLink definitions and provides them to the
orchestrator. The file is re-read at the start of every cycle, so edits take
effect on the next cycle and never in the middle of one.
"""

import os
import yaml
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .models import Direction
from .profiles import ConnectionType, bounds_from_nominal, get_profile

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/adaptive-sqm/sqm-links.yaml"


class ConfigurationError(Exception):
    """Link configuration is missing or inconsistent; the lane is paused until fixed"""


@dataclass
class DirectionBounds:
    """Rate bounds for one direction of a link"""
    min_mbps: float
    max_mbps: float
    absolute_max_mbps: float


@dataclass
class WanLink:
    """Configuration for a single managed uplink"""
    link_id: str
    interface: str
    connection_type: ConnectionType
    download: DirectionBounds
    upload: DirectionBounds
    ping_target_host: str
    baseline_latency_ms: float
    latency_threshold_ms: float
    overhead_multiplier: float = 1.05
    adjustment_cap_fraction: float = 0.95
    blend_threshold_fraction: float = 0.90
    blend_weight_within: float = 0.60
    blend_weight_below: float = 0.80
    decrease_factor: float = 0.97
    increase_factor: float = 1.04
    drift_fraction: float = 0.10
    max_recovery_exponent: int = 2
    ping_count: int = 20
    enabled: bool = True

    def bounds(self, direction: Direction) -> DirectionBounds:
        return self.download if direction == Direction.DOWNLOAD else self.upload

    @property
    def ifb_device(self) -> str:
        """IFB device carrying ingress (download) shaping for this interface"""
        return f"ifb{self.interface}"


@dataclass
class ControlConfig:
    """Global scheduling parameters"""
    correction_interval_seconds: float = 300.0
    learning_schedule: List[str] = field(default_factory=lambda: ["06:00", "18:30"])
    tick_seconds: float = 1.0
    measurement_timeout_seconds: float = 120.0
    probe_timeout_seconds: float = 15.0
    apply_timeout_seconds: float = 10.0
    shutdown_timeout_seconds: float = 30.0
    learn_on_first_start: bool = True
    # A process that dies mid-cycle blocks its links for at most this long
    lease_timeout_seconds: float = 600.0


@dataclass
class GatewayConfig:
    """Which executor applies ceilings and how to reach it"""
    executor: str = "tc"
    dry_run: bool = True
    endpoint: Optional[str] = None
    token: Optional[str] = None


@dataclass
class SystemConfig:
    """Complete system configuration"""
    control: ControlConfig
    gateway: GatewayConfig
    database_path: str
    links: List[WanLink]
    # Links that could not be parsed, by id, with the reason
    link_errors: Dict[str, str] = field(default_factory=dict)


def parse_schedule_time(value: str):
    """'HH:MM' -> (hour, minute)"""
    try:
        hour_str, minute_str = str(value).split(":")
        hour, minute = int(hour_str), int(minute_str)
    except ValueError:
        raise ConfigurationError(f"Invalid learning schedule entry '{value}' (expected HH:MM)")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ConfigurationError(f"Learning schedule entry out of range: '{value}'")
    return hour, minute


class ConfigLoader:
    """Loads and validates sqm-links.yaml configuration"""

    @staticmethod
    def load(config_path: str = DEFAULT_CONFIG_PATH) -> SystemConfig:
        """Load configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}

            logger.debug(f"Loaded configuration from {config_path}")
            return ConfigLoader._parse_config(config)

        except FileNotFoundError:
            logger.error(f"Config file not found: {config_path}")
            raise
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error: {e}")
            raise

    @staticmethod
    def _parse_config(config: dict) -> SystemConfig:
        """Parse configuration dictionary; bad links are recorded, not fatal"""

        ctrl = config.get('control') or {}
        control_config = ControlConfig(
            correction_interval_seconds=float(ctrl.get('correction_interval_seconds', 300)),
            learning_schedule=[str(t) for t in ctrl.get('learning_schedule', ["06:00", "18:30"])],
            tick_seconds=float(ctrl.get('tick_seconds', 1.0)),
            measurement_timeout_seconds=float(ctrl.get('measurement_timeout_seconds', 120)),
            probe_timeout_seconds=float(ctrl.get('probe_timeout_seconds', 15)),
            apply_timeout_seconds=float(ctrl.get('apply_timeout_seconds', 10)),
            shutdown_timeout_seconds=float(ctrl.get('shutdown_timeout_seconds', 30)),
            learn_on_first_start=bool(ctrl.get('learn_on_first_start', True)),
            lease_timeout_seconds=float(ctrl.get('lease_timeout_seconds', 600)),
        )

        gw = config.get('gateway') or {}
        gateway_config = GatewayConfig(
            executor=str(gw.get('executor', 'tc')),
            dry_run=bool(gw.get('dry_run', True)),
            endpoint=gw.get('endpoint'),
            token=gw.get('token'),
        )

        persistence = config.get('persistence') or {}
        database_path = str(persistence.get('database_path', 'adaptive-sqm.db'))

        links = []
        link_errors = {}
        for index, raw in enumerate(config.get('links') or []):
            link_id = str(raw.get('id', f"link-{index}")) if isinstance(raw, dict) else f"link-{index}"
            try:
                links.append(ConfigLoader.parse_link(raw))
            except ConfigurationError as e:
                logger.error(f"Link {link_id}: {e}")
                link_errors[link_id] = str(e)

        return SystemConfig(
            control=control_config,
            gateway=gateway_config,
            database_path=database_path,
            links=links,
            link_errors=link_errors,
        )

    @staticmethod
    def parse_link(raw: dict) -> WanLink:
        """
        Parse one link entry.

        Tuning values absent from the entry come from the connection-type
        profile; direction bounds may be given explicitly or derived from
        nominal_download_mbps / nominal_upload_mbps.
        """
        if not isinstance(raw, dict):
            raise ConfigurationError("Link entry must be a mapping")
        try:
            link_id = str(raw['id'])
            connection_type = ConnectionType(raw.get('connection_type', ConnectionType.DOCSIS_CABLE.value))
            profile = get_profile(connection_type)

            download = ConfigLoader._parse_bounds(raw, 'download', connection_type)
            upload = ConfigLoader._parse_bounds(raw, 'upload', connection_type)

            return WanLink(
                link_id=link_id,
                interface=str(raw.get('interface', '')),
                connection_type=connection_type,
                download=download,
                upload=upload,
                ping_target_host=str(raw.get('ping_target_host') or ''),
                baseline_latency_ms=float(raw.get('baseline_latency_ms', profile.baseline_latency_ms)),
                latency_threshold_ms=float(raw.get('latency_threshold_ms', profile.latency_threshold_ms)),
                overhead_multiplier=float(raw.get('overhead_multiplier', profile.overhead_multiplier)),
                adjustment_cap_fraction=float(raw.get('adjustment_cap_fraction', 0.95)),
                blend_threshold_fraction=float(raw.get('blend_threshold_fraction', 0.90)),
                blend_weight_within=float(raw.get('blend_weight_within', profile.blend_weight_within)),
                blend_weight_below=float(raw.get('blend_weight_below', profile.blend_weight_below)),
                decrease_factor=float(raw.get('decrease_factor', profile.decrease_factor)),
                increase_factor=float(raw.get('increase_factor', profile.increase_factor)),
                drift_fraction=float(raw.get('drift_fraction', 0.10)),
                max_recovery_exponent=int(raw.get('max_recovery_exponent', 2)),
                ping_count=int(raw.get('ping_count', 20)),
                enabled=bool(raw.get('enabled', True)),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing required field {e}")
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value: {e}")

    @staticmethod
    def _parse_bounds(raw: dict, direction: str, connection_type: ConnectionType) -> DirectionBounds:
        explicit = raw.get(direction)
        if explicit:
            max_mbps = float(explicit['max_mbps'])
            return DirectionBounds(
                min_mbps=float(explicit['min_mbps']),
                max_mbps=max_mbps,
                absolute_max_mbps=float(explicit.get('absolute_max_mbps', max_mbps)),
            )

        nominal = raw.get(f"nominal_{direction}_mbps")
        if nominal is None:
            raise ConfigurationError(f"Either '{direction}' bounds or 'nominal_{direction}_mbps' is required")
        min_mbps, max_mbps, absolute_max = bounds_from_nominal(connection_type, float(nominal))
        return DirectionBounds(min_mbps=min_mbps, max_mbps=max_mbps, absolute_max_mbps=absolute_max)

    @staticmethod
    def validate_link(link: WanLink) -> List[str]:
        """Return a list of configuration problems (empty when valid)"""
        errors = []

        if not link.link_id:
            errors.append("id is required")

        for direction in Direction:
            bounds = link.bounds(direction)
            name = direction.value
            if bounds.min_mbps <= 0:
                errors.append(f"{name}.min_mbps must be greater than 0")
            if bounds.min_mbps > bounds.max_mbps:
                errors.append(f"{name}.min_mbps must not exceed {name}.max_mbps")
            if not (bounds.min_mbps <= bounds.absolute_max_mbps <= bounds.max_mbps):
                errors.append(f"{name}.absolute_max_mbps must be within [min_mbps, max_mbps]")

        if not link.ping_target_host:
            errors.append("ping_target_host is required")
        if link.overhead_multiplier < 1.0 or link.overhead_multiplier > 1.2:
            errors.append("overhead_multiplier should be between 1.0 and 1.2 (0-20% overhead)")
        if not (0 < link.adjustment_cap_fraction <= 1.0):
            errors.append("adjustment_cap_fraction must be in (0, 1]")
        if not (0 < link.blend_threshold_fraction <= 1.0):
            errors.append("blend_threshold_fraction must be in (0, 1]")
        for name in ('blend_weight_within', 'blend_weight_below', 'drift_fraction'):
            if not (0.0 <= getattr(link, name) <= 1.0):
                errors.append(f"{name} must be in [0, 1]")
        if link.baseline_latency_ms <= 0:
            errors.append("baseline_latency_ms must be greater than 0")
        if link.latency_threshold_ms <= 0:
            errors.append("latency_threshold_ms must be greater than 0")
        if not (0 < link.decrease_factor < 1):
            errors.append("decrease_factor must be in (0, 1)")
        if link.increase_factor <= 1:
            errors.append("increase_factor must be greater than 1")
        if link.max_recovery_exponent < 1:
            errors.append("max_recovery_exponent must be at least 1")
        if link.ping_count < 1:
            errors.append("ping_count must be at least 1")

        return errors

    @staticmethod
    def validate(config: SystemConfig) -> bool:
        """Validate global configuration consistency"""

        if not config.links and not config.link_errors:
            logger.error("No WAN links defined")
            return False

        if config.control.correction_interval_seconds <= 0:
            logger.error("correction_interval_seconds must be > 0")
            return False

        if config.control.lease_timeout_seconds <= 0:
            logger.error("lease_timeout_seconds must be > 0")
            return False

        try:
            for entry in config.control.learning_schedule:
                parse_schedule_time(entry)
        except ConfigurationError as e:
            logger.error(str(e))
            return False

        valid_executors = ['tc', 'http']
        if config.gateway.executor not in valid_executors:
            logger.error(f"Invalid gateway executor {config.gateway.executor}")
            return False

        if config.gateway.executor == 'http' and not config.gateway.endpoint:
            logger.error("gateway.endpoint is required for the http executor")
            return False

        seen = set()
        for link in config.links:
            if link.link_id in seen:
                logger.error(f"Duplicate link id {link.link_id}")
                return False
            seen.add(link.link_id)

        logger.info("Configuration validation passed")
        return True


class ConfigProvider:
    """Supplies WanLink configuration; consulted at the start of every cycle"""

    def get_control(self) -> ControlConfig:
        raise NotImplementedError

    def get_link_ids(self) -> List[str]:
        raise NotImplementedError

    def get_link(self, link_id: str) -> Optional[WanLink]:
        """
        Current configuration for a link.

        Returns None when the link has been removed. Raises
        ConfigurationError when the entry exists but is invalid.
        """
        raise NotImplementedError


def _checked(link: WanLink) -> WanLink:
    errors = ConfigLoader.validate_link(link)
    if errors:
        raise ConfigurationError("; ".join(errors))
    return link


class YamlConfigProvider(ConfigProvider):
    """
    Reads links from sqm-links.yaml.

    The file is parsed again whenever its modification time changes, so an
    edit is picked up by the next cycle.
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        self.config_path = config_path
        self._lock = threading.Lock()
        self._cached: Optional[SystemConfig] = None
        self._cached_mtime: Optional[float] = None

    def _load(self) -> SystemConfig:
        try:
            mtime = os.stat(self.config_path).st_mtime
            with self._lock:
                if self._cached is not None and mtime == self._cached_mtime:
                    return self._cached
            config = ConfigLoader.load(self.config_path)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read {self.config_path}: {e}")

        with self._lock:
            self._cached = config
            self._cached_mtime = mtime
        return config

    def get_control(self) -> ControlConfig:
        control = self._load().control
        for entry in control.learning_schedule:
            parse_schedule_time(entry)
        return control

    def get_link_ids(self) -> List[str]:
        config = self._load()
        return [link.link_id for link in config.links] + list(config.link_errors)

    def get_link(self, link_id: str) -> Optional[WanLink]:
        config = self._load()
        if link_id in config.link_errors:
            raise ConfigurationError(config.link_errors[link_id])
        for link in config.links:
            if link.link_id == link_id:
                return _checked(link)
        return None


class StaticConfigProvider(ConfigProvider):
    """In-memory provider; links can be replaced at runtime"""

    def __init__(self, links: List[WanLink], control: Optional[ControlConfig] = None):
        self._lock = threading.Lock()
        self._links = {link.link_id: link for link in links}
        self._control = control or ControlConfig()

    def get_control(self) -> ControlConfig:
        return self._control

    def get_link_ids(self) -> List[str]:
        with self._lock:
            return list(self._links)

    def get_link(self, link_id: str) -> Optional[WanLink]:
        with self._lock:
            link = self._links.get(link_id)
        if link is None:
            return None
        return _checked(replace(link))

    def set_link(self, link: WanLink):
        with self._lock:
            self._links[link.link_id] = link

    def remove_link(self, link_id: str):
        with self._lock:
            self._links.pop(link_id, None)
