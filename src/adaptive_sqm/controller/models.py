#!/usr/bin/env python3
"""
Controller Data Model
Value objects shared by the baseline learner, the latency controller and the
orchestrator, plus the numeric rounding policy for applied ceilings.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional


class Direction(str, Enum):
    """Traffic direction of a WAN link"""
    DOWNLOAD = "download"
    UPLOAD = "upload"


class ControllerMode(str, Enum):
    """Which loop currently owns a link"""
    IDLE = "idle"
    LEARNING = "learning"
    CORRECTING = "correcting"


class LatencyAction(str, Enum):
    """Terminal states of one latency correction cycle"""
    HOLDING = "holding"
    BACKING_OFF = "backing_off"
    RECOVERING = "recovering"


class CycleOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp value to [lower, upper]; lower wins if the range is inverted"""
    return max(lower, min(upper, value))


def truncate_mbps(value: float) -> int:
    """Whole-Mbps value used for learned ceilings (fraction dropped)"""
    return int(math.floor(value + 1e-9))


def round_tenth(value: float) -> float:
    """Round half-up to 0.1 Mbps"""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class BaselineSlot:
    """Learned throughput for one (link, direction, day-of-week, hour)"""
    link_id: str
    direction: Direction
    day_of_week: int  # 0 = Monday
    hour: int
    mbps: float
    sample_count: int = 1
    last_updated: Optional[datetime] = None

    @property
    def key(self):
        return (self.link_id, self.direction, self.day_of_week, self.hour)


@dataclass
class LatencySample:
    """One latency observation; lives only for the current cycle"""
    timestamp: datetime
    observed_ms: float
    loss_pct: float
    deviation_ms: float


@dataclass(frozen=True)
class AppliedRateCommand:
    """Ceiling command handed to a GatewayExecutor"""
    link_id: str
    download_mbps: float
    upload_mbps: float
    timestamp: datetime

    def same_rates(self, other: Optional["AppliedRateCommand"]) -> bool:
        return (
            other is not None
            and other.link_id == self.link_id
            and other.download_mbps == self.download_mbps
            and other.upload_mbps == self.upload_mbps
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "link_id": self.link_id,
            "download_mbps": self.download_mbps,
            "upload_mbps": self.upload_mbps,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ControllerState:
    """
    Live control state of one link.

    download_mbps/upload_mbps always hold the last ceiling the gateway
    acknowledged, never an attempted one.
    """
    link_id: str
    download_mbps: Optional[float] = None
    upload_mbps: Optional[float] = None
    recovery_download_mbps: Optional[float] = None
    recovery_upload_mbps: Optional[float] = None
    backoff_exponent: int = 0
    recovery_exponent: int = 0
    backoff_anchor_download_mbps: Optional[float] = None
    backoff_anchor_upload_mbps: Optional[float] = None
    last_latency_ms: Optional[float] = None
    last_measurement_at: Optional[datetime] = None
    last_adjustment_at: Optional[datetime] = None
    last_adjustment_reason: Optional[str] = None
    last_action: Optional[LatencyAction] = None
    mode: ControllerMode = ControllerMode.IDLE
    # Bumped on every acknowledged ceiling; orders writers that share one store
    revision: int = 0

    @property
    def has_ceiling(self) -> bool:
        return self.download_mbps is not None and self.upload_mbps is not None

    def ceiling(self, direction: Direction) -> Optional[float]:
        return self.download_mbps if direction == Direction.DOWNLOAD else self.upload_mbps

    def recovery_ceiling(self, direction: Direction) -> Optional[float]:
        if direction == Direction.DOWNLOAD:
            return self.recovery_download_mbps
        return self.recovery_upload_mbps

    def set_recovery_ceiling(self, direction: Direction, value: Optional[float]):
        if direction == Direction.DOWNLOAD:
            self.recovery_download_mbps = value
        else:
            self.recovery_upload_mbps = value

    def backoff_anchor(self, direction: Direction) -> Optional[float]:
        if direction == Direction.DOWNLOAD:
            return self.backoff_anchor_download_mbps
        return self.backoff_anchor_upload_mbps

    def set_backoff_anchor(self, direction: Direction, value: Optional[float]):
        if direction == Direction.DOWNLOAD:
            self.backoff_anchor_download_mbps = value
        else:
            self.backoff_anchor_upload_mbps = value

    def record_applied(self, command: AppliedRateCommand, reason: str):
        """Record a ceiling the gateway acknowledged"""
        self.download_mbps = command.download_mbps
        self.upload_mbps = command.upload_mbps
        self.last_adjustment_at = command.timestamp
        self.last_adjustment_reason = reason
        self.revision += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "link_id": self.link_id,
            "download_mbps": self.download_mbps,
            "upload_mbps": self.upload_mbps,
            "recovery_download_mbps": self.recovery_download_mbps,
            "recovery_upload_mbps": self.recovery_upload_mbps,
            "backoff_exponent": self.backoff_exponent,
            "recovery_exponent": self.recovery_exponent,
            "backoff_anchor_download_mbps": self.backoff_anchor_download_mbps,
            "backoff_anchor_upload_mbps": self.backoff_anchor_upload_mbps,
            "last_latency_ms": self.last_latency_ms,
            "last_measurement_at": _dt_to_str(self.last_measurement_at),
            "last_adjustment_at": _dt_to_str(self.last_adjustment_at),
            "last_adjustment_reason": self.last_adjustment_reason,
            "last_action": self.last_action.value if self.last_action else None,
            "mode": self.mode.value,
            "revision": self.revision,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ControllerState":
        action = data.get("last_action")
        return ControllerState(
            link_id=data["link_id"],
            download_mbps=data.get("download_mbps"),
            upload_mbps=data.get("upload_mbps"),
            recovery_download_mbps=data.get("recovery_download_mbps"),
            recovery_upload_mbps=data.get("recovery_upload_mbps"),
            backoff_exponent=int(data.get("backoff_exponent", 0)),
            recovery_exponent=int(data.get("recovery_exponent", 0)),
            backoff_anchor_download_mbps=data.get("backoff_anchor_download_mbps"),
            backoff_anchor_upload_mbps=data.get("backoff_anchor_upload_mbps"),
            last_latency_ms=data.get("last_latency_ms"),
            last_measurement_at=_dt_from_str(data.get("last_measurement_at")),
            last_adjustment_at=_dt_from_str(data.get("last_adjustment_at")),
            last_adjustment_reason=data.get("last_adjustment_reason"),
            last_action=LatencyAction(action) if action else None,
            # A persisted state is never mid-cycle after a restart
            mode=ControllerMode.IDLE,
            revision=int(data.get("revision", 0)),
        )


@dataclass
class CycleResult:
    """Outcome of one learning or correction cycle"""
    link_id: str
    outcome: CycleOutcome
    reason: str
    download_mbps: Optional[float] = None
    upload_mbps: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.outcome == CycleOutcome.APPLIED
