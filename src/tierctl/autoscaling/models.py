"""Data models for the autoscaling controller."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal


class MetricType(Enum):
    """Metrics a target-tracking policy can follow."""

    CPU_UTILIZATION = "cpu_utilization"
    REQUEST_COUNT_PER_TARGET = "request_count_per_target"
    NETWORK_IN = "network_in"
    NETWORK_OUT = "network_out"


class HealthSource(Enum):
    """Where a health signal came from."""

    LOAD_BALANCER = "load-balancer"
    INSTANCE_PROBE = "instance-probe"


class ControllerPhase(Enum):
    """Per-group controller state machine: Idle -> Evaluating -> Scaling -> Cooling -> Idle."""

    IDLE = "idle"
    EVALUATING = "evaluating"
    SCALING = "scaling"
    COOLING = "cooling"


@dataclass(frozen=True)
class HealthSignal:
    """Health of one group member as reported by one source. Not persisted."""

    member_id: str
    healthy: bool
    source: HealthSource


@dataclass(frozen=True)
class TargetTrackingPolicy:
    """Keep ``metric`` averaged over the group near ``target_value``."""

    group_id: str
    metric: MetricType = MetricType.CPU_UTILIZATION
    target_value: float = 50.0

    def __post_init__(self):
        """Validate policy."""
        if self.target_value <= 0:
            raise ValueError("target_value must be positive")
        if not self.group_id:
            raise ValueError("group_id cannot be empty")


@dataclass
class ScalableGroup:
    """Capacity view of an autoscaling group.

    Attributes:
        group_id: Resource id of the group
        desired_capacity: Capacity the group should converge to
        min_size: Lower bound
        max_size: Upper bound
        member_ids: Member resource ids, oldest first
        health_check_grace_period: Seconds after launch during which a member
            is excluded from health and metric evaluation
        launched_at: member id -> launch time
    """

    group_id: str
    desired_capacity: int
    min_size: int
    max_size: int
    member_ids: list[str] = field(default_factory=list)
    health_check_grace_period: float = 300.0
    launched_at: dict[str, datetime] = field(default_factory=dict)

    def __post_init__(self):
        """Validate bounds."""
        if self.min_size < 0:
            raise ValueError("min_size cannot be negative")
        if self.max_size < self.min_size:
            raise ValueError("max_size must be >= min_size")
        if not self.min_size <= self.desired_capacity <= self.max_size:
            raise ValueError(
                f"desired_capacity {self.desired_capacity} outside "
                f"[{self.min_size}, {self.max_size}]"
            )
        if self.health_check_grace_period < 0:
            raise ValueError("health_check_grace_period cannot be negative")

    def clamp(self, capacity: int) -> int:
        """Clamp a capacity into [min_size, max_size]."""
        return max(self.min_size, min(self.max_size, capacity))

    def in_grace_period(self, member_id: str, now: datetime) -> bool:
        """Whether a member launched less than the grace period ago."""
        launched = self.launched_at.get(member_id)
        if launched is None:
            return False
        return now - launched < timedelta(seconds=self.health_check_grace_period)


@dataclass
class ScalingDecision:
    """Decision about a scaling action."""

    action: Literal["scale_out", "scale_in", "maintain"]
    target_capacity: int
    current_capacity: int
    reason: str
    observed_value: float | None = None
    remove_member_ids: list[str] = field(default_factory=list)


__all__ = [
    "ControllerPhase",
    "HealthSignal",
    "HealthSource",
    "MetricType",
    "ScalableGroup",
    "ScalingDecision",
    "TargetTrackingPolicy",
]
