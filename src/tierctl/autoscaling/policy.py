"""Target-tracking scaling math.

Pure functions with no I/O, so every rule of the control loop can be tested
without threads or clocks.
"""

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime

from tierctl.autoscaling.models import (
    HealthSignal,
    ScalableGroup,
    ScalingDecision,
    TargetTrackingPolicy,
)
from tierctl.errors import MetricUnavailableError

logger = logging.getLogger(__name__)


class TargetTrackingScaler:
    """Make scaling decisions for a scalable group."""

    @classmethod
    def compute_capacity(
        cls,
        current_capacity: int,
        observed_value: float,
        target_value: float,
        min_size: int,
        max_size: int,
    ) -> int:
        """Capacity that brings the metric back to target.

        ``ceil(current_capacity * observed / target)`` clamped to the bounds.

        Args:
            current_capacity: Current desired capacity
            observed_value: Average metric over eligible members
            target_value: Policy target (> 0)
            min_size: Lower bound
            max_size: Upper bound

        Returns:
            int: New capacity

        Raises:
            ValueError: If target_value is not positive or observed_value is negative
        """
        if target_value <= 0:
            raise ValueError("target_value must be positive")
        if observed_value < 0:
            raise ValueError("observed_value cannot be negative")

        # Round first so float noise (e.g. 6.0000000001) does not add a member.
        raw = round(current_capacity * (observed_value / target_value), 6)
        return max(min_size, min(max_size, math.ceil(raw)))

    @classmethod
    def unhealthy_members(cls, signals: Iterable[HealthSignal]) -> set[str]:
        """Members reported unhealthy by any source."""
        return {signal.member_id for signal in signals if not signal.healthy}

    @classmethod
    def eligible_members(
        cls,
        group: ScalableGroup,
        signals: Iterable[HealthSignal],
        now: datetime,
    ) -> list[str]:
        """Members that count toward the metric average.

        A member is eligible when its grace period has elapsed and no health
        source reports it unhealthy.
        """
        unhealthy = cls.unhealthy_members(signals)
        return [
            member_id
            for member_id in group.member_ids
            if member_id not in unhealthy and not group.in_grace_period(member_id, now)
        ]

    @classmethod
    def average_metric(cls, values: Mapping[str, float], eligible: Sequence[str]) -> float:
        """Average metric over eligible members that reported a value.

        Raises:
            MetricUnavailableError: If no eligible member has a datapoint
        """
        datapoints = [float(values[m]) for m in eligible if values.get(m) is not None]
        if not datapoints:
            raise MetricUnavailableError(
                f"No datapoints for {len(eligible)} eligible member(s)"
            )
        return sum(datapoints) / len(datapoints)

    @classmethod
    def select_members_for_removal(
        cls,
        member_ids: Sequence[str],
        count: int,
        unhealthy: Iterable[str] = (),
    ) -> list[str]:
        """Pick members to terminate when scaling in.

        Unhealthy members go first, then the oldest healthy members.

        Args:
            member_ids: Members ordered oldest first
            count: How many to remove
            unhealthy: Member ids currently reported unhealthy

        Returns:
            list: Member ids to remove
        """
        if count <= 0:
            return []
        unhealthy_set = set(unhealthy)
        ordered = [m for m in member_ids if m in unhealthy_set]
        ordered += [m for m in member_ids if m not in unhealthy_set]
        return ordered[:count]

    @classmethod
    def calculate_scaling_decision(
        cls,
        group: ScalableGroup,
        policy: TargetTrackingPolicy,
        observed_value: float,
        unhealthy: Iterable[str] = (),
    ) -> ScalingDecision:
        """Calculate scaling decision for an observed metric value.

        Cooldowns are not considered here; the controller applies them.
        """
        target = cls.compute_capacity(
            group.desired_capacity,
            observed_value,
            policy.target_value,
            group.min_size,
            group.max_size,
        )
        current = group.desired_capacity
        ratio = f"{policy.metric.value}={observed_value:.2f} target={policy.target_value:.2f}"

        if target > current:
            return ScalingDecision(
                action="scale_out",
                target_capacity=target,
                current_capacity=current,
                observed_value=observed_value,
                reason=f"Need {target - current} more member(s): {ratio}",
            )
        if target < current:
            remove = cls.select_members_for_removal(group.member_ids, current - target, unhealthy)
            return ScalingDecision(
                action="scale_in",
                target_capacity=target,
                current_capacity=current,
                observed_value=observed_value,
                reason=f"Can remove {current - target} member(s): {ratio}",
                remove_member_ids=remove,
            )
        return ScalingDecision(
            action="maintain",
            target_capacity=current,
            current_capacity=current,
            observed_value=observed_value,
            reason=f"Current capacity ({current}) is on target: {ratio}",
        )


__all__ = ["TargetTrackingScaler"]
