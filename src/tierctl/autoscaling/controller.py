"""Autoscaling Controller - target-tracking loop for one scalable group.

Philosophy:
- One controller per group, on its own thread
- Cooperative wait between evaluations (``Event.wait``), never busy polling
- Never scale on missing data: a metric that cannot be read holds capacity
- All capacity changes go through the Reconciler's capacity setter, which
  serializes with user applies on the same group

State machine: Idle -> Evaluating -> Scaling -> Cooling -> Idle

Public API (Studs):
    AutoscalingController - Evaluate a policy and drive group capacity
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from tierctl.autoscaling.models import ControllerPhase, ScalingDecision, TargetTrackingPolicy
from tierctl.autoscaling.policy import TargetTrackingScaler
from tierctl.autoscaling.sources import HealthProbe, MetricSource
from tierctl.config import AutoscalingConfig
from tierctl.engine.reconciler import Reconciler
from tierctl.errors import MetricUnavailableError, TierctlError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AutoscalingController:
    """Keep one group's metric near its target value.

    Example:
        >>> controller = AutoscalingController(reconciler, policy, metrics)
        >>> controller.evaluate_once()  # single evaluation, e.g. from tests
        >>> controller.start()          # background loop
        >>> controller.stop()
    """

    def __init__(
        self,
        reconciler: Reconciler,
        policy: TargetTrackingPolicy,
        metric_source: MetricSource,
        health_probe: HealthProbe | None = None,
        config: AutoscalingConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize controller.

        Args:
            reconciler: Reconciler owning the group's capacity setter
            policy: Target-tracking policy for the group
            metric_source: Source of per-member metric values
            health_probe: Source of member health (None = all healthy)
            config: Evaluation interval and cooldowns
            clock: Current time (injectable for tests)
        """
        self.reconciler = reconciler
        self.policy = policy
        self.metric_source = metric_source
        self.health_probe = health_probe
        self.config = config or AutoscalingConfig()
        self.clock = clock

        self.phase = ControllerPhase.IDLE
        self.last_scale_out_at: datetime | None = None
        self.last_change_at: datetime | None = None
        self.last_decision: ScalingDecision | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def group_id(self) -> str:
        return self.policy.group_id

    def _set_phase(self, phase: ControllerPhase) -> None:
        if phase != self.phase:
            logger.debug(f"{self.group_id}: {self.phase.value} -> {phase.value}")
            self.phase = phase

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def cooldown_remaining(self, action: str, now: datetime) -> float:
        """Seconds until a scaling action in this direction is allowed.

        Scale-out waits ``scale_out_cooldown`` after the last scale-out.
        Scale-in waits ``scale_in_cooldown`` after the last change in either
        direction, so capacity added under load is not released right away.
        """
        if action == "scale_out":
            since, window = self.last_scale_out_at, self.config.scale_out_cooldown
        elif action == "scale_in":
            since, window = self.last_change_at, self.config.scale_in_cooldown
        else:
            return 0.0
        if since is None:
            return 0.0
        remaining = since + timedelta(seconds=window) - now
        return max(0.0, remaining.total_seconds())

    def _in_any_cooldown(self, now: datetime) -> bool:
        return (
            self.cooldown_remaining("scale_out", now) > 0
            or self.cooldown_remaining("scale_in", now) > 0
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_once(self, now: datetime | None = None) -> ScalingDecision | None:
        """Run one evaluation and apply the resulting capacity change.

        Args:
            now: Evaluation time (default: the controller clock)

        Returns:
            Decision taken, or None when the metric was unavailable

        Raises:
            ConfigError: If the group has not been applied
        """
        now = now or self.clock()
        self._set_phase(ControllerPhase.EVALUATING)
        group = self.reconciler.get_group(self.group_id)

        signals = (
            self.health_probe.health_signals(self.group_id, group.member_ids)
            if self.health_probe
            else []
        )
        unhealthy = TargetTrackingScaler.unhealthy_members(signals)
        eligible = TargetTrackingScaler.eligible_members(group, signals, now)

        try:
            values = self.metric_source.member_metrics(self.group_id, self.policy.metric, eligible)
            observed = TargetTrackingScaler.average_metric(values, eligible)
        except MetricUnavailableError as e:
            logger.warning(
                f"{self.group_id}: {self.policy.metric.value} unavailable, "
                f"holding capacity at {group.desired_capacity}: {e}"
            )
            self._set_phase(ControllerPhase.COOLING if self._in_any_cooldown(now) else ControllerPhase.IDLE)
            return None

        decision = TargetTrackingScaler.calculate_scaling_decision(
            group, self.policy, observed, unhealthy
        )
        logger.debug(
            f"{self.group_id}: {len(eligible)}/{len(group.member_ids)} eligible members, "
            f"{decision.action}: {decision.reason}"
        )

        if decision.action == "maintain":
            self.last_decision = decision
            self._set_phase(ControllerPhase.COOLING if self._in_any_cooldown(now) else ControllerPhase.IDLE)
            return decision

        remaining = self.cooldown_remaining(decision.action, now)
        if remaining > 0:
            logger.info(
                f"{self.group_id}: {decision.action} to {decision.target_capacity} blocked by "
                f"cooldown ({remaining:.0f}s left)"
            )
            held = ScalingDecision(
                action="maintain",
                target_capacity=decision.current_capacity,
                current_capacity=decision.current_capacity,
                observed_value=observed,
                reason=f"In {decision.action} cooldown for {remaining:.0f}s; wanted {decision.target_capacity}",
            )
            self.last_decision = held
            self._set_phase(ControllerPhase.COOLING)
            return held

        self._set_phase(ControllerPhase.SCALING)
        logger.info(
            f"{self.group_id}: {decision.action} {decision.current_capacity} -> "
            f"{decision.target_capacity} ({decision.reason})"
        )
        result = self.reconciler.set_desired_capacity(
            self.group_id, decision.target_capacity, decision.remove_member_ids
        )
        if not result.success:
            logger.warning(
                f"{self.group_id}: capacity change partially failed "
                f"({len(result.failed)} failed, {len(result.skipped)} skipped); "
                "members converge on the next evaluation"
            )

        self.last_change_at = now
        if decision.action == "scale_out":
            self.last_scale_out_at = now
        self.last_decision = decision
        self._set_phase(ControllerPhase.COOLING)
        return decision

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Evaluate every ``evaluation_interval`` seconds until stopped."""
        logger.info(
            f"Autoscaling {self.group_id} on {self.policy.metric.value} "
            f"(target {self.policy.target_value}, every {self.config.evaluation_interval}s)"
        )
        while not self._stop_event.is_set():
            try:
                self.evaluate_once()
            except TierctlError as e:
                logger.error(f"{self.group_id}: evaluation failed: {e}")
                self._set_phase(ControllerPhase.IDLE)
            except Exception as e:
                logger.exception(f"{self.group_id}: unexpected error during evaluation: {e}")
                self._set_phase(ControllerPhase.IDLE)
            self._stop_event.wait(self.config.evaluation_interval)
        self._set_phase(ControllerPhase.IDLE)
        logger.info(f"Autoscaling loop for {self.group_id} stopped")

    def start(self) -> None:
        """Run the loop on a background thread.

        Raises:
            RuntimeError: If the controller is already running
        """
        if self.is_running:
            raise RuntimeError(f"Controller for {self.group_id} is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name=f"autoscale-{self.group_id}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop and wait for the current evaluation to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["AutoscalingController"]
