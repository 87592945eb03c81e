"""Autoscaling service - supervise one controller per scaling policy.

Philosophy:
- Long-running foreground process, stopped by SIGINT/SIGTERM
- Controllers are independent; one group's failure never stops another

Public API (Studs):
    AutoscalingService - Start, stop and status of all controllers
    ControllerStatus - Snapshot of one controller
"""

import logging
import signal
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from tierctl.autoscaling.controller import AutoscalingController
from tierctl.autoscaling.models import ControllerPhase, TargetTrackingPolicy
from tierctl.autoscaling.sources import HealthProbe, MetricSource
from tierctl.config import AutoscalingConfig
from tierctl.engine.reconciler import Reconciler
from tierctl.errors import ConfigError, TierctlError

logger = logging.getLogger(__name__)


@dataclass
class ControllerStatus:
    """Current status of one controller."""

    group_id: str
    phase: ControllerPhase
    running: bool
    last_action: str | None = None
    last_change_at: datetime | None = None


class AutoscalingService:
    """Run the autoscaling controllers of a stack.

    Example:
        >>> service = AutoscalingService(reconciler, policies, metrics)
        >>> service.run_forever()  # blocks until SIGINT/SIGTERM
    """

    def __init__(
        self,
        reconciler: Reconciler,
        policies: Sequence[TargetTrackingPolicy],
        metric_source: MetricSource,
        health_probe: HealthProbe | None = None,
        config: AutoscalingConfig | None = None,
    ):
        """Initialize service.

        Raises:
            ConfigError: If two policies target the same group
        """
        seen: set[str] = set()
        for policy in policies:
            if policy.group_id in seen:
                raise ConfigError(f"More than one scaling policy for group '{policy.group_id}'")
            seen.add(policy.group_id)

        self.controllers = [
            AutoscalingController(reconciler, policy, metric_source, health_probe, config)
            for policy in policies
        ]
        self._shutdown = threading.Event()

    def start(self) -> None:
        """Start every controller thread."""
        for controller in self.controllers:
            controller.start()
        logger.info(f"Started {len(self.controllers)} autoscaling controller(s)")

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop every controller and wait for it to finish."""
        logger.info("Stopping autoscaling controllers...")
        self._shutdown.set()
        for controller in self.controllers:
            controller.stop(timeout)

    def evaluate_all(self, now: datetime | None = None) -> None:
        """Run one evaluation of every controller in the calling thread."""
        for controller in self.controllers:
            try:
                controller.evaluate_once(now)
            except TierctlError as e:
                logger.error(f"{controller.group_id}: {e}")

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self._shutdown.set()

    def run_forever(self) -> None:
        """Start controllers and block until a shutdown signal."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)
        self.start()
        try:
            self._shutdown.wait()
        finally:
            self.stop()

    def get_status(self) -> list[ControllerStatus]:
        """Status snapshot of every controller."""
        return [
            ControllerStatus(
                group_id=c.group_id,
                phase=c.phase,
                running=c.is_running,
                last_action=c.last_decision.action if c.last_decision else None,
                last_change_at=c.last_change_at,
            )
            for c in self.controllers
        ]


__all__ = ["AutoscalingService", "ControllerStatus"]
