"""Reconciler - entry point that ties planner, executor and state together.

Philosophy:
- Plan is pure: computing a plan never calls the provider
- Apply is incremental: only changed items touch the provider
- One writer per group: user applies and controller capacity changes on the
  same autoscaling group are serialized through a per-group lock, held across
  processes that share a state file
- Stale plans are rejected: a plan records each group's capacity version and
  apply refuses it when the group changed in between

Public API (Studs):
    Reconciler - plan / apply / destroy / set_desired_capacity
"""

import logging
import threading
from collections.abc import Generator, Iterable, Sequence
from contextlib import ExitStack, contextmanager

from tierctl.autoscaling.models import ScalableGroup
from tierctl.config import EngineConfig
from tierctl.engine.executor import PlanExecutor, ProgressCallback
from tierctl.engine.models import ApplyResult, Plan, Resource
from tierctl.engine.planner import DEFAULT_GRACE_PERIOD, Planner, group_bounds
from tierctl.engine.state_store import StateStore
from tierctl.errors import ConfigError, StalePlanError
from tierctl.providers.base import ResourceProvider
from tierctl.retry_handler import RetryPolicy
from tierctl.schema import ResourceType

logger = logging.getLogger(__name__)

# Another process may hold a group lock for a whole apply.
GROUP_LOCK_TIMEOUT = 600.0


class Reconciler:
    """Converge provider resources to a desired configuration."""

    def __init__(
        self,
        provider: ResourceProvider,
        state: StateStore,
        executor: PlanExecutor | None = None,
        group_lock_timeout: float = GROUP_LOCK_TIMEOUT,
    ):
        """Initialize reconciler.

        Args:
            provider: Resource provider
            state: State Store
            executor: Plan executor (default: one with default settings)
            group_lock_timeout: Seconds to wait for another process holding a group lock
        """
        self.provider = provider
        self.state = state
        self.planner = Planner(state)
        self.executor = executor or PlanExecutor(provider, state)
        self._group_locks: dict[str, threading.RLock] = {}
        self._group_locks_guard = threading.Lock()
        self._group_lock_depth: dict[str, int] = {}
        self.group_lock_timeout = group_lock_timeout

    @classmethod
    def from_config(
        cls, provider: ResourceProvider, config: EngineConfig, state: StateStore | None = None
    ) -> "Reconciler":
        """Build a reconciler from engine configuration."""
        state = state if state is not None else StateStore(config.state_path)
        executor = PlanExecutor(
            provider,
            state,
            retry_policy=RetryPolicy.from_engine_config(config),
            max_workers=config.max_workers,
            ready_timeout=config.ready_timeout,
        )
        return cls(provider, state, executor)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def group_lock(self, group_id: str) -> Generator[None, None, None]:
        """Serialize changes to one autoscaling group.

        Reentrant within a thread. The outermost acquisition also takes the
        group's file lock next to the state file so other processes wait too.

        Raises:
            StateLockTimeoutError: If another process holds the group too long
        """
        with self._group_locks_guard:
            lock = self._group_locks.setdefault(group_id, threading.RLock())
        with lock:
            depth = self._group_lock_depth.get(group_id, 0)
            self._group_lock_depth[group_id] = depth + 1
            try:
                if depth:
                    yield
                else:
                    with self.state.exclusive(f"group-{group_id}", self.group_lock_timeout):
                        yield
            finally:
                self._group_lock_depth[group_id] -= 1

    @contextmanager
    def _lock_groups(self, group_ids: Iterable[str]) -> Generator[None, None, None]:
        # Sorted acquisition so two callers never deadlock on each other.
        with ExitStack() as stack:
            for group_id in sorted(set(group_ids)):
                stack.enter_context(self.group_lock(group_id))
            yield

    def _groups_touched(self, plan: Plan) -> set[str]:
        groups: set[str] = set()
        for item in plan.changes():
            if item.resource_type == ResourceType.AUTOSCALING_GROUP:
                groups.add(item.resource_id)
            elif item.resource is not None and item.resource.managed_by:
                groups.add(item.resource.managed_by)
            else:
                record = self.state.get(item.resource_id)
                if record is not None and record.managed_by:
                    groups.add(record.managed_by)
        return groups

    # ------------------------------------------------------------------
    # Plan / apply
    # ------------------------------------------------------------------

    def plan(self, desired: Sequence[Resource]) -> Plan:
        """Compute a plan for the desired resources (no provider calls).

        Raises:
            ConfigError: Invalid references, cycles or bounds
        """
        self.state.reload()
        return self.planner.plan(desired)

    def plan_destroy(self) -> Plan:
        """Compute a plan that destroys every tracked resource."""
        self.state.reload()
        return self.planner.plan_destroy()

    def apply(
        self,
        plan: Plan,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ApplyResult:
        """Apply a previously computed plan.

        Holds the lock of every autoscaling group the plan touches or saw,
        then re-reads state and refuses the plan if any of those groups
        changed since it was computed.

        Raises:
            StalePlanError: If a group's capacity or members changed after planning
        """
        if not plan.has_changes:
            logger.info("No changes. Infrastructure is up-to-date.")
            return ApplyResult()
        with self._lock_groups(self._groups_touched(plan) | set(plan.group_versions)):
            self.state.reload()
            self._check_group_versions(plan)
            return self.executor.apply(plan, cancel_event=cancel_event, progress=progress)

    def _check_group_versions(self, plan: Plan) -> None:
        records = self.state.all()
        for group_id, version in plan.group_versions.items():
            current = Planner.group_version(group_id, records)
            if current != version:
                logger.warning(f"{group_id}: planned at {version!r}, now {current!r}")
                raise StalePlanError(group_id)

    def reconcile(
        self,
        desired: Sequence[Resource],
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> tuple[Plan, ApplyResult]:
        """Plan and apply in one step, holding group locks across both."""
        declared_groups = [r.id for r in desired if r.type == ResourceType.AUTOSCALING_GROUP]
        with self._lock_groups(declared_groups):
            plan = self.plan(desired)
            return plan, self.apply(plan, cancel_event=cancel_event, progress=progress)

    def destroy(
        self, cancel_event: threading.Event | None = None, progress: ProgressCallback | None = None
    ) -> tuple[Plan, ApplyResult]:
        """Destroy every tracked resource, dependents first."""
        plan = self.plan_destroy()
        return plan, self.apply(plan, cancel_event=cancel_event, progress=progress)

    # ------------------------------------------------------------------
    # Capacity (autoscaling controller path)
    # ------------------------------------------------------------------

    def get_group(self, group_id: str) -> ScalableGroup:
        """Capacity view of an applied autoscaling group.

        Raises:
            ConfigError: If the group is not in the State Store
        """
        self.state.reload()
        record = self.state.get(group_id)
        if record is None or record.type != ResourceType.AUTOSCALING_GROUP:
            raise ConfigError(f"Autoscaling group '{group_id}' has not been applied")
        attributes = record.last_applied_attributes
        min_size, max_size = group_bounds(group_id, attributes)
        members = self.state.members_of(group_id)
        return ScalableGroup(
            group_id=group_id,
            desired_capacity=int(attributes.get("desired_capacity", min_size)),
            min_size=min_size,
            max_size=max_size,
            member_ids=[m.resource_id for m in members],
            health_check_grace_period=float(
                attributes.get("health_check_grace_period", DEFAULT_GRACE_PERIOD)
            ),
            launched_at={m.resource_id: m.created_at for m in members},
        )

    def set_desired_capacity(
        self,
        group_id: str,
        capacity: int,
        remove_member_ids: Iterable[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        """Change a group's desired capacity and converge its members.

        Args:
            group_id: Autoscaling group id
            capacity: New desired capacity, within the group's bounds
            remove_member_ids: Members to terminate first when scaling in

        Returns:
            ApplyResult of the capacity change

        Raises:
            ConfigError: Unknown group or capacity outside bounds
        """
        with self.group_lock(group_id):
            self.state.reload()
            plan = self.planner.plan_capacity(group_id, capacity, remove_member_ids)
            if not plan.has_changes:
                return ApplyResult()
            logger.info(f"Setting desired capacity of {group_id} to {capacity}")
            return self.executor.apply(plan, cancel_event=cancel_event)


__all__ = ["Reconciler"]
