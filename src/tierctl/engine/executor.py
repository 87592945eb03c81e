"""Plan executor - apply plan items against a provider.

Items run on a bounded worker pool. An item starts only once every item it
depends on has succeeded; when an item fails, everything waiting on it is
skipped while unrelated branches keep going. State is written per resource
as soon as that resource's provider call completes, so an interrupted apply
leaves an accurate record of what exists.

Create-before-destroy replacements create the new instance first and mark
the old one deposed. Deposed instances are destroyed in a deferred phase,
and only when every dependent of the replaced resource succeeded; otherwise
they stay deposed and the next plan destroys them.

Public API (Studs):
    PlanExecutor - Apply a Plan and report per-item results
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from tierctl.engine.graph import resolve_placeholders
from tierctl.engine.models import (
    ApplyResult,
    ItemResult,
    ItemStatus,
    Plan,
    PlanAction,
    PlanItem,
    StateRecord,
)
from tierctl.engine.state_store import StateStore
from tierctl.errors import ProviderError, TierctlError
from tierctl.providers.base import ResourceProvider
from tierctl.retry_handler import RetryPolicy, call_with_retry, safe_error_message
from tierctl.schema import ResourceType

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ItemResult], None]


class _AttemptCounter:
    """Count provider calls made through call_with_retry."""

    def __init__(self):
        self.count = 0

    def wrap(self, func: Callable[[], Any]) -> Callable[[], Any]:
        def counted():
            self.count += 1
            return func()

        return counted


class PlanExecutor:
    """Apply plans with bounded concurrency.

    Example:
        >>> executor = PlanExecutor(MemoryProvider(), StateStore(), max_workers=4)
        >>> result = executor.apply(plan)
        >>> result.failed
        []
    """

    def __init__(
        self,
        provider: ResourceProvider,
        state: StateStore,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        ready_timeout: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize executor.

        Args:
            provider: Provider that performs the operations
            state: State Store updated after each provider call
            retry_policy: Backoff for transient provider errors
            max_workers: Maximum items applied concurrently
            ready_timeout: Seconds to wait for a created resource to become ready
            sleep: Sleep function used for backoff and polling (injectable for tests)
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.provider = provider
        self.state = state
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self.ready_timeout = ready_timeout
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def apply(
        self,
        plan: Plan,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ApplyResult:
        """Apply every change in a plan.

        Args:
            plan: Plan to apply
            cancel_event: When set, no further items are started; items
                already running finish and the rest are reported cancelled
            progress: Called with each item result as it completes

        Returns:
            ApplyResult with exactly one result per changed item, plus a
            result per deferred destroy of a deposed instance
        """
        cancel_event = cancel_event or threading.Event()
        result = ApplyResult(started_at=datetime.now(UTC))
        items = {item.key: item for item in plan.changes()}
        # Dependencies outside the change set are already satisfied.
        waits_on = {
            key: {dep for dep in plan.dependencies.get(key, ()) if dep in items} for key in items
        }
        order = list(items)
        status: dict[str, ItemStatus] = {}
        deposed: dict[str, str] = {}  # item key -> provider id deposed by a CBD replace

        def finish(item_result: ItemResult, key: str) -> None:
            status[key] = item_result.status
            result.results.append(item_result)
            if progress:
                progress(item_result)

        logger.info(f"Applying {len(items)} change(s) with up to {self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            running: dict[Future, str] = {}
            while True:
                cancelled = cancel_event.is_set()
                for key in order:
                    if key in status or key in running.values():
                        continue
                    item = items[key]
                    blocked = [
                        dep
                        for dep in waits_on[key]
                        if status.get(dep) in (ItemStatus.FAILED, ItemStatus.SKIPPED)
                    ]
                    if blocked:
                        logger.warning(f"Skipping {key}: dependency {blocked[0]} did not succeed")
                        finish(
                            ItemResult(
                                item.resource_id,
                                item.action,
                                ItemStatus.SKIPPED,
                                error=f"dependency {blocked[0]} did not succeed",
                                deposed_id=item.deposed_id,
                            ),
                            key,
                        )
                    elif cancelled:
                        finish(
                            ItemResult(
                                item.resource_id,
                                item.action,
                                ItemStatus.CANCELLED,
                                deposed_id=item.deposed_id,
                            ),
                            key,
                        )

                if not cancelled:
                    for key in order:
                        if len(running) >= self.max_workers:
                            break
                        if key in status or key in running.values():
                            continue
                        if all(status.get(dep) == ItemStatus.SUCCEEDED for dep in waits_on[key]):
                            running[pool.submit(self._run_item, items[key])] = key

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    item_result, old_id = future.result()
                    if old_id:
                        deposed[key] = old_id
                    finish(item_result, key)

        if deposed:
            self._destroy_deposed(items, waits_on, status, deposed, cancel_event, finish)

        result.cancelled = cancel_event.is_set()
        result.completed_at = datetime.now(UTC)
        logger.info(
            f"Apply finished in {result.get_elapsed_time():.1f}s: "
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped, {len(result.cancelled_items)} cancelled"
        )
        return result

    def _destroy_deposed(
        self,
        items: dict[str, PlanItem],
        waits_on: dict[str, set[str]],
        status: dict[str, ItemStatus],
        deposed: dict[str, str],
        cancel_event: threading.Event,
        finish: Callable[[ItemResult, str], None],
    ) -> None:
        """Destroy instances deposed during this apply, dependents first."""
        dependents: dict[str, set[str]] = {key: set() for key in items}
        for key, deps in waits_on.items():
            for dep in deps:
                dependents[dep].add(key)

        def descendants(key: str) -> set[str]:
            seen: set[str] = set()
            stack = list(dependents[key])
            while stack:
                current = stack.pop()
                if current not in seen:
                    seen.add(current)
                    stack.extend(dependents[current])
            return seen

        for key in reversed(list(items)):
            old_id = deposed.get(key)
            if old_id is None:
                continue
            item = items[key]
            unfinished = [d for d in descendants(key) if status.get(d) != ItemStatus.SUCCEEDED]
            if unfinished or cancel_event.is_set():
                reason = "apply cancelled" if cancel_event.is_set() else f"{unfinished[0]} did not succeed"
                logger.warning(
                    f"Keeping deposed {item.resource_type.value} {old_id} of {item.resource_id}: {reason}"
                )
                continue
            destroy = replace(
                item, action=PlanAction.DESTROY, resource=None, deposed_id=old_id, diff=()
            )
            item_result, _ = self._run_item(destroy)
            finish(item_result, destroy.key)

    # ------------------------------------------------------------------
    # Item execution
    # ------------------------------------------------------------------

    def _run_item(self, item: PlanItem) -> tuple[ItemResult, str | None]:
        """Apply one item; never raises.

        Returns:
            (result, provider id deposed by a create-before-destroy replace)
        """
        counter = _AttemptCounter()
        started = time.monotonic()
        deposed_id = None
        label = f"{item.action.value} {item.resource_type.value} {item.resource_id}"
        logger.info(f"Starting {label}")
        try:
            with self.state.resource_lock(item.resource_id):
                if item.action == PlanAction.CREATE:
                    self._create(item, counter)
                elif item.action == PlanAction.UPDATE:
                    self._update(item, counter)
                elif item.action == PlanAction.REPLACE:
                    deposed_id = self._replace(item, counter)
                elif item.action == PlanAction.DESTROY:
                    self._destroy(item, counter)
        except TierctlError as e:
            code = e.code if isinstance(e, ProviderError) else type(e).__name__
            logger.error(f"Failed to {label}: {safe_error_message(e)}")
            return (
                ItemResult(
                    item.resource_id,
                    item.action,
                    ItemStatus.FAILED,
                    error=safe_error_message(e),
                    error_code=code,
                    attempts=counter.count,
                    duration_seconds=time.monotonic() - started,
                    deposed_id=item.deposed_id,
                ),
                None,
            )
        except Exception as e:
            logger.exception(f"Unexpected error during {label}")
            return (
                ItemResult(
                    item.resource_id,
                    item.action,
                    ItemStatus.FAILED,
                    error=safe_error_message(e),
                    error_code=type(e).__name__,
                    attempts=counter.count,
                    duration_seconds=time.monotonic() - started,
                    deposed_id=item.deposed_id,
                ),
                None,
            )

        duration = time.monotonic() - started
        logger.info(f"Finished {label} in {duration:.2f}s")
        return (
            ItemResult(
                item.resource_id,
                item.action,
                ItemStatus.SUCCEEDED,
                attempts=counter.count,
                duration_seconds=duration,
                deposed_id=item.deposed_id,
            ),
            deposed_id,
        )

    def _lookup_output(self, resource_id: str, output: str) -> Any:
        record = self.state.get(resource_id)
        if record is None or output not in record.outputs:
            raise ProviderError(
                f"Output '{output}' of '{resource_id}' is not available",
                code="UnresolvedOutput",
                transient=False,
            )
        return record.outputs[output]

    def _resolve(self, attributes: dict[str, Any]) -> dict[str, Any]:
        return resolve_placeholders(attributes, self._lookup_output)

    def _retry(self, func: Callable[[], Any], counter: _AttemptCounter, description: str) -> Any:
        return call_with_retry(counter.wrap(func), self.retry_policy, description, sleep=self.sleep)

    def _wait_ready(self, resource_type: ResourceType, provider_id: str, label: str) -> None:
        call_with_retry(
            lambda: self.provider.wait_ready(
                resource_type, provider_id, self.ready_timeout, sleep=self.sleep
            ),
            self.retry_policy,
            f"wait for {label}",
            sleep=self.sleep,
        )

    def _create_instance(
        self, item: PlanItem, counter: _AttemptCounter, previous: StateRecord | None = None
    ) -> StateRecord:
        """Create a new provider instance and record it.

        The record is written tainted right after the create call, and
        cleared once the resource reports ready.
        """
        resource = item.resource
        assert resource is not None
        resolved = self._resolve(resource.attributes)
        created = self._retry(
            lambda: self.provider.create(resource.type, resource.id, resolved),
            counter,
            f"create {resource.id}",
        )
        now = datetime.now(UTC)
        record = StateRecord(
            resource_id=resource.id,
            resource_type=resource.type.value,
            last_applied_attributes=dict(resource.attributes),
            provider_assigned_id=created.provider_id,
            last_applied_at=now,
            resolved_attributes=resolved,
            outputs=dict(created.outputs),
            depends_on=sorted(resource.depends_on),
            managed_by=resource.managed_by,
            create_before_destroy=item.create_before_destroy,
            deposed_ids=list(previous.deposed_ids) if previous else [],
            created_at=now,
            tainted=True,
        )
        self.state.put(record)
        self._wait_ready(resource.type, created.provider_id, resource.id)
        record.tainted = False
        self.state.put(record)
        return record

    def _create(self, item: PlanItem, counter: _AttemptCounter) -> None:
        self._create_instance(item, counter, self.state.get(item.resource_id))

    def _update(self, item: PlanItem, counter: _AttemptCounter) -> None:
        resource = item.resource
        assert resource is not None
        record = self.state.get(resource.id)
        if record is None:
            raise ProviderError(
                f"Cannot update '{resource.id}': no state record", code="NotFound", transient=False
            )
        resolved = self._resolve(resource.attributes)
        outputs = self._retry(
            lambda: self.provider.update(resource.type, record.provider_assigned_id, resolved),
            counter,
            f"update {resource.id}",
        )
        record.last_applied_attributes = dict(resource.attributes)
        record.resolved_attributes = resolved
        record.outputs = {**record.outputs, **outputs}
        record.depends_on = sorted(resource.depends_on)
        record.managed_by = resource.managed_by
        record.create_before_destroy = item.create_before_destroy
        record.last_applied_at = datetime.now(UTC)
        self.state.put(record)

    def _replace(self, item: PlanItem, counter: _AttemptCounter) -> str | None:
        """Replace a resource.

        Returns:
            Provider id of the old instance when it was deposed (create-before-destroy)
        """
        resource = item.resource
        assert resource is not None
        old = self.state.get(resource.id)

        if item.create_before_destroy and old is not None:
            old.deposed_ids.append(old.provider_assigned_id)
            # Persist the deposed id first so a crash never loses the old instance.
            self.state.put(old)
            self._create_instance(item, counter, old)
            return old.provider_assigned_id

        if old is not None:
            self._retry(
                lambda: self.provider.delete(old.type, old.provider_assigned_id),
                counter,
                f"destroy {resource.id}",
            )
            self.state.remove(resource.id)
        self._create_instance(item, counter, old)
        return None

    def _destroy(self, item: PlanItem, counter: _AttemptCounter) -> None:
        record = self.state.get(item.resource_id)
        if item.deposed_id:
            self._retry(
                lambda: self.provider.delete(item.resource_type, item.deposed_id),
                counter,
                f"destroy deposed {item.resource_id} ({item.deposed_id})",
            )
            if record is not None and item.deposed_id in record.deposed_ids:
                record.deposed_ids.remove(item.deposed_id)
                self.state.put(record)
            return

        if record is None:
            logger.debug(f"{item.resource_id} already absent from state")
            return
        self._retry(
            lambda: self.provider.delete(record.type, record.provider_assigned_id),
            counter,
            f"destroy {item.resource_id}",
        )
        self.state.remove(item.resource_id)


__all__ = ["PlanExecutor", "ProgressCallback"]
