"""Reconciliation engine models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from tierctl.schema import ResourceType


class ExitCode(IntEnum):
    """Process exit codes for plan/apply commands."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    CONFIG_ERROR = 2
    NO_CHANGES = 3  # Only with --detailed-exitcode


@dataclass(frozen=True)
class Resource:
    """Desired description of one provisionable unit.

    ``depends_on`` holds explicit dependencies as declared; the graph
    builder returns copies with references found in attributes merged in.
    """

    id: str
    type: ResourceType
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    create_before_destroy: bool = False
    managed_by: str | None = None  # Owning autoscaling group for members


class PlanAction(Enum):
    """What the reconciler intends to do with a resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no-op"

    @property
    def symbol(self) -> str:
        """Diff-style marker used in plan summaries."""
        return {
            PlanAction.CREATE: "+",
            PlanAction.UPDATE: "~",
            PlanAction.REPLACE: "-/+",
            PlanAction.DESTROY: "-",
            PlanAction.NO_OP: " ",
        }[self]


@dataclass(frozen=True)
class AttributeChange:
    """Single attribute difference between state and desired."""

    name: str
    before: Any
    after: Any
    forces_replacement: bool = False


@dataclass(frozen=True)
class PlanItem:
    """Planned action for one resource. Immutable once computed."""

    resource_id: str
    action: PlanAction
    resource_type: ResourceType
    diff: tuple[AttributeChange, ...] = ()
    resource: Resource | None = None  # None for destroy
    create_before_destroy: bool = False
    deposed_id: str | None = None  # Provider id of a deposed instance to destroy
    reason: str = ""

    @property
    def is_change(self) -> bool:
        return self.action != PlanAction.NO_OP

    @property
    def key(self) -> str:
        """Unique key within a plan (deposed destroys share the resource id)."""
        if self.deposed_id:
            return f"{self.resource_id}#deposed:{self.deposed_id}"
        return self.resource_id


@dataclass(frozen=True)
class Plan:
    """Ordered set of plan items plus the dependency edges between them.

    Attributes:
        items: Plan items, in dependency order for creates/updates
        dependencies: item key -> keys that must succeed before it starts
        group_versions: autoscaling group id -> capacity version seen at plan
            time (None when the group was not yet applied)
    """

    items: tuple[PlanItem, ...] = ()
    dependencies: dict[str, frozenset[str]] = field(default_factory=dict)
    group_versions: dict[str, str | None] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(item.is_change for item in self.items)

    def changes(self) -> list[PlanItem]:
        """Items that will actually do something."""
        return [item for item in self.items if item.is_change]

    def get(self, key: str) -> PlanItem | None:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def counts(self) -> dict[PlanAction, int]:
        """Count items per action."""
        counts = dict.fromkeys(PlanAction, 0)
        for item in self.items:
            counts[item.action] += 1
        return counts


@dataclass
class StateRecord:
    """Last-applied state of one resource.

    Attributes:
        resource_id: Resource id from the declaration
        resource_type: Resource type value
        last_applied_attributes: Declared attributes as last applied (placeholders intact)
        provider_assigned_id: Identifier returned by the provider
        last_applied_at: Time of the last successful apply
        resolved_attributes: Attributes after placeholder resolution
        outputs: Provider outputs (``id`` plus type-specific outputs)
        depends_on: Dependencies at last apply, used for destroy ordering
        managed_by: Owning autoscaling group id for group members
        create_before_destroy: Replacement ordering recorded at last apply
        deposed_ids: Provider ids of replaced instances not yet destroyed
        created_at: Time the current instance was first created (launch time)
        tainted: Created but never confirmed ready; replaced on next plan
    """

    resource_id: str
    resource_type: str
    last_applied_attributes: dict[str, Any]
    provider_assigned_id: str
    last_applied_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolved_attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    managed_by: str | None = None
    create_before_destroy: bool = False
    deposed_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    tainted: bool = False

    @property
    def type(self) -> ResourceType:
        return ResourceType(self.resource_type)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "last_applied_attributes": self.last_applied_attributes,
            "provider_assigned_id": self.provider_assigned_id,
            "last_applied_at": self.last_applied_at.isoformat(),
            "resolved_attributes": self.resolved_attributes,
            "outputs": self.outputs,
            "depends_on": self.depends_on,
            "managed_by": self.managed_by,
            "create_before_destroy": self.create_before_destroy,
            "deposed_ids": self.deposed_ids,
            "created_at": self.created_at.isoformat(),
            "tainted": self.tainted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateRecord":
        """Create from dictionary."""
        return cls(
            resource_id=data["resource_id"],
            resource_type=data["resource_type"],
            last_applied_attributes=data.get("last_applied_attributes", {}),
            provider_assigned_id=data["provider_assigned_id"],
            last_applied_at=datetime.fromisoformat(data["last_applied_at"]),
            resolved_attributes=data.get("resolved_attributes", {}),
            outputs=data.get("outputs", {}),
            depends_on=list(data.get("depends_on", [])),
            managed_by=data.get("managed_by"),
            create_before_destroy=data.get("create_before_destroy", False),
            deposed_ids=list(data.get("deposed_ids", [])),
            created_at=datetime.fromisoformat(
                data.get("created_at") or data["last_applied_at"]
            ),
            tainted=data.get("tainted", False),
        )


class ItemStatus(Enum):
    """Terminal status of a plan item after apply."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # An ancestor failed
    CANCELLED = "cancelled"  # Apply cancelled before the item started


@dataclass
class ItemResult:
    """Outcome of applying one plan item."""

    resource_id: str
    action: PlanAction
    status: ItemStatus
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0
    deposed_id: str | None = None


@dataclass
class ApplyResult:
    """Outcome of applying a plan."""

    results: list[ItemResult] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def _ids_with(self, status: ItemStatus) -> list[str]:
        return [r.resource_id for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._ids_with(ItemStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._ids_with(ItemStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._ids_with(ItemStatus.SKIPPED)

    @property
    def cancelled_items(self) -> list[str]:
        return self._ids_with(ItemStatus.CANCELLED)

    @property
    def success(self) -> bool:
        return all(r.status == ItemStatus.SUCCEEDED for r in self.results)

    def status_of(self, resource_id: str) -> ItemStatus | None:
        """Status of the last result recorded for a resource."""
        for result in reversed(self.results):
            if result.resource_id == resource_id:
                return result.status
        return None

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.success else ExitCode.PARTIAL_FAILURE

    def get_elapsed_time(self) -> float:
        """Get elapsed time in seconds."""
        if not self.started_at:
            return 0.0
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()
