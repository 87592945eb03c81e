"""Planner - diff desired resources against the State Store.

Diff policy:
- No record -> create
- Unchanged attributes -> no-op
- Changed mutable attribute -> update
- Changed immutable attribute (per resource schema), changed type, or a
  tainted record -> replace
- Record not in the desired set -> destroy

Replacements of resources that feed a load-balancer target are planned
create-before-destroy; dependents of any replaced resource are planned as
updates so they are rewired to the new instance.

Autoscaling group members are not declared by the user. The planner expands
each group into ``instance`` resources derived from its launch template so
the member count converges to the group's desired capacity.
"""

import logging
import uuid
from collections.abc import Iterable, Sequence
from typing import Any

from tierctl.engine.graph import DependencyGraph, build_graph, find_output_references
from tierctl.engine.models import AttributeChange, Plan, PlanAction, PlanItem, Resource, StateRecord
from tierctl.engine.state_store import StateStore
from tierctl.errors import ConfigError
from tierctl.schema import ResourceType, get_schema

logger = logging.getLogger(__name__)

KNOWN_AFTER_APPLY = "(known after apply)"
DEFAULT_GRACE_PERIOD = 300


def group_bounds(group_id: str, attributes: dict[str, Any]) -> tuple[int, int]:
    """Validated (min_size, max_size) of an autoscaling group declaration."""
    try:
        min_size = int(attributes.get("min_size", 0))
        max_size = int(attributes.get("max_size", min_size))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Autoscaling group '{group_id}' has non-integer bounds") from e
    if min_size < 0 or max_size < min_size:
        raise ConfigError(
            f"Autoscaling group '{group_id}' needs 0 <= min_size <= max_size "
            f"(got {min_size}..{max_size})"
        )
    return min_size, max_size


def member_resource(
    group_id: str, group_attributes: dict[str, Any], index: int, member_id: str | None = None
) -> Resource:
    """Build the instance resource for one group member.

    Members take their launch template from the group and are spread over
    the group's subnets round robin.
    """
    subnets = group_attributes.get("subnet_ids") or []
    attributes: dict[str, Any] = {
        "group_id": f"${{{group_id}.id}}",
        "launch_template_id": group_attributes.get("launch_template_id"),
    }
    if subnets:
        attributes["subnet_id"] = subnets[index % len(subnets)]
    if group_attributes.get("target_group_ids"):
        attributes["target_group_ids"] = group_attributes["target_group_ids"]
    return Resource(
        id=member_id or f"{group_id}-{uuid.uuid4().hex[:8]}",
        type=ResourceType.INSTANCE,
        attributes=attributes,
        depends_on=frozenset({group_id}),
        create_before_destroy=True,
        managed_by=group_id,
    )


class Planner:
    """Compute plans against a State Store.

    Example:
        >>> planner = Planner(StateStore())
        >>> plan = planner.plan(resources)
        >>> [(i.resource_id, i.action.value) for i in plan.changes()]
        [('web_sg', 'create'), ('web_lt', 'create')]
    """

    def __init__(self, state: StateStore):
        self.state = state

    # ------------------------------------------------------------------
    # Full plan
    # ------------------------------------------------------------------

    def plan(self, desired: Sequence[Resource]) -> Plan:
        """Plan the changes needed to reach ``desired``.

        Args:
            desired: Desired resources in declaration order

        Returns:
            Plan with one item per desired resource plus member, orphan and
            deposed-instance items

        Raises:
            ConfigError: Invalid references, cycles, or invalid group bounds
        """
        graph, resources = build_graph(desired)
        records = self.state.all()

        items: dict[str, PlanItem] = {}
        deps: dict[str, set[str]] = {}

        for resource_id in graph.apply_order():
            resource = resources[resource_id]
            item = self._diff_resource(resource, records.get(resource_id), graph, resources)
            items[resource_id] = item
            deps[resource_id] = set(resource.depends_on)

        self._add_rewires(items, graph, resources, records)

        for resource_id in list(items):
            resource = resources[resource_id]
            if resource.type == ResourceType.AUTOSCALING_GROUP:
                self._plan_members(resource, items, deps, records)

        self._plan_orphans(set(resources), items, deps, records)
        self._plan_deposed(items, deps, records, graph)

        plan = self._assemble(items, deps, self._group_versions(resources, records))
        counts = plan.counts()
        logger.debug(
            "Plan: "
            + ", ".join(f"{count} {action.value}" for action, count in counts.items() if count)
        )
        return plan

    def plan_destroy(self) -> Plan:
        """Plan destruction of every tracked resource."""
        records = self.state.all()
        items: dict[str, PlanItem] = {}
        deps: dict[str, set[str]] = {}
        self._plan_orphans(set(), items, deps, records)
        self._plan_deposed(items, deps, records)
        return self._assemble(items, deps, self._group_versions({}, records))

    # ------------------------------------------------------------------
    # Capacity plan (autoscaling path)
    # ------------------------------------------------------------------

    def plan_capacity(
        self,
        group_id: str,
        capacity: int,
        remove_member_ids: Iterable[str] | None = None,
    ) -> Plan:
        """Plan a capacity change for an existing group.

        Produces an update of the group's desired capacity followed by member
        create or destroy items.

        Args:
            group_id: Autoscaling group resource id
            capacity: New desired capacity (must lie within bounds)
            remove_member_ids: Preferred members to remove when scaling in

        Raises:
            ConfigError: Unknown group or capacity outside bounds
        """
        record = self.state.get(group_id)
        if record is None or record.type != ResourceType.AUTOSCALING_GROUP:
            raise ConfigError(f"Unknown autoscaling group '{group_id}'")

        declared = record.last_applied_attributes
        min_size, max_size = group_bounds(group_id, declared)
        if not min_size <= capacity <= max_size:
            raise ConfigError(
                f"Capacity {capacity} outside [{min_size}, {max_size}] for '{group_id}'"
            )

        items: dict[str, PlanItem] = {}
        deps: dict[str, set[str]] = {}
        current = int(declared.get("desired_capacity", min_size))
        if current != capacity:
            group_resource = Resource(
                id=group_id,
                type=ResourceType.AUTOSCALING_GROUP,
                attributes={**declared, "desired_capacity": capacity},
                depends_on=frozenset(record.depends_on),
            )
            items[group_id] = PlanItem(
                resource_id=group_id,
                action=PlanAction.UPDATE,
                resource_type=ResourceType.AUTOSCALING_GROUP,
                diff=(AttributeChange("desired_capacity", current, capacity),),
                resource=group_resource,
                reason="capacity change",
            )
            deps[group_id] = set()

        members = self.state.members_of(group_id)
        self._plan_member_count(
            group_id,
            declared,
            capacity,
            members,
            items,
            deps,
            list(remove_member_ids or ()),
            after=group_id if group_id in items else None,
        )
        return self._assemble(items, deps)

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def _diff_resource(
        self,
        resource: Resource,
        record: StateRecord | None,
        graph: DependencyGraph,
        resources: dict[str, Resource],
    ) -> PlanItem:
        schema = get_schema(resource.type)
        attributes = resource.attributes

        if resource.type == ResourceType.AUTOSCALING_GROUP:
            attributes = self._group_attributes(resource, record)
            resource = Resource(
                id=resource.id,
                type=resource.type,
                attributes=attributes,
                depends_on=resource.depends_on,
                create_before_destroy=resource.create_before_destroy,
                managed_by=resource.managed_by,
            )

        cbd = resource.create_before_destroy or self._feeds_load_balancer(resource, graph, resources)

        if record is None:
            diff = tuple(
                AttributeChange(name, None, value) for name, value in sorted(attributes.items())
            )
            return PlanItem(resource.id, PlanAction.CREATE, resource.type, diff, resource, cbd)

        if record.resource_type != resource.type.value:
            return PlanItem(
                resource.id,
                PlanAction.REPLACE,
                resource.type,
                (AttributeChange("type", record.resource_type, resource.type.value, True),),
                resource,
                cbd,
                reason="resource type changed",
            )

        changes = self.diff_attributes(
            record.last_applied_attributes, attributes, schema.immutable, schema.controller_managed
        )
        if resource.type == ResourceType.AUTOSCALING_GROUP:
            before = record.last_applied_attributes.get("desired_capacity")
            after = attributes.get("desired_capacity")
            if before != after:
                changes.append(AttributeChange("desired_capacity", before, after))
                changes.sort(key=lambda c: c.name)

        if record.tainted:
            return PlanItem(
                resource.id, PlanAction.REPLACE, resource.type, tuple(changes), resource, cbd,
                reason="tainted: never became ready",
            )
        if any(change.forces_replacement for change in changes):
            return PlanItem(
                resource.id, PlanAction.REPLACE, resource.type, tuple(changes), resource, cbd
            )
        if changes:
            return PlanItem(
                resource.id, PlanAction.UPDATE, resource.type, tuple(changes), resource, cbd
            )
        return PlanItem(resource.id, PlanAction.NO_OP, resource.type, (), resource, cbd)

    @staticmethod
    def diff_attributes(
        before: dict[str, Any],
        after: dict[str, Any],
        immutable: Iterable[str] = (),
        ignore: Iterable[str] = (),
    ) -> list[AttributeChange]:
        """Attribute-level diff, sorted by attribute name.

        Args:
            before: Last applied attributes
            after: Desired attributes
            immutable: Names whose change forces replacement
            ignore: Names handled elsewhere (controller-managed)
        """
        immutable_set = set(immutable)
        ignored = set(ignore)
        changes = []
        for name in sorted(set(before) | set(after)):
            if name in ignored:
                continue
            old, new = before.get(name), after.get(name)
            if old != new:
                changes.append(AttributeChange(name, old, new, name in immutable_set))
        return changes

    def _group_attributes(self, resource: Resource, record: StateRecord | None) -> dict[str, Any]:
        """Declared group attributes with desired_capacity owned by the controller.

        On create the declared capacity (or min_size) is used; afterwards the
        stored capacity wins and is only clamped into new bounds.
        """
        attributes = dict(resource.attributes)
        min_size, max_size = group_bounds(resource.id, attributes)
        attributes.setdefault("health_check_grace_period", DEFAULT_GRACE_PERIOD)

        if record is None or record.resource_type != resource.type.value:
            capacity = int(attributes.get("desired_capacity", min_size))
            if not min_size <= capacity <= max_size:
                raise ConfigError(
                    f"Autoscaling group '{resource.id}' desired_capacity {capacity} "
                    f"outside [{min_size}, {max_size}]"
                )
        else:
            stored = int(record.last_applied_attributes.get("desired_capacity", min_size))
            capacity = max(min_size, min(max_size, stored))
        attributes["desired_capacity"] = capacity
        return attributes

    @staticmethod
    def _feeds_load_balancer(
        resource: Resource, graph: DependencyGraph, resources: dict[str, Resource]
    ) -> bool:
        """Whether a resource serves traffic or sits under a load-balancer target."""
        if get_schema(resource.type).serves_traffic:
            return True
        for dependent_id in graph.descendants(resource.id):
            dependent = resources[dependent_id]
            if get_schema(dependent.type).load_balancer_kind:
                return True
            if dependent.type == ResourceType.AUTOSCALING_GROUP and dependent.attributes.get(
                "target_group_ids"
            ):
                return True
        return False

    def _add_rewires(
        self,
        items: dict[str, PlanItem],
        graph: DependencyGraph,
        resources: dict[str, Resource],
        records: dict[str, StateRecord],
    ) -> None:
        """Plan dependents of changed resources so they pick up new outputs.

        A dependent of a replaced resource is updated, or replaced when a
        rewired attribute is immutable for its type; replacements cascade
        further down the graph. Resources that still have a deposed instance
        count as replaced: their dependents may not have been rewired when
        the replacement happened.

        An in-place update only changes the outputs its schema lists as
        mutable, so only attributes referencing those outputs are rewired.
        """
        replaced = {
            rid
            for rid, item in items.items()
            if item.action == PlanAction.REPLACE or (rid in records and records[rid].deposed_ids)
        }
        changed_outputs = {
            (rid, output)
            for rid, item in items.items()
            if item.action == PlanAction.UPDATE
            for output in get_schema(item.resource_type).mutable_outputs
        }
        for resource_id in graph.apply_order():
            item = items[resource_id]
            if item.action not in (PlanAction.NO_OP, PlanAction.UPDATE):
                continue
            sources = sorted(graph.dependencies(resource_id) & replaced)

            record = records.get(resource_id)
            resource = resources[resource_id]
            immutable = get_schema(resource.type).immutable
            existing = {change.name for change in item.diff}
            updated_sources: set[str] = set()
            rewired = []
            for name, value in sorted(resource.attributes.items()):
                if name in existing:
                    continue
                references = find_output_references(value)
                stale = {ref for ref in references if ref in changed_outputs}
                if not stale and not {rid for rid, _ in references} & set(sources):
                    continue
                updated_sources |= {rid for rid, _ in stale}
                rewired.append(
                    AttributeChange(
                        name,
                        record.resolved_attributes.get(name) if record else None,
                        KNOWN_AFTER_APPLY,
                        name in immutable,
                    )
                )
            if not sources and not rewired:
                continue

            diff = tuple(sorted(item.diff + tuple(rewired), key=lambda c: c.name))
            action = (
                PlanAction.REPLACE
                if any(change.forces_replacement for change in diff)
                else PlanAction.UPDATE
            )
            if action == PlanAction.REPLACE:
                replaced.add(resource_id)
            else:
                changed_outputs |= {
                    (resource_id, output) for output in get_schema(resource.type).mutable_outputs
                }
            notes = []
            if sources:
                notes.append(f"{', '.join(sources)} replaced")
            if updated_sources:
                notes.append(f"{', '.join(sorted(updated_sources))} outputs changed")
            reason = f"rewire: {'; '.join(notes)}"
            items[resource_id] = PlanItem(
                resource_id,
                action,
                item.resource_type,
                diff,
                item.resource,
                item.create_before_destroy,
                reason=f"{item.reason}; {reason}" if item.reason else reason,
            )

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def _plan_members(
        self,
        group: Resource,
        items: dict[str, PlanItem],
        deps: dict[str, set[str]],
        records: dict[str, StateRecord],
    ) -> None:
        group_item = items[group.id]
        declared = group_item.resource.attributes if group_item.resource else group.attributes
        capacity = int(declared["desired_capacity"])
        members = sorted(
            (r for r in records.values() if r.managed_by == group.id),
            key=lambda r: (r.created_at, r.resource_id),
        )

        if group_item.action == PlanAction.REPLACE:
            # Old members go with the old group; new members join the new one.
            new_keys = self._plan_member_count(
                group.id, declared, capacity, [], items, deps, [], after=group.id
            )
            for member in members:
                items[member.resource_id] = self._destroy_item(member, "group replaced")
                deps[member.resource_id] = {group.id, *new_keys}
            return

        self._plan_member_count(
            group.id,
            declared,
            capacity,
            members,
            items,
            deps,
            [],
            after=group.id if group_item.is_change else None,
        )

    def _plan_member_count(
        self,
        group_id: str,
        declared: dict[str, Any],
        capacity: int,
        members: list[StateRecord],
        items: dict[str, PlanItem],
        deps: dict[str, set[str]],
        preferred_removals: list[str],
        after: str | None,
    ) -> list[str]:
        """Add member create/destroy items so the member count reaches ``capacity``.

        Returns:
            Keys of the member create items added
        """
        created: list[str] = []
        if len(members) < capacity:
            for index in range(len(members), capacity):
                member = member_resource(group_id, declared, index)
                items[member.id] = PlanItem(
                    member.id,
                    PlanAction.CREATE,
                    ResourceType.INSTANCE,
                    tuple(
                        AttributeChange(name, None, value)
                        for name, value in sorted(member.attributes.items())
                    ),
                    member,
                    True,
                    reason=f"scale {group_id} to {capacity}",
                )
                deps[member.id] = {after} if after else set()
                created.append(member.id)
        elif len(members) > capacity:
            member_ids = [m.resource_id for m in members]
            by_id = {m.resource_id: m for m in members}
            preferred = [m for m in preferred_removals if m in by_id]
            removals = preferred[: len(members) - capacity]
            # Oldest first for the rest
            removals += [m for m in member_ids if m not in removals][
                : len(members) - capacity - len(removals)
            ]
            for member_id in removals:
                items[member_id] = self._destroy_item(
                    by_id[member_id], f"scale {group_id} to {capacity}"
                )
                deps[member_id] = {after} if after else set()
        return created

    # ------------------------------------------------------------------
    # Destroys
    # ------------------------------------------------------------------

    @staticmethod
    def _destroy_item(record: StateRecord, reason: str = "", deposed_id: str | None = None) -> PlanItem:
        provider_id = deposed_id or record.provider_assigned_id
        return PlanItem(
            record.resource_id,
            PlanAction.DESTROY,
            record.type,
            (AttributeChange("id", provider_id, None),),
            None,
            record.create_before_destroy,
            deposed_id=deposed_id,
            reason=reason,
        )

    def _plan_orphans(
        self,
        desired_ids: set[str],
        items: dict[str, PlanItem],
        deps: dict[str, set[str]],
        records: dict[str, StateRecord],
    ) -> None:
        """Destroy records that are no longer declared.

        Group members are kept while their group is still declared. A
        destroy waits for destroys of everything that depended on it and for
        updates of declared resources that used to reference it.
        """
        orphans = [
            rid
            for rid, record in records.items()
            if rid not in desired_ids
            and rid not in items
            and not (record.managed_by and record.managed_by in desired_ids)
        ]
        if not orphans:
            return

        orphan_set = set(orphans)
        edges = {
            rid: {dep for dep in records[rid].depends_on if dep in orphan_set} for rid in orphans
        }
        # Validate the recorded edges; state written by tierctl is always acyclic.
        DependencyGraph(orphans, edges)

        for rid in orphans:
            items[rid] = self._destroy_item(records[rid], "no longer declared")
            deps[rid] = set()
        for rid, record in records.items():
            for dep in record.depends_on:
                if dep in orphan_set and rid in items:
                    deps[dep].add(rid)

    def _plan_deposed(
        self,
        items: dict[str, PlanItem],
        deps: dict[str, set[str]],
        records: dict[str, StateRecord],
        graph: DependencyGraph | None = None,
    ) -> None:
        """Destroy instances left deposed by an earlier create-before-destroy.

        The destroy waits for the owning resource and every dependent that is
        being rewired in this plan. When the owning record itself is being
        destroyed, the deposed instances go first so the record keeps
        tracking them until they are gone.
        """
        for rid, record in records.items():
            owner = items.get(rid)
            destroying = owner is not None and owner.action == PlanAction.DESTROY
            waits = {rid} if owner is not None and owner.is_change and not destroying else set()
            if graph is not None and rid in graph:
                waits |= {d for d in graph.descendants(rid) if d in items and items[d].is_change}
            for deposed_id in record.deposed_ids:
                item = self._destroy_item(record, "deposed by earlier replacement", deposed_id)
                items[item.key] = item
                deps[item.key] = set(waits)
                if destroying:
                    deps[rid].add(item.key)

    # ------------------------------------------------------------------
    # Group versions
    # ------------------------------------------------------------------

    @staticmethod
    def group_version(group_id: str, records: dict[str, StateRecord]) -> str | None:
        """Fingerprint of a group's capacity and membership in ``records``.

        Changes whenever the controller (or another apply) changes the
        group's desired capacity or its members.
        """
        record = records.get(group_id)
        if record is None:
            return None
        capacity = record.last_applied_attributes.get("desired_capacity")
        members = sorted(rid for rid, r in records.items() if r.managed_by == group_id)
        return f"{capacity}:{','.join(members)}"

    def _group_versions(
        self, resources: dict[str, Resource], records: dict[str, StateRecord]
    ) -> dict[str, str | None]:
        group_ids = {
            rid for rid, r in resources.items() if r.type == ResourceType.AUTOSCALING_GROUP
        } | {
            rid
            for rid, r in records.items()
            if r.resource_type == ResourceType.AUTOSCALING_GROUP.value
        }
        return {group_id: self.group_version(group_id, records) for group_id in sorted(group_ids)}

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _assemble(
        items: dict[str, PlanItem],
        deps: dict[str, set[str]],
        group_versions: dict[str, str | None] | None = None,
    ) -> Plan:
        """Order items so every item follows the items it waits for."""
        keys = list(items)
        edges = {key: {d for d in deps.get(key, ()) if d in items} for key in keys}
        graph = DependencyGraph(keys, edges)
        ordered = tuple(items[key] for key in graph.apply_order())
        return Plan(
            items=ordered,
            dependencies={key: frozenset(edges[key]) for key in graph.apply_order()},
            group_versions=group_versions or {},
        )


__all__ = ["KNOWN_AFTER_APPLY", "Planner", "group_bounds", "member_resource"]
