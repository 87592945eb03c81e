"""Dependency graph builder.

Resources reference each other through ``${<resource_id>.<output>}``
placeholders anywhere inside their attributes. Each reference is an edge
from the referencing resource to the referenced one. The graph is checked
for cycles up front; nothing downstream follows references without it.

Public API (Studs):
    DependencyGraph - DAG over resource ids with stable topological order
    build_graph - Derive a graph from resources and return them with depends_on filled
    find_references - Resource ids referenced by an attribute value
    find_output_references - (resource id, output) pairs referenced by a value
    resolve_placeholders - Substitute placeholders with concrete outputs
"""

import heapq
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Any

from tierctl.engine.models import Resource
from tierctl.errors import ConfigError, CycleError, UnresolvedReferenceError

RESOURCE_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")
PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_\-]*)\.([A-Za-z0-9_]+)\}")


def _walk_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_strings(item)


def find_references(value: Any) -> list[str]:
    """Find resource ids referenced by placeholders in a value.

    Args:
        value: Attribute value (scalars, lists and mappings are walked)

    Returns:
        Referenced resource ids in order of first appearance
    """
    seen: dict[str, None] = {}
    for text in _walk_strings(value):
        for match in PLACEHOLDER_PATTERN.finditer(text):
            seen.setdefault(match.group(1), None)
    return list(seen)


def find_output_references(value: Any) -> list[tuple[str, str]]:
    """Find (resource_id, output) pairs referenced by placeholders in a value."""
    seen: dict[tuple[str, str], None] = {}
    for text in _walk_strings(value):
        for match in PLACEHOLDER_PATTERN.finditer(text):
            seen.setdefault((match.group(1), match.group(2)), None)
    return list(seen)


def resolve_placeholders(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Replace placeholders with concrete values.

    A string that is exactly one placeholder is replaced by the raw output
    (which may be a list or number); placeholders embedded in longer strings
    are substituted as text.

    Args:
        value: Attribute value
        lookup: Called with (resource_id, output_name), returns the output

    Returns:
        Value with every placeholder resolved
    """
    if isinstance(value, str):
        whole = PLACEHOLDER_PATTERN.fullmatch(value)
        if whole:
            return lookup(whole.group(1), whole.group(2))
        return PLACEHOLDER_PATTERN.sub(
            lambda m: str(lookup(m.group(1), m.group(2))), value
        )
    if isinstance(value, dict):
        return {key: resolve_placeholders(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_placeholders(item, lookup) for item in value]
    return value


class DependencyGraph:
    """Directed acyclic graph of resource ids.

    Edges point from a resource to the resources it depends on. Ties between
    independent resources are broken by input order so plans are
    reproducible.

    Example:
        >>> graph = DependencyGraph(["sg", "lt"], {"lt": {"sg"}})
        >>> graph.apply_order()
        ['sg', 'lt']
        >>> graph.destroy_order()
        ['lt', 'sg']
    """

    def __init__(self, nodes: Sequence[str], edges: dict[str, Iterable[str]] | None = None):
        """Build and validate the graph.

        Args:
            nodes: Node ids in input order
            edges: node -> ids it depends on

        Raises:
            ConfigError: On duplicate node ids or self references
            UnresolvedReferenceError: If an edge targets an unknown node
            CycleError: If the edges contain a cycle
        """
        self._index: dict[str, int] = {}
        for node in nodes:
            if node in self._index:
                raise ConfigError(f"Duplicate resource id: '{node}'")
            self._index[node] = len(self._index)

        self._deps: dict[str, frozenset[str]] = {}
        self._dependents: dict[str, set[str]] = {node: set() for node in self._index}
        edges = edges or {}
        for node in self._index:
            deps = set(edges.get(node, ()))
            if node in deps:
                raise CycleError([node])
            for dep in deps:
                if dep not in self._index:
                    raise UnresolvedReferenceError(node, dep)
                self._dependents[dep].add(node)
            self._deps[node] = frozenset(deps)

        self._order = self._topological_sort()
        self._position = {node: pos for pos, node in enumerate(self._order)}

    def _topological_sort(self) -> list[str]:
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [(self._index[node], node) for node, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._index[dependent], dependent))

        if len(order) != len(self._index):
            stuck = [node for node in self._index if remaining[node] > 0]
            raise CycleError(self._find_cycle(stuck))
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Return the members of one cycle among nodes left unsorted."""
        candidate_set = set(candidates)
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(node: str) -> list[str] | None:
            visiting.append(node)
            on_path.add(node)
            for dep in sorted(self._deps[node] & candidate_set, key=self._index.__getitem__):
                if dep in on_path:
                    return visiting[visiting.index(dep):]
                if dep not in done:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            visiting.pop()
            on_path.discard(node)
            done.add(node)
            return None

        for start in candidates:
            if start not in done:
                cycle = visit(start)
                if cycle:
                    return cycle
        return candidates

    def __contains__(self, node: object) -> bool:
        return node in self._index

    def __len__(self) -> int:
        return len(self._index)

    @property
    def nodes(self) -> list[str]:
        """Node ids in input order."""
        return list(self._index)

    def dependencies(self, node: str) -> frozenset[str]:
        """Direct dependencies of a node."""
        return self._deps[node]

    def dependents(self, node: str) -> frozenset[str]:
        """Nodes that directly depend on ``node``."""
        return frozenset(self._dependents[node])

    def ancestors(self, node: str) -> set[str]:
        """All transitive dependencies of a node."""
        return self._closure(node, self._deps)

    def descendants(self, node: str) -> set[str]:
        """All nodes that transitively depend on ``node``."""
        return self._closure(node, self._dependents)

    @staticmethod
    def _closure(node: str, adjacency: dict[str, Any]) -> set[str]:
        seen: set[str] = set()
        stack = list(adjacency[node])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(adjacency[current])
        return seen

    def apply_order(self) -> list[str]:
        """Every node appears after all of its dependencies."""
        return list(self._order)

    def destroy_order(self) -> list[str]:
        """Every node appears before all of its dependencies."""
        return list(reversed(self._order))

    def order_subset(self, nodes: Iterable[str], reverse: bool = False) -> list[str]:
        """Order a subset of nodes by the already computed global order.

        Used for incremental applies where only some resources change.

        Args:
            nodes: Node ids (must be in the graph)
            reverse: Return destroy order instead of apply order

        Raises:
            KeyError: If a node is not part of the graph
        """
        return sorted(set(nodes), key=self._position.__getitem__, reverse=reverse)


def build_graph(resources: Sequence[Resource]) -> tuple[DependencyGraph, dict[str, Resource]]:
    """Derive the dependency graph of a set of resources.

    Args:
        resources: Desired resources in declaration order

    Returns:
        (graph, resources by id with ``depends_on`` holding every dependency)

    Raises:
        ConfigError: Invalid or duplicate ids
        UnresolvedReferenceError: Reference to an unknown resource
        CycleError: References form a cycle
    """
    edges: dict[str, set[str]] = {}
    for resource in resources:
        if not RESOURCE_ID_PATTERN.match(resource.id):
            raise ConfigError(
                f"Invalid resource id '{resource.id}': use letters, digits, '_' or '-'"
            )
        edges[resource.id] = set(resource.depends_on) | set(find_references(resource.attributes))

    graph = DependencyGraph([r.id for r in resources], edges)
    resolved = {
        resource.id: replace(resource, depends_on=graph.dependencies(resource.id))
        for resource in resources
    }
    return graph, resolved


__all__ = [
    "DependencyGraph",
    "PLACEHOLDER_PATTERN",
    "build_graph",
    "find_references",
    "find_output_references",
    "resolve_placeholders",
]
