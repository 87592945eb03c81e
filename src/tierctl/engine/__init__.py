"""Reconciliation engine: graph, planner, executor and state."""

from tierctl.engine.executor import PlanExecutor
from tierctl.engine.graph import DependencyGraph, build_graph
from tierctl.engine.models import (
    ApplyResult,
    ExitCode,
    ItemResult,
    ItemStatus,
    Plan,
    PlanAction,
    PlanItem,
    Resource,
    StateRecord,
)
from tierctl.engine.planner import Planner
from tierctl.engine.reconciler import Reconciler
from tierctl.engine.state_store import StateStore

__all__ = [
    "ApplyResult",
    "DependencyGraph",
    "ExitCode",
    "ItemResult",
    "ItemStatus",
    "Plan",
    "PlanAction",
    "PlanExecutor",
    "PlanItem",
    "Planner",
    "Reconciler",
    "Resource",
    "StateRecord",
    "StateStore",
    "build_graph",
]
