"""Metric and health sources consumed by the autoscaling controller.

Philosophy:
- The controller never talks to a monitoring backend directly
- A source returns per-member readings; averaging happens in the policy
- Missing data is an exception, never a zero

Public API (Studs):
    MetricSource - Per-member metric readings for a group
    HealthProbe - Per-member health signals for a group
    StaticMetricSource / StaticHealthProbe - In-memory sources for tests
    JsonFileSignals - Both sources backed by a JSON file (CLI dry runs)
"""

import json
import logging
import math
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from tierctl.autoscaling.models import HealthSignal, HealthSource, MetricType
from tierctl.errors import ConfigError, MetricUnavailableError

logger = logging.getLogger(__name__)


class MetricSource(ABC):
    """Reads a metric for the members of a group."""

    @abstractmethod
    def member_metrics(
        self, group_id: str, metric: MetricType, member_ids: Sequence[str]
    ) -> dict[str, float]:
        """Latest datapoint per member.

        Members without a datapoint are left out of the result.

        Raises:
            MetricUnavailableError: If the metric cannot be read at all
        """


class HealthProbe(ABC):
    """Reports member health."""

    @abstractmethod
    def health_signals(self, group_id: str, member_ids: Sequence[str]) -> list[HealthSignal]:
        """Health signals for members. Members without a signal count as healthy."""


class StaticMetricSource(MetricSource):
    """Metric source holding values set by the caller.

    Example:
        >>> source = StaticMetricSource()
        >>> source.set_value("web_asg", MetricType.CPU_UTILIZATION, 80.0)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._group_values: dict[tuple[str, MetricType], float] = {}
        self._member_values: dict[tuple[str, MetricType], dict[str, float]] = {}
        self._unavailable: set[str] = set()

    def set_value(self, group_id: str, metric: MetricType, value: float) -> None:
        """Report the same value for every member of a group."""
        with self._lock:
            self._group_values[(group_id, metric)] = value
            self._unavailable.discard(group_id)

    def set_member_values(self, group_id: str, metric: MetricType, values: dict[str, float]) -> None:
        """Report individual values per member."""
        with self._lock:
            self._member_values[(group_id, metric)] = dict(values)
            self._unavailable.discard(group_id)

    def mark_unavailable(self, group_id: str) -> None:
        """Make reads for a group raise MetricUnavailableError."""
        with self._lock:
            self._unavailable.add(group_id)

    def member_metrics(
        self, group_id: str, metric: MetricType, member_ids: Sequence[str]
    ) -> dict[str, float]:
        with self._lock:
            if group_id in self._unavailable:
                raise MetricUnavailableError(f"{metric.value} unavailable for {group_id}")
            per_member = self._member_values.get((group_id, metric))
            if per_member is not None:
                return {m: per_member[m] for m in member_ids if m in per_member}
            value = self._group_values.get((group_id, metric))
            if value is None:
                raise MetricUnavailableError(f"No {metric.value} datapoints for {group_id}")
            return dict.fromkeys(member_ids, value)


class StaticHealthProbe(HealthProbe):
    """Health probe holding per-member health set by the caller."""

    def __init__(self, source: HealthSource = HealthSource.INSTANCE_PROBE):
        self.source = source
        self._lock = threading.Lock()
        self._unhealthy: set[str] = set()

    def set_unhealthy(self, member_id: str, unhealthy: bool = True) -> None:
        with self._lock:
            if unhealthy:
                self._unhealthy.add(member_id)
            else:
                self._unhealthy.discard(member_id)

    def health_signals(self, group_id: str, member_ids: Sequence[str]) -> list[HealthSignal]:
        with self._lock:
            return [HealthSignal(m, m not in self._unhealthy, self.source) for m in member_ids]


class JsonFileSignals(MetricSource, HealthProbe):
    """Metric and health readings from a JSON file, re-read on every call.

    File format::

        {
          "metrics": {"web_asg": {"cpu_utilization": 72.5}},
          "health": {"web_asg-1a2b3c4d": false}
        }

    A metric value may be a number (all members) or an object mapping
    member ids to numbers.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, Any]:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in signals file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Signals file {self.path} must hold a JSON object")
        return data

    def member_metrics(
        self, group_id: str, metric: MetricType, member_ids: Sequence[str]
    ) -> dict[str, float]:
        """Latest reading per member.

        Raises:
            MetricUnavailableError: If the reading is missing or not numeric
        """
        metrics = self._read().get("metrics", {})
        group = metrics.get(group_id, {}) if isinstance(metrics, dict) else None
        if not isinstance(group, dict):
            raise MetricUnavailableError(
                f"Metrics for {group_id} in {self.path} must be a JSON object"
            )
        value = group.get(metric.value)
        if value is None:
            raise MetricUnavailableError(f"No {metric.value} datapoints for {group_id} in {self.path}")
        try:
            if isinstance(value, dict):
                readings = {m: float(value[m]) for m in member_ids if m in value}
            else:
                readings = dict.fromkeys(member_ids, float(value))
        except (TypeError, ValueError) as e:
            raise MetricUnavailableError(
                f"Non-numeric {metric.value} reading for {group_id} in {self.path}: {e}"
            ) from e
        if not all(math.isfinite(v) for v in readings.values()):
            raise MetricUnavailableError(
                f"Non-finite {metric.value} reading for {group_id} in {self.path}"
            )
        return readings

    def health_signals(self, group_id: str, member_ids: Sequence[str]) -> list[HealthSignal]:
        health = self._read().get("health", {})
        if not isinstance(health, dict):
            raise ConfigError(f"Health section of {self.path} must be a JSON object")
        return [
            HealthSignal(m, bool(health[m]), HealthSource.INSTANCE_PROBE)
            for m in member_ids
            if m in health
        ]


__all__ = [
    "HealthProbe",
    "JsonFileSignals",
    "MetricSource",
    "StaticHealthProbe",
    "StaticMetricSource",
]
