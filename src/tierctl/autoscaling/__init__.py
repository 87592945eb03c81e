"""Autoscaling: target-tracking policy math, signal sources and models.

The controller and service live in ``tierctl.autoscaling.controller`` and
``tierctl.autoscaling.service``; they depend on the engine, which in turn
uses the models exported here.
"""

from tierctl.autoscaling.models import (
    ControllerPhase,
    HealthSignal,
    HealthSource,
    MetricType,
    ScalableGroup,
    ScalingDecision,
    TargetTrackingPolicy,
)
from tierctl.autoscaling.policy import TargetTrackingScaler
from tierctl.autoscaling.sources import (
    HealthProbe,
    JsonFileSignals,
    MetricSource,
    StaticHealthProbe,
    StaticMetricSource,
)

__all__ = [
    "ControllerPhase",
    "HealthProbe",
    "HealthSignal",
    "HealthSource",
    "JsonFileSignals",
    "MetricSource",
    "MetricType",
    "ScalableGroup",
    "ScalingDecision",
    "StaticHealthProbe",
    "StaticMetricSource",
    "TargetTrackingPolicy",
    "TargetTrackingScaler",
]
