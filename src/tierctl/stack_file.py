"""Stack file loader.

A stack file is TOML describing the desired resources and their scaling
policies::

    [[resource]]
    id = "web_sg"
    type = "security_group"
    [resource.attributes]
    name = "web"
    network_id = "${vpc.id}"

    [[resource]]
    id = "web_asg"
    type = "autoscaling_group"
    create_before_destroy = true
    [resource.attributes]
    min_size = 2
    max_size = 10
    launch_template_id = "${web_lt.id}"

    [[policy]]
    group = "web_asg"
    metric = "cpu_utilization"
    target_value = 10.0

References between resources are only expressed with ``${id.output}``
placeholders and ``depends_on``; the graph builder validates them.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for Python versions shipping tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

from tierctl.autoscaling.models import MetricType, TargetTrackingPolicy
from tierctl.engine.models import Resource
from tierctl.errors import StackFileError
from tierctl.schema import ResourceType

logger = logging.getLogger(__name__)

_RESOURCE_KEYS = {"id", "type", "attributes", "depends_on", "create_before_destroy"}
_POLICY_KEYS = {"group", "metric", "target_value"}


@dataclass
class Stack:
    """Desired resources and scaling policies read from a stack file."""

    resources: list[Resource] = field(default_factory=list)
    policies: list[TargetTrackingPolicy] = field(default_factory=list)


def _parse_resource(raw: Any, index: int) -> Resource:
    if not isinstance(raw, dict):
        raise StackFileError(f"resource #{index + 1} must be a table")
    unknown = set(raw) - _RESOURCE_KEYS
    if unknown:
        raise StackFileError(f"resource #{index + 1}: unknown keys {', '.join(sorted(unknown))}")
    resource_id = raw.get("id")
    if not isinstance(resource_id, str) or not resource_id:
        raise StackFileError(f"resource #{index + 1}: 'id' is required")
    try:
        resource_type = ResourceType.parse(str(raw.get("type", "")))
    except ValueError as e:
        raise StackFileError(f"resource '{resource_id}': {e}") from e
    if resource_type == ResourceType.INSTANCE:
        raise StackFileError(
            f"resource '{resource_id}': instances are managed by autoscaling groups"
        )

    attributes = raw.get("attributes", {})
    if not isinstance(attributes, dict):
        raise StackFileError(f"resource '{resource_id}': 'attributes' must be a table")
    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise StackFileError(f"resource '{resource_id}': 'depends_on' must be a list of ids")
    create_before_destroy = raw.get("create_before_destroy", False)
    if not isinstance(create_before_destroy, bool):
        raise StackFileError(f"resource '{resource_id}': 'create_before_destroy' must be a boolean")

    return Resource(
        id=resource_id,
        type=resource_type,
        attributes=attributes,
        depends_on=frozenset(depends_on),
        create_before_destroy=create_before_destroy,
    )


def _parse_policy(raw: Any, index: int, default_target: float) -> TargetTrackingPolicy:
    if not isinstance(raw, dict):
        raise StackFileError(f"policy #{index + 1} must be a table")
    unknown = set(raw) - _POLICY_KEYS
    if unknown:
        raise StackFileError(f"policy #{index + 1}: unknown keys {', '.join(sorted(unknown))}")
    try:
        return TargetTrackingPolicy(
            group_id=str(raw.get("group", "")),
            metric=MetricType(raw.get("metric", MetricType.CPU_UTILIZATION.value)),
            target_value=float(raw.get("target_value", default_target)),
        )
    except (TypeError, ValueError) as e:
        raise StackFileError(f"policy #{index + 1}: {e}") from e


def parse_stack(data: dict[str, Any], default_target: float = 50.0) -> Stack:
    """Build a Stack from already parsed TOML data.

    Args:
        data: Parsed document
        default_target: Target value for policies that do not set one

    Raises:
        StackFileError: If the document does not describe a valid stack
    """
    unknown = set(data) - {"resource", "policy"}
    if unknown:
        raise StackFileError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

    resources = [_parse_resource(raw, i) for i, raw in enumerate(data.get("resource", []))]
    types = {r.id: r.type for r in resources}
    policies = [
        _parse_policy(raw, i, default_target) for i, raw in enumerate(data.get("policy", []))
    ]
    for policy in policies:
        if types.get(policy.group_id) != ResourceType.AUTOSCALING_GROUP:
            raise StackFileError(
                f"Policy targets '{policy.group_id}', which is not an autoscaling_group"
            )
    return Stack(resources=resources, policies=policies)


def load_stack(path: Path | str, default_target: float = 50.0) -> Stack:
    """Load and validate a stack file.

    Args:
        path: Stack file path
        default_target: Target value for policies that do not set one

    Returns:
        Stack with resources in declaration order

    Raises:
        StackFileError: If the file is missing, not TOML, or malformed
    """
    path = Path(path).expanduser()
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except FileNotFoundError as e:
        raise StackFileError(f"Stack file not found: {path}") from e
    except OSError as e:
        raise StackFileError(f"Failed to read stack file {path}: {e}") from e
    except tomli.TOMLDecodeError as e:
        raise StackFileError(f"Invalid TOML in {path}: {e}") from e

    stack = parse_stack(data, default_target)
    logger.debug(
        f"Loaded {len(stack.resources)} resource(s) and {len(stack.policies)} policy(ies) from {path}"
    )
    return stack


__all__ = ["Stack", "load_stack", "parse_stack"]
