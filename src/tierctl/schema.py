"""Resource types and the per-type rules the planner needs.

The engine does not know cloud APIs. It only needs to know, per type, which
attributes force a replacement, which attributes are owned by the
autoscaling controller rather than the user, and whether a resource sits on
the traffic path behind a load balancer.
"""

from dataclasses import dataclass, field
from enum import Enum


class ResourceType(Enum):
    """Resource types of a load-balanced, auto-scaling web tier."""

    IMAGE_LOOKUP = "image_lookup"
    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_GROUP = "security_group"
    SECURITY_GROUP_RULE = "security_group_rule"
    LAUNCH_TEMPLATE = "launch_template"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    AUTOSCALING_GROUP = "autoscaling_group"
    SCALING_POLICY = "scaling_policy"
    INSTANCE = "instance"  # Member of an autoscaling group

    @classmethod
    def parse(cls, value: str) -> "ResourceType":
        """Parse a type name, raising ValueError with the valid choices."""
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown resource type '{value}'. Valid types: {valid}") from None


@dataclass(frozen=True)
class ResourceSchema:
    """Planner rules for one resource type.

    Attributes:
        immutable: Attributes whose change forces a replacement
        controller_managed: Attributes written by the autoscaling controller;
            changes in the declaration are ignored by the diff
        load_balancer_kind: Resource is part of the load-balancing layer
        serves_traffic: Resource itself receives traffic
        outputs: Output names the provider returns besides ``id``
        mutable_outputs: Outputs that an in-place update may change
    """

    immutable: frozenset[str] = field(default_factory=frozenset)
    controller_managed: frozenset[str] = field(default_factory=frozenset)
    load_balancer_kind: bool = False
    serves_traffic: bool = False
    outputs: tuple[str, ...] = ()
    mutable_outputs: frozenset[str] = field(default_factory=frozenset)


_SCHEMAS: dict[ResourceType, ResourceSchema] = {
    ResourceType.IMAGE_LOOKUP: ResourceSchema(
        immutable=frozenset({"owners", "name_filter", "architecture"}),
        outputs=("image_id",),
    ),
    ResourceType.NETWORK: ResourceSchema(
        immutable=frozenset({"cidr_block"}),
    ),
    ResourceType.SUBNET: ResourceSchema(
        immutable=frozenset({"network_id", "cidr_block", "availability_zone"}),
    ),
    ResourceType.SECURITY_GROUP: ResourceSchema(
        immutable=frozenset({"name", "network_id"}),
    ),
    ResourceType.SECURITY_GROUP_RULE: ResourceSchema(
        immutable=frozenset(
            {
                "security_group_id",
                "direction",
                "protocol",
                "from_port",
                "to_port",
                "cidr_blocks",
                "source_security_group_id",
            }
        ),
    ),
    ResourceType.LAUNCH_TEMPLATE: ResourceSchema(
        immutable=frozenset({"image_id", "instance_type", "user_data"}),
        outputs=("latest_version",),
        mutable_outputs=frozenset({"latest_version"}),
    ),
    ResourceType.LOAD_BALANCER: ResourceSchema(
        immutable=frozenset({"name", "internal", "load_balancer_type"}),
        load_balancer_kind=True,
        serves_traffic=True,
        outputs=("dns_name",),
    ),
    ResourceType.TARGET_GROUP: ResourceSchema(
        immutable=frozenset({"name", "port", "protocol", "network_id"}),
        load_balancer_kind=True,
    ),
    ResourceType.LISTENER: ResourceSchema(
        immutable=frozenset({"load_balancer_id"}),
        load_balancer_kind=True,
        serves_traffic=True,
    ),
    ResourceType.AUTOSCALING_GROUP: ResourceSchema(
        immutable=frozenset({"name"}),
        controller_managed=frozenset({"desired_capacity"}),
        serves_traffic=True,
    ),
    ResourceType.SCALING_POLICY: ResourceSchema(
        immutable=frozenset({"autoscaling_group_name", "policy_type"}),
    ),
    ResourceType.INSTANCE: ResourceSchema(
        immutable=frozenset({"image_id", "instance_type", "subnet_id", "user_data"}),
        serves_traffic=True,
        outputs=("private_ip",),
    ),
}


def get_schema(resource_type: ResourceType) -> ResourceSchema:
    """Get planner rules for a resource type."""
    return _SCHEMAS.get(resource_type, ResourceSchema())


__all__ = ["ResourceSchema", "ResourceType", "get_schema"]
