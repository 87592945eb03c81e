"""Base resource provider interface."""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tierctl.errors import ResourceTimeoutError
from tierctl.schema import ResourceType


@dataclass
class ProvisionedResource:
    """What a provider returns after creating a resource."""

    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Cloud resource provider consumed by the reconciler.

    Providers are treated as at-least-once and eventually consistent:
    operations may raise transient ProviderErrors and are retried, and a
    created resource may take a while to report ready.
    """

    poll_interval: float = 2.0

    @abstractmethod
    def create(
        self, resource_type: ResourceType, resource_id: str, attributes: dict[str, Any]
    ) -> ProvisionedResource:
        """Create a resource.

        Args:
            resource_type: Type of resource
            resource_id: Declared id (for tagging / idempotency tokens)
            attributes: Fully resolved attributes

        Returns:
            Provider id and outputs
        """

    @abstractmethod
    def read(self, resource_type: ResourceType, provider_id: str) -> dict[str, Any] | None:
        """Read current attributes, or None if the resource no longer exists."""

    @abstractmethod
    def update(
        self, resource_type: ResourceType, provider_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Update mutable attributes in place.

        Returns:
            Outputs after the update
        """

    @abstractmethod
    def delete(self, resource_type: ResourceType, provider_id: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""

    def is_ready(self, resource_type: ResourceType, provider_id: str) -> bool:
        """Whether the resource has reached a ready/healthy state."""
        return True

    def wait_ready(
        self,
        resource_type: ResourceType,
        provider_id: str,
        timeout: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Poll ``is_ready`` until it returns True.

        Raises:
            ResourceTimeoutError: If the resource is not ready within ``timeout``
        """
        deadline = time.monotonic() + timeout
        while not self.is_ready(resource_type, provider_id):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResourceTimeoutError(provider_id, timeout)
            sleep(min(self.poll_interval, remaining))
