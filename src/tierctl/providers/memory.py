"""In-memory resource provider.

Used by the test suite and for local dry runs from the CLI. Optionally
persists its table to a JSON file so consecutive CLI invocations see the
same "cloud".

Failure injection lets tests simulate throttling, permanent errors and slow
readiness without a real backend.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tierctl.errors import ProviderError
from tierctl.providers.base import ProvisionedResource, ResourceProvider
from tierctl.schema import ResourceType, get_schema

logger = logging.getLogger(__name__)

_ID_PREFIXES = {
    ResourceType.IMAGE_LOOKUP: "ami",
    ResourceType.NETWORK: "vpc",
    ResourceType.SUBNET: "subnet",
    ResourceType.SECURITY_GROUP: "sg",
    ResourceType.SECURITY_GROUP_RULE: "sgr",
    ResourceType.LAUNCH_TEMPLATE: "lt",
    ResourceType.LOAD_BALANCER: "lb",
    ResourceType.TARGET_GROUP: "tg",
    ResourceType.LISTENER: "lsn",
    ResourceType.AUTOSCALING_GROUP: "asg",
    ResourceType.SCALING_POLICY: "pol",
    ResourceType.INSTANCE: "i",
}


@dataclass
class ProviderCall:
    """One recorded provider call."""

    operation: str
    resource_type: ResourceType
    resource_id: str | None
    provider_id: str | None
    at: datetime


@dataclass
class _Fault:
    error: ProviderError
    remaining: int | None  # None = forever


class MemoryProvider(ResourceProvider):
    """Provider that keeps resources in a dictionary.

    Example:
        >>> provider = MemoryProvider()
        >>> provider.fail("web_lt", "create", ProviderError("slow down", code="Throttling"), times=2)
        >>> created = provider.create(ResourceType.LAUNCH_TEMPLATE, "web_lt", {})  # raises twice first
    """

    poll_interval = 0.0

    def __init__(self, path: Path | None = None):
        self.path = Path(path).expanduser() if path is not None else None
        self._lock = threading.RLock()
        self._resources: dict[str, dict[str, Any]] = {}
        self._faults: dict[tuple[str, str], _Fault] = {}
        self._not_ready: dict[str, int] = {}
        self._pending_readiness: dict[str, int] = {}
        self.calls: list[ProviderCall] = []
        if self.path and self.path.exists():
            with open(self.path) as f:
                self._resources = json.load(f)

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail(
        self, resource_id: str, operation: str, error: ProviderError, times: int | None = None
    ) -> None:
        """Make ``operation`` on ``resource_id`` raise ``error``.

        Args:
            resource_id: Declared resource id (for create) or provider id
            operation: create, update, delete or wait_ready
            error: Error to raise
            times: Number of failures before succeeding (None = always)
        """
        with self._lock:
            self._faults[(resource_id, operation)] = _Fault(error=error, remaining=times)

    def delay_readiness(self, resource_id: str, polls: int) -> None:
        """Report not-ready for the first ``polls`` readiness checks after create."""
        with self._lock:
            self._not_ready[resource_id] = polls

    def _maybe_fail(self, key: str | None, operation: str) -> None:
        if key is None:
            return
        fault = self._faults.get((key, operation))
        if fault is None:
            return
        if fault.remaining is not None:
            if fault.remaining <= 0:
                return
            fault.remaining -= 1
        raise fault.error

    def _record(
        self,
        operation: str,
        resource_type: ResourceType,
        resource_id: str | None,
        provider_id: str | None,
    ) -> None:
        self.calls.append(
            ProviderCall(operation, resource_type, resource_id, provider_id, datetime.now(UTC))
        )

    def _persist(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump(self._resources, f, indent=2)
        temp_path.replace(self.path)

    # ------------------------------------------------------------------
    # ResourceProvider
    # ------------------------------------------------------------------

    def create(
        self, resource_type: ResourceType, resource_id: str, attributes: dict[str, Any]
    ) -> ProvisionedResource:
        with self._lock:
            self._maybe_fail(resource_id, "create")
            prefix = _ID_PREFIXES.get(resource_type, "res")
            provider_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
            outputs = self._outputs(resource_type, provider_id, attributes, version=1)
            self._resources[provider_id] = {
                "type": resource_type.value,
                "resource_id": resource_id,
                "attributes": attributes,
                "outputs": outputs,
            }
            if resource_id in self._not_ready:
                self._pending_readiness[provider_id] = self._not_ready.pop(resource_id)
            self._record("create", resource_type, resource_id, provider_id)
            self._persist()
            logger.debug(f"Created {resource_type.value} {resource_id} as {provider_id}")
            return ProvisionedResource(provider_id=provider_id, outputs=dict(outputs))

    def read(self, resource_type: ResourceType, provider_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._resources.get(provider_id)
            return dict(entry["attributes"]) if entry else None

    def update(
        self, resource_type: ResourceType, provider_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        with self._lock:
            entry = self._resources.get(provider_id)
            self._maybe_fail(entry["resource_id"] if entry else None, "update")
            if entry is None:
                raise ProviderError(
                    f"{resource_type.value} {provider_id} does not exist",
                    code="NotFound",
                    transient=False,
                )
            version = int(entry["outputs"].get("latest_version", 0)) + 1
            entry["attributes"] = attributes
            entry["outputs"] = self._outputs(resource_type, provider_id, attributes, version)
            self._record("update", resource_type, entry["resource_id"], provider_id)
            self._persist()
            return dict(entry["outputs"])

    def delete(self, resource_type: ResourceType, provider_id: str) -> None:
        with self._lock:
            entry = self._resources.get(provider_id)
            self._maybe_fail(entry["resource_id"] if entry else None, "delete")
            self._resources.pop(provider_id, None)
            self._pending_readiness.pop(provider_id, None)
            self._record("delete", resource_type, entry["resource_id"] if entry else None, provider_id)
            self._persist()

    def is_ready(self, resource_type: ResourceType, provider_id: str) -> bool:
        with self._lock:
            entry = self._resources.get(provider_id)
            self._maybe_fail(entry["resource_id"] if entry else None, "wait_ready")
            remaining = self._pending_readiness.get(provider_id, 0)
            if remaining > 0:
                self._pending_readiness[provider_id] = remaining - 1
                return False
            self._record("ready", resource_type, entry["resource_id"] if entry else None, provider_id)
            return True

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def exists(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._resources

    def resources_of(self, resource_type: ResourceType) -> list[str]:
        """Provider ids of live resources of a type."""
        with self._lock:
            return [
                pid for pid, entry in self._resources.items() if entry["type"] == resource_type.value
            ]

    @staticmethod
    def _outputs(
        resource_type: ResourceType, provider_id: str, attributes: dict[str, Any], version: int
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {"id": provider_id}
        suffix = provider_id.split("-", 1)[-1]
        for name in get_schema(resource_type).outputs:
            if name == "image_id":
                outputs[name] = f"ami-{suffix[:8]}"
            elif name == "dns_name":
                outputs[name] = f"{attributes.get('name', suffix)}.lb.local"
            elif name == "private_ip":
                octets = [int(suffix[i:i + 2], 16) for i in (0, 2)]
                outputs[name] = f"10.0.{octets[0]}.{octets[1]}"
            elif name == "latest_version":
                outputs[name] = version
        if "name" in attributes:
            outputs.setdefault("name", attributes["name"])
        return outputs
