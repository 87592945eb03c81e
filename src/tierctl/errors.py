"""Exception hierarchy for tierctl.

Philosophy:
- One base class so the CLI can catch everything tierctl raises
- Config errors are fatal and raised before anything is applied
- Provider errors carry the provider code and whether it is worth retrying

Public API (Studs):
    TierctlError - Base exception
    ConfigError - Fatal configuration problem (no partial apply)
    CycleError - Dependency cycle between resources
    UnresolvedReferenceError - Placeholder or depends_on names an unknown resource
    StackFileError - Stack file cannot be read or is malformed
    ProviderError - Provider call failed (transient or permanent)
    ResourceTimeoutError - Resource never reached ready state
    MetricUnavailableError - Metric could not be read for an interval
    StateStoreError - State file unreadable or unwritable
    StalePlanError - Plan computed against state that has since changed
"""

# Provider codes treated as transient when the provider does not say otherwise.
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequests",
        "ServiceUnavailable",
        "InternalError",
        "DependencyViolation",
        "InvalidGroup.NotFound",
        "IncorrectState",
        "ResourceNotReady",
        "Timeout",
    }
)


class TierctlError(Exception):
    """Base exception for all tierctl errors."""


class ConfigError(TierctlError):
    """Raised when the desired configuration is invalid."""


class CycleError(ConfigError):
    """Raised when resource references form a cycle."""

    def __init__(self, members: list[str]):
        self.members = list(members)
        path = " -> ".join([*self.members, self.members[0]]) if self.members else "<empty>"
        super().__init__(f"Dependency cycle detected: {path}")


class UnresolvedReferenceError(ConfigError):
    """Raised when a resource references an id that does not exist."""

    def __init__(self, resource_id: str, reference: str):
        self.resource_id = resource_id
        self.reference = reference
        super().__init__(
            f"Resource '{resource_id}' references unknown resource '{reference}'"
        )


class StackFileError(ConfigError):
    """Raised when a stack file cannot be parsed."""


class ProviderError(TierctlError):
    """Raised by a resource provider when an operation fails.

    Args:
        message: Human readable error
        code: Provider-reported error code
        transient: Override transient classification (default: derived from code)
    """

    def __init__(self, message: str, code: str = "ProviderError", transient: bool | None = None):
        super().__init__(message)
        self.code = code
        self.transient = code in TRANSIENT_ERROR_CODES if transient is None else transient


class ResourceTimeoutError(ProviderError):
    """Raised when a resource does not become ready within the wait budget."""

    def __init__(self, resource_id: str, timeout: float):
        self.resource_id = resource_id
        self.timeout = timeout
        super().__init__(
            f"Resource '{resource_id}' not ready after {timeout:.1f}s",
            code="Timeout",
            transient=True,
        )


class MetricUnavailableError(TierctlError):
    """Raised when a metric value cannot be read for an evaluation interval."""


class StateStoreError(TierctlError):
    """Raised when the state file cannot be read or written."""


class StalePlanError(TierctlError):
    """Raised when an autoscaling group changed between plan and apply."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(
            f"Autoscaling group '{group_id}' changed since the plan was computed; "
            "run plan again"
        )


__all__ = [
    "TRANSIENT_ERROR_CODES",
    "ConfigError",
    "CycleError",
    "MetricUnavailableError",
    "ProviderError",
    "ResourceTimeoutError",
    "StalePlanError",
    "StackFileError",
    "StateStoreError",
    "TierctlError",
    "UnresolvedReferenceError",
]
