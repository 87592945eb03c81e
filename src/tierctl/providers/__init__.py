"""Resource providers."""

import importlib
from pathlib import Path

from tierctl.errors import ConfigError
from tierctl.providers.base import ProvisionedResource, ResourceProvider
from tierctl.providers.memory import MemoryProvider


def load_provider(spec: str | None, state_dir: Path | None = None) -> ResourceProvider:
    """Instantiate a provider from a ``module:Class`` import path.

    Args:
        spec: Import path, or None/"memory" for the built-in memory provider
        state_dir: Directory where the memory provider persists its table

    Returns:
        Provider instance

    Raises:
        ConfigError: If the import path is malformed or does not name a provider
    """
    if spec in (None, "", "memory"):
        path = state_dir / "memory-provider.json" if state_dir is not None else None
        return MemoryProvider(path)

    module_name, sep, attr = spec.partition(":")
    if not sep:
        raise ConfigError(f"Invalid provider path '{spec}'. Expected format 'module:Class'.")
    try:
        module = importlib.import_module(module_name)
        provider_class = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load provider '{spec}': {e}") from e
    if not (isinstance(provider_class, type) and issubclass(provider_class, ResourceProvider)):
        raise ConfigError(f"'{spec}' is not a ResourceProvider subclass")
    return provider_class()


__all__ = ["MemoryProvider", "ProvisionedResource", "ResourceProvider", "load_provider"]
