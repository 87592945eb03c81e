"""Configuration for the reconciliation engine and autoscaling controller.

Settings come from three layers, later layers winning:

1. Built-in defaults on the dataclasses below
2. ``~/.tierctl/config.toml`` (or an explicit path), sections ``[engine]``
   and ``[autoscaling]``
3. ``TIERCTL_*`` environment variables

Design Philosophy:
- Sensible defaults: Works out of the box
- Environment-aware: Every value can be overridden via env vars
- Validated early: Bad values fail at load time, not mid-apply
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
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

from tierctl.errors import ConfigError

logger = logging.getLogger(__name__)


def default_config_dir() -> Path:
    """~/.tierctl, resolved against the current home directory."""
    return Path.home() / ".tierctl"


def default_config_file() -> Path:
    return default_config_dir() / "config.toml"


def default_state_file() -> Path:
    return default_config_dir() / "state.json"


# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "TIERCTL_MAX_WORKERS": ("engine", "max_workers"),
    "TIERCTL_RETRY_MAX_ATTEMPTS": ("engine", "max_attempts"),
    "TIERCTL_RETRY_INITIAL_DELAY": ("engine", "initial_delay"),
    "TIERCTL_RETRY_MAX_DELAY": ("engine", "max_delay"),
    "TIERCTL_RETRY_JITTER_ENABLED": ("engine", "jitter_enabled"),
    "TIERCTL_READY_TIMEOUT": ("engine", "ready_timeout"),
    "TIERCTL_STATE_PATH": ("engine", "state_path"),
    "TIERCTL_EVALUATION_INTERVAL": ("autoscaling", "evaluation_interval"),
    "TIERCTL_SCALE_OUT_COOLDOWN": ("autoscaling", "scale_out_cooldown"),
    "TIERCTL_SCALE_IN_COOLDOWN": ("autoscaling", "scale_in_cooldown"),
}


@dataclass
class EngineConfig:
    """Reconciler settings."""

    max_workers: int = 4
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter_enabled: bool = True
    ready_timeout: float = 300.0
    state_path: Path = field(default_factory=default_state_file)

    def __post_init__(self):
        """Validate configuration."""
        self.state_path = Path(self.state_path).expanduser()
        if self.max_workers < 1:
            raise ConfigError("engine.max_workers must be >= 1")
        if self.max_attempts < 1:
            raise ConfigError("engine.max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigError("engine retry delays cannot be negative")
        if self.ready_timeout <= 0:
            raise ConfigError("engine.ready_timeout must be positive")


@dataclass
class AutoscalingConfig:
    """Autoscaling controller settings.

    Scale-out cooldown is typically shorter than scale-in cooldown so the
    tier reacts quickly to load spikes and releases capacity slowly.
    """

    evaluation_interval: float = 60.0
    scale_out_cooldown: float = 60.0
    scale_in_cooldown: float = 300.0
    default_target_value: float = 50.0

    def __post_init__(self):
        """Validate configuration."""
        if self.evaluation_interval <= 0:
            raise ConfigError("autoscaling.evaluation_interval must be positive")
        if self.scale_out_cooldown < 0 or self.scale_in_cooldown < 0:
            raise ConfigError("autoscaling cooldowns cannot be negative")
        if self.default_target_value <= 0:
            raise ConfigError("autoscaling.default_target_value must be positive")


@dataclass
class TierctlConfig:
    """Top-level configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    autoscaling: AutoscalingConfig = field(default_factory=AutoscalingConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a TOML-friendly dictionary."""
        data = asdict(self)
        data["engine"]["state_path"] = str(self.engine.state_path)
        return data


def _coerce(value: Any, target: Any, name: str) -> Any:
    """Coerce a raw config or env value to the type of ``target``."""
    try:
        if isinstance(target, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(target, int):
            return int(value)
        if isinstance(target, float):
            return float(value)
        if isinstance(target, Path):
            return Path(str(value))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return value


def _build_section(cls: type, raw: dict[str, Any], section: str) -> Any:
    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}")
    values = {
        key: _coerce(value, getattr(defaults, key), f"{section}.{key}")
        for key, value in raw.items()
    }
    return cls(**values)


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomli.load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e
    except tomli.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def load_config(config_path: Path | str | None = None) -> TierctlConfig:
    """Load configuration from file and environment.

    Args:
        config_path: Explicit config file (default: ~/.tierctl/config.toml if present)

    Returns:
        Validated TierctlConfig

    Raises:
        ConfigError: If the file is missing, malformed, or holds invalid values
    """
    raw: dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        raw = _read_toml(path)
    else:
        path = default_config_file()
        if path.exists():
            raw = _read_toml(path)
            logger.debug(f"Loaded config from {path}")

    sections: dict[str, dict[str, Any]] = {
        "engine": dict(raw.get("engine", {})),
        "autoscaling": dict(raw.get("autoscaling", {})),
    }
    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            sections[section][key] = value

    return TierctlConfig(
        engine=_build_section(EngineConfig, sections["engine"], "engine"),
        autoscaling=_build_section(AutoscalingConfig, sections["autoscaling"], "autoscaling"),
    )


# Global configuration instance (lazily loaded)
_config: TierctlConfig | None = None


def get_config() -> TierctlConfig:
    """Get global configuration, loading it on first access."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset global configuration.

    Forces reload from file and environment on next access.
    """
    global _config
    _config = None


__all__ = [
    "AutoscalingConfig",
    "EngineConfig",
    "TierctlConfig",
    "default_config_dir",
    "default_config_file",
    "default_state_file",
    "get_config",
    "load_config",
    "reset_config",
]
