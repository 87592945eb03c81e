"""Tests for configuration loading."""

from pathlib import Path

import pytest

from tierctl.config import (
    AutoscalingConfig,
    EngineConfig,
    TierctlConfig,
    default_config_file,
    default_state_file,
    get_config,
    load_config,
    reset_config,
)
from tierctl.errors import ConfigError


@pytest.fixture
def no_default_file(temp_home_dir):
    """A home directory without ~/.tierctl/config.toml."""
    return temp_home_dir


class TestDefaults:
    """Built-in defaults."""

    def test_defaults(self, no_default_file):
        config = load_config()
        assert config.engine.max_workers == 4
        assert config.engine.max_attempts == 3
        assert config.autoscaling.scale_out_cooldown < config.autoscaling.scale_in_cooldown

    def test_default_paths_follow_home(self, temp_home_dir):
        assert default_config_file() == temp_home_dir / ".tierctl" / "config.toml"
        assert default_state_file() == temp_home_dir / ".tierctl" / "state.json"
        assert EngineConfig().state_path == temp_home_dir / ".tierctl" / "state.json"

    def test_default_file_is_read_from_current_home(self, temp_home_dir):
        config_dir = temp_home_dir / ".tierctl"
        config_dir.mkdir()
        (config_dir / "config.toml").write_text("[engine]\nmax_workers = 6\n")
        assert load_config().engine.max_workers == 6

    def test_to_dict_is_toml_friendly(self):
        data = TierctlConfig(engine=EngineConfig(state_path=Path("/tmp/s.json"))).to_dict()
        assert data["engine"]["state_path"] == "/tmp/s.json"
        assert data["autoscaling"]["evaluation_interval"] == 60.0


class TestFileAndEnvironment:
    """File and environment layers."""

    def test_file_values(self, tmp_path, temp_home_dir):
        path = tmp_path / "config.toml"
        path.write_text(
            "[engine]\nmax_workers = 8\nstate_path = '~/stacks/state.json'\n"
            "[autoscaling]\nscale_in_cooldown = 600\n"
        )
        config = load_config(path)
        assert config.engine.max_workers == 8
        assert config.engine.state_path == temp_home_dir / "stacks" / "state.json"
        assert config.autoscaling.scale_in_cooldown == 600.0

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text("[engine]\nmax_workers = 8\n")
        monkeypatch.setenv("TIERCTL_MAX_WORKERS", "2")
        monkeypatch.setenv("TIERCTL_RETRY_JITTER_ENABLED", "false")
        config = load_config(path)
        assert config.engine.max_workers == 2
        assert config.engine.jitter_enabled is False

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[engine\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[engine]\nworkers = 8\n")
        with pytest.raises(ConfigError, match="Unknown keys in \\[engine\\]: workers"):
            load_config(path)

    def test_bad_env_value(self, no_default_file, monkeypatch):
        monkeypatch.setenv("TIERCTL_MAX_WORKERS", "many")
        with pytest.raises(ConfigError, match="engine.max_workers"):
            load_config()


class TestValidation:
    """Values are validated at load time."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_workers": 0},
            {"max_attempts": 0},
            {"initial_delay": -1.0},
            {"ready_timeout": 0},
        ],
    )
    def test_engine_rejects(self, kwargs):
        with pytest.raises(ConfigError):
            EngineConfig(**kwargs)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"evaluation_interval": 0},
            {"scale_in_cooldown": -1},
            {"default_target_value": 0},
        ],
    )
    def test_autoscaling_rejects(self, kwargs):
        with pytest.raises(ConfigError):
            AutoscalingConfig(**kwargs)


class TestGlobalConfig:
    """Lazily loaded global config."""

    def test_get_config_is_cached_until_reset(self, no_default_file, monkeypatch):
        first = get_config()
        assert get_config() is first
        monkeypatch.setenv("TIERCTL_MAX_WORKERS", "7")
        reset_config()
        assert get_config().engine.max_workers == 7
