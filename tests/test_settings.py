"""Tests for settings storage and validation."""

from dataclasses import replace

import pytest
import yaml

from roadmap_cascade.core.errors import ConfigError
from roadmap_cascade.settings import (
    CheckpointSettings,
    ConfigValidator,
    DriftScope,
    ExecutorSettings,
    Settings,
    SettingsStorage,
    load_validated,
)


def _write_config(config_dir, data):
    with open(config_dir / "config.yaml", "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)


class TestSettingsStorage:
    """Tests for SettingsStorage class."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = SettingsStorage(tmp_path).load()
        assert settings == Settings()
        assert settings.max_concurrency == 3
        assert settings.retry_attempts == 3
        assert settings.session_timeout_ms == 1_800_000
        assert settings.critical_drift_scope == DriftScope.SUBGRAPH

    def test_save_and_load_round_trip(self, tmp_path):
        storage = SettingsStorage(tmp_path)
        settings = Settings(
            max_concurrency=5,
            checkpoints=CheckpointSettings(after_task_alignment=False),
            critical_drift_scope=DriftScope.GLOBAL,
            phase_modes={"shape": "parallel"},
            executor=ExecutorSettings(command=["agent", "run"], model="large"),
            core_abstractions=["User"],
        )

        storage.save(settings)

        assert storage.config_file.exists()
        assert storage.load() == settings

    def test_camel_case_keys(self, tmp_path, config_dir):
        _write_config(config_dir, {
            "maxConcurrency": 2,
            "retryAttempts": 1,
            "sessionTimeoutMs": 60000,
            "checkpointsEnabled": {"afterSpecAlignment": False, "onHighSeverityDrift": False},
            "criticalDriftScope": "global",
            "executor": {"command": "my-agent --json", "allowedCapabilities": ["edit"]},
        })

        settings = SettingsStorage(tmp_path).load()

        assert settings.max_concurrency == 2
        assert settings.retry_attempts == 1
        assert settings.session_timeout_ms == 60000
        assert settings.checkpoints.after_spec_alignment is False
        assert settings.checkpoints.after_task_alignment is True
        assert settings.checkpoints.on_high_severity_drift is False
        assert settings.critical_drift_scope == DriftScope.GLOBAL
        assert settings.executor.command == ["my-agent", "--json"]
        assert settings.executor.allowed_capabilities == ["edit"]

    def test_command_string_keeps_quoted_arguments(self, tmp_path, config_dir):
        _write_config(config_dir, {"executor": {"command": 'my-agent --prompt "two words"'}})

        settings = SettingsStorage(tmp_path).load()

        assert settings.executor.command == ["my-agent", "--prompt", "two words"]

    def test_invalid_yaml(self, tmp_path, config_dir):
        (config_dir / "config.yaml").write_text("max_concurrency: [1, 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            SettingsStorage(tmp_path).load()

    def test_not_a_mapping(self, tmp_path, config_dir):
        (config_dir / "config.yaml").write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            SettingsStorage(tmp_path).load()

    def test_unknown_scope(self, tmp_path, config_dir):
        _write_config(config_dir, {"critical_drift_scope": "everywhere"})
        with pytest.raises(ConfigError):
            SettingsStorage(tmp_path).load()

    def test_empty_file_gives_defaults(self, tmp_path, config_dir):
        (config_dir / "config.yaml").write_text("", encoding="utf-8")
        assert SettingsStorage(tmp_path).load() == Settings()


class TestConfigValidator:
    """Tests for ConfigValidator class."""

    def test_defaults_are_valid(self):
        result = ConfigValidator().validate(Settings())
        assert result.valid
        assert result.errors == []

    @pytest.mark.parametrize("changes", [
        {"max_concurrency": 0},
        {"max_concurrency": "three"},
        {"retry_attempts": -1},
        {"session_timeout_ms": 0},
        {"retry_base_delay_seconds": -1.0},
        {"lease_timeout_seconds": "soon"},
        {"phase_gates": {"deploy": "specced"}},
        {"phase_gates": {"shape": "done"}},
        {"phase_modes": {"implement": "eventually"}},
        {"executor": ExecutorSettings(command=[])},
        {"log_level": "LOUD"},
        {"checkpoints": CheckpointSettings(after_spec_alignment="yes")},
    ])
    def test_invalid_values(self, changes):
        result = ConfigValidator().validate(replace(Settings(), **changes))
        assert not result.valid
        assert len(result.errors) == 1

    def test_every_error_reported(self):
        settings = replace(Settings(), max_concurrency=0, retry_attempts=-2, log_level="LOUD")
        result = ConfigValidator().validate(settings)
        assert len(result.errors) == 3

    def test_warnings_do_not_invalidate(self):
        settings = replace(Settings(), max_concurrency=20, retry_attempts=0, session_timeout_ms=1000)
        result = ConfigValidator().validate(settings)
        assert result.valid
        assert len(result.warnings) == 3


class TestLoadValidated:
    """Tests for load_validated."""

    def test_valid_config(self, tmp_path, config_dir):
        _write_config(config_dir, {"max_concurrency": 4})
        assert load_validated(SettingsStorage(tmp_path)).max_concurrency == 4

    def test_invalid_config_lists_errors(self, tmp_path, config_dir):
        _write_config(config_dir, {"max_concurrency": 0, "phase_modes": {"shape": "fast"}})

        with pytest.raises(ConfigError) as exc_info:
            load_validated(SettingsStorage(tmp_path))

        assert len(exc_info.value.errors) == 2
