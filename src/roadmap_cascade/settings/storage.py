"""
Settings storage management for Roadmap Cascade.

This module provides YAML-based configuration file persistence with:
- Automatic directory creation
- Dataclass to dict conversion for serialization
- camelCase aliases (maxConcurrency, checkpointsEnabled, ...) on load
- Default Settings when no configuration exists
"""

import logging
import re
import shlex
from pathlib import Path
from typing import Any

import yaml

from ..core.errors import ConfigError
from ..state.state_store import STATE_DIR_NAME
from .models import CheckpointSettings, DriftScope, ExecutorSettings, Settings

logger = logging.getLogger(__name__)

# Aliases whose snake_case form differs from the field name
KEY_ALIASES = {
    "checkpoints_enabled": "checkpoints",
}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    result = {}
    for key, value in data.items():
        name = _snake_case(str(key))
        result[KEY_ALIASES.get(name, name)] = value
    return result


class SettingsStorage:
    """
    Settings storage manager.

    Handles loading and saving Settings objects to YAML configuration files.
    Configuration is stored at <project>/.roadmap-cascade/config.yaml by default.

    Attributes:
        config_dir: Directory path for configuration files.
        config_file: Path to the main configuration file.
    """

    def __init__(self, project_root: Path, config_dir: Path | None = None) -> None:
        """
        Initialize the settings storage.

        Args:
            project_root: Root directory of the project.
            config_dir: Optional path to configuration directory.
                       Defaults to <project>/.roadmap-cascade/
        """
        self.config_dir = config_dir or Path(project_root) / STATE_DIR_NAME
        self.config_file = self.config_dir / "config.yaml"

    def load(self) -> Settings:
        """
        Load settings from the configuration file.

        Returns:
            Settings object loaded from config file, or default Settings
            if the configuration file does not exist.

        Raises:
            ConfigError: If the file is not valid YAML or holds unknown enum values.
        """
        if not self.config_file.exists():
            return Settings()

        try:
            with open(self.config_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {self.config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_file} must contain a mapping")
        return self._dict_to_settings(data)

    def save(self, settings: Settings) -> None:
        """
        Save settings to the configuration file.

        Creates the configuration directory if it does not exist.

        Args:
            settings: Settings object to save.
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = self._settings_to_dict(settings)

        with open(self.config_file, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    def _settings_to_dict(self, settings: Settings) -> dict[str, Any]:
        """
        Convert Settings object to a dictionary suitable for YAML serialization.

        Args:
            settings: Settings object to convert.

        Returns:
            Dictionary representation of the settings.
        """
        result: dict[str, Any] = {}

        # Execution configuration
        result["max_concurrency"] = settings.max_concurrency
        result["retry_attempts"] = settings.retry_attempts
        result["session_timeout_ms"] = settings.session_timeout_ms
        result["retry_base_delay_seconds"] = settings.retry_base_delay_seconds
        result["retry_max_delay_seconds"] = settings.retry_max_delay_seconds

        # Checkpoints
        result["checkpoints"] = {
            "after_spec_alignment": settings.checkpoints.after_spec_alignment,
            "after_task_alignment": settings.checkpoints.after_task_alignment,
            "on_high_severity_drift": settings.checkpoints.on_high_severity_drift,
        }
        result["critical_drift_scope"] = settings.critical_drift_scope.value

        # Phase overrides
        result["phase_gates"] = dict(settings.phase_gates)
        result["phase_modes"] = dict(settings.phase_modes)

        # Executor
        result["executor"] = {
            "command": list(settings.executor.command),
            "model": settings.executor.model,
            "allowed_capabilities": list(settings.executor.allowed_capabilities),
            "env": dict(settings.executor.env),
        }

        # Drift classification inputs
        result["core_abstractions"] = list(settings.core_abstractions)
        result["security_tags"] = list(settings.security_tags)

        result["lease_timeout_seconds"] = settings.lease_timeout_seconds
        result["log_level"] = settings.log_level

        return result

    def _dict_to_settings(self, data: dict[str, Any]) -> Settings:
        """
        Convert a dictionary to a Settings object.

        Args:
            data: Dictionary loaded from YAML file.

        Returns:
            Settings object with values from the dictionary.
        """
        data = _normalize_keys(data)
        defaults = Settings()

        checkpoints_data = _normalize_keys(data.get("checkpoints") or {})
        checkpoints = CheckpointSettings(
            after_spec_alignment=checkpoints_data.get("after_spec_alignment", True),
            after_task_alignment=checkpoints_data.get("after_task_alignment", True),
            on_high_severity_drift=checkpoints_data.get("on_high_severity_drift", True),
        )

        scope_value = data.get("critical_drift_scope", DriftScope.SUBGRAPH.value)
        try:
            scope = DriftScope(scope_value)
        except ValueError:
            raise ConfigError(
                f"critical_drift_scope must be 'subgraph' or 'global', got {scope_value!r}"
            ) from None

        executor_data = _normalize_keys(data.get("executor") or {})
        command = executor_data.get("command", defaults.executor.command)
        if isinstance(command, str):
            command = shlex.split(command)
        executor = ExecutorSettings(
            command=list(command),
            model=executor_data.get("model", ""),
            allowed_capabilities=list(executor_data.get("allowed_capabilities", [])),
            env=dict(executor_data.get("env", {})),
        )

        unknown = set(data) - set(self._settings_to_dict(defaults))
        for key in sorted(unknown):
            logger.warning("Ignoring unknown configuration key '%s'", key)

        return Settings(
            max_concurrency=data.get("max_concurrency", defaults.max_concurrency),
            retry_attempts=data.get("retry_attempts", defaults.retry_attempts),
            session_timeout_ms=data.get("session_timeout_ms", defaults.session_timeout_ms),
            retry_base_delay_seconds=data.get("retry_base_delay_seconds", defaults.retry_base_delay_seconds),
            retry_max_delay_seconds=data.get("retry_max_delay_seconds", defaults.retry_max_delay_seconds),
            checkpoints=checkpoints,
            critical_drift_scope=scope,
            phase_gates=dict(data.get("phase_gates") or {}),
            phase_modes=dict(data.get("phase_modes") or {}),
            executor=executor,
            core_abstractions=list(data.get("core_abstractions", [])),
            security_tags=list(data.get("security_tags", defaults.security_tags)),
            lease_timeout_seconds=data.get("lease_timeout_seconds", defaults.lease_timeout_seconds),
            log_level=str(data.get("log_level", defaults.log_level)).upper(),
        )
