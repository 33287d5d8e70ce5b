"""
Configuration validation for Roadmap Cascade.

This module provides validation of Settings objects:
- Execution limits (concurrency, retries, timeouts)
- Phase gate and mode overrides
- Executor configuration
"""

import logging
from dataclasses import dataclass, field
from typing import List

from ..core.errors import ConfigError
from ..core.models import PhaseStatus
from ..core.phases import ExecutionMode, Phase
from .models import Settings

logger = logging.getLogger(__name__)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class ValidationResult:
    """
    Result of a configuration validation.

    Attributes:
        valid: Whether the configuration passed all validation checks.
        errors: List of error messages (validation failures).
        warnings: List of warning messages (non-critical issues).
    """

    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Add an error message and mark validation as failed."""
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        """Add a warning message (does not affect validity)."""
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> None:
        """Merge another ValidationResult into this one."""
        if not other.valid:
            self.valid = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def raise_for_errors(self) -> None:
        """Raise ConfigError listing every error, if there are any."""
        if not self.valid:
            raise ConfigError("Invalid configuration: " + "; ".join(self.errors), errors=list(self.errors))


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """
    Configuration validator for Roadmap Cascade settings.

    Provides validation methods for different aspects of the configuration:
    - Full configuration validation
    - Execution limits
    - Phase overrides
    - Executor configuration
    """

    def validate(self, settings: Settings) -> ValidationResult:
        """
        Validate the complete settings configuration.

        Args:
            settings: Settings object to validate.

        Returns:
            ValidationResult with any errors or warnings.
        """
        result = ValidationResult()
        result.merge(self._validate_execution_config(settings))
        result.merge(self._validate_phases(settings))
        result.merge(self._validate_executor(settings))

        if not isinstance(settings.log_level, str) or settings.log_level.upper() not in LOG_LEVELS:
            result.add_error(f"Unknown log_level: '{settings.log_level}'. Valid values: {sorted(LOG_LEVELS)}")

        for name in ("after_spec_alignment", "after_task_alignment", "on_high_severity_drift"):
            if not isinstance(getattr(settings.checkpoints, name), bool):
                result.add_error(f"checkpoints.{name} must be a boolean")

        return result

    def _validate_execution_config(self, settings: Settings) -> ValidationResult:
        """
        Validate execution configuration values.

        Args:
            settings: Settings object to validate.

        Returns:
            ValidationResult for execution configuration.
        """
        result = ValidationResult()

        if not _is_int(settings.max_concurrency) or settings.max_concurrency < 1:
            result.add_error("max_concurrency must be an integer >= 1")
        elif settings.max_concurrency > 10:
            result.add_warning(
                f"max_concurrency is {settings.max_concurrency}, "
                "high parallelism may hit executor rate limits"
            )

        if not _is_int(settings.retry_attempts) or settings.retry_attempts < 0:
            result.add_error("retry_attempts must be an integer >= 0")
        elif settings.retry_attempts == 0:
            result.add_warning("retry_attempts is 0, transient failures will block items immediately")

        if not _is_int(settings.session_timeout_ms) or settings.session_timeout_ms < 1:
            result.add_error("session_timeout_ms must be a positive integer")
        elif settings.session_timeout_ms < 30_000:
            result.add_warning(
                f"session_timeout_ms is {settings.session_timeout_ms}, "
                "very short timeouts may cause premature failures"
            )

        for name in ("retry_base_delay_seconds", "retry_max_delay_seconds", "lease_timeout_seconds"):
            value = getattr(settings, name)
            if not _is_number(value) or value < 0:
                result.add_error(f"{name} must be a number >= 0")

        if (
            _is_number(settings.retry_base_delay_seconds)
            and _is_number(settings.retry_max_delay_seconds)
            and settings.retry_base_delay_seconds > settings.retry_max_delay_seconds
        ):
            result.add_warning("retry_base_delay_seconds exceeds retry_max_delay_seconds")

        return result

    def _validate_phases(self, settings: Settings) -> ValidationResult:
        result = ValidationResult()
        phases = {p.value for p in Phase}
        statuses = {s.value for s in PhaseStatus.get_order()}
        modes = {m.value for m in ExecutionMode}

        for phase, threshold in settings.phase_gates.items():
            if phase not in phases:
                result.add_error(f"phase_gates: unknown phase '{phase}'")
            elif threshold not in statuses:
                result.add_error(f"phase_gates.{phase}: unknown status '{threshold}'")

        for phase, mode in settings.phase_modes.items():
            if phase not in phases:
                result.add_error(f"phase_modes: unknown phase '{phase}'")
            elif mode not in modes:
                result.add_error(f"phase_modes.{phase}: mode must be one of {sorted(modes)}")

        return result

    def _validate_executor(self, settings: Settings) -> ValidationResult:
        result = ValidationResult()
        command = settings.executor.command
        if not command or not all(isinstance(part, str) and part for part in command):
            result.add_error("executor.command must be a non-empty list of strings")
        return result


def load_validated(storage) -> Settings:
    """Load settings through ``storage`` and raise ConfigError if they are invalid."""
    settings = storage.load()
    result = ConfigValidator().validate(settings)
    for warning in result.warnings:
        logger.warning(warning)
    result.raise_for_errors()
    return settings
