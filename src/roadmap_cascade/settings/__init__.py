"""
Settings management module for Roadmap Cascade.

This module provides configuration management including:
- Settings data models (CheckpointSettings, ExecutorSettings, Settings)
- YAML-based configuration storage
- Configuration validation
"""

from .models import (
    CheckpointSettings,
    DriftScope,
    ExecutorSettings,
    Settings,
)
from .storage import SettingsStorage
from .validation import ConfigValidator, ValidationResult, load_validated

__all__ = [
    # Models
    "CheckpointSettings",
    "DriftScope",
    "ExecutorSettings",
    "Settings",
    # Storage
    "SettingsStorage",
    # Validation
    "ConfigValidator",
    "ValidationResult",
    "load_validated",
]
