"""
Config package.

Environment settings, startup validation and per-bot YAML overrides.
"""

from gridpilot.config.config import Settings, env_bool
from gridpilot.config.per_bot_config import apply_overrides, load_per_bot_overrides
from gridpilot.config.validator import (
    ConfigValidator,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    validate_and_log,
    validate_config,
)

__all__ = [
    "ConfigValidator",
    "Settings",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "apply_overrides",
    "env_bool",
    "load_per_bot_overrides",
    "validate_and_log",
    "validate_config",
]
