"""Core utilities and shared components for runguard."""

# Note: Import context lazily to avoid circular imports
# Use: from runguard.core.context import RunGuardContext, pass_context
from runguard.core.exceptions import (
    ActionError,
    ConfigError,
    PreconditionFailure,
    RunGuardError,
    ValidationError,
)
from runguard.core.output import OutputFormatter

__all__ = [
    "RunGuardError",
    "ConfigError",
    "ValidationError",
    "PreconditionFailure",
    "ActionError",
    "OutputFormatter",
]
