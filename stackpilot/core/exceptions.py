"""Core exceptions for stackpilot operations."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models.migration import MigrationResult


class StackPilotError(Exception):
    """Base exception for stackpilot operations."""


class DockerCommandError(StackPilotError):
    """Docker (or other external tool) command execution failed."""


class EnvironmentCheckError(StackPilotError):
    """Container runtime unreachable or compose definition missing."""


class ConfigurationError(StackPilotError):
    """Configuration validation or loading failed."""


class MigrationError(StackPilotError):
    """A migration action failed; carries everything completed so far."""

    def __init__(self, message: str, result: "MigrationResult | None" = None):
        super().__init__(message)
        self.result = result
