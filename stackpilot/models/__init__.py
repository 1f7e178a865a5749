"""Data models for stackpilot."""

from .enums import (  # noqa: F401
    ActionType,
    LogLevel,
    MigrationStrategy,
    ServiceRole,
    ServiceState,
)
from .lifecycle import ShutdownResult, StartupResult  # noqa: F401
from .log import LogEntry  # noqa: F401
from .migration import (  # noqa: F401
    ActionResult,
    MigrationAction,
    MigrationPlan,
    MigrationResult,
)
from .service import (  # noqa: F401
    DetectionReport,
    PortConflict,
    ServiceRecord,
    ServiceStatus,
)
from .stack import RoleSpec, StackDefinition  # noqa: F401

__all__ = [
    # Enums
    "ActionType",
    "LogLevel",
    "MigrationStrategy",
    "ServiceRole",
    "ServiceState",
    # Detection models
    "DetectionReport",
    "PortConflict",
    "ServiceRecord",
    "ServiceStatus",
    # Migration models
    "ActionResult",
    "MigrationAction",
    "MigrationPlan",
    "MigrationResult",
    # Lifecycle models
    "ShutdownResult",
    "StartupResult",
    # Stack definition
    "RoleSpec",
    "StackDefinition",
    # Logging
    "LogEntry",
]
