"""Enum definitions for stackpilot records."""

from enum import Enum, IntEnum
from typing import Literal

# Type aliases
ProtocolLiteral = Literal["tcp", "udp", ""]


class ServiceRole(Enum):
    """What a detected service is, relative to the managed stack."""

    MANAGED = "managed"
    EXTERNAL_GENERIC = "external-generic-service"
    EXTERNAL_SAME_KIND = "external-same-kind"
    VPN_DAEMON = "vpn-daemon"


class ServiceState(Enum):
    """Lifecycle state of a service or container."""

    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"

    @property
    def is_running(self) -> bool:
        """True for every state in which the process is up."""
        return self in (
            ServiceState.STARTING,
            ServiceState.RUNNING,
            ServiceState.HEALTHY,
            ServiceState.UNHEALTHY,
        )


class MigrationStrategy(Enum):
    """How to handle an existing installation."""

    FRESH = "fresh"
    UPGRADE = "upgrade"
    MIGRATE_EXTERNAL = "migrate-external"
    PARALLEL = "parallel"

    @property
    def display_name(self) -> str:
        return _STRATEGY_NAMES[self]


_STRATEGY_NAMES = {
    MigrationStrategy.FRESH: "Fresh Installation",
    MigrationStrategy.UPGRADE: "Upgrade Existing",
    MigrationStrategy.MIGRATE_EXTERNAL: "Migrate from External",
    MigrationStrategy.PARALLEL: "Parallel Installation",
}


class ActionType(Enum):
    """Types of migration actions."""

    BACKUP = "backup"
    STOP = "stop"
    PULL = "pull"
    REMOVE = "remove"
    MIGRATE_DATA = "migrate-data"
    START = "start"


class LogLevel(IntEnum):
    """Severity of a log entry. Ordered so level filters can compare."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    PROGRESS = 4

    @property
    def label(self) -> str:
        return self.name
