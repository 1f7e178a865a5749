"""Detection records: running services, port conflicts and role status."""

from pydantic import ConfigDict, Field

from .base import StackModel
from .enums import ProtocolLiteral, ServiceRole, ServiceState


class ServiceRecord(StackModel):
    """A detected running thing. Produced fresh by every detection pass."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: ServiceRole
    state: ServiceState = ServiceState.UNKNOWN
    container_id: str | None = None
    container_name: str | None = None
    image: str | None = None
    port: int = Field(default=0, ge=0, le=65535, description="Bound host port, 0 if none")
    protocol: ProtocolLiteral = ""
    pid: int = Field(default=0, ge=0, description="Owning process id, 0 if unknown")
    process_name: str | None = None
    version: str | None = None
    is_managed: bool = False
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def dedup_key(self) -> tuple:
        """Identity used to collapse duplicates from overlapping probes."""
        if self.container_name:
            return (self.role, self.container_name, self.port)
        return (self.role, self.port, self.pid)


class PortConflict(StackModel):
    """A requested port that is already occupied."""

    model_config = ConfigDict(frozen=True)

    port: int
    protocol: ProtocolLiteral = "tcp"
    requested_by: str
    occupied_by: ServiceRecord | None = None
    can_resolve: bool = False
    resolution_hint: str = ""
    suggested_port: int | None = None


class DetectionReport(StackModel):
    """Result of one detection pass, including absorbed probe failures."""

    services: list[ServiceRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ServiceStatus(StackModel):
    """Status of a single stack role after a lifecycle operation."""

    name: str = ""
    container: str
    state: ServiceState = ServiceState.UNKNOWN
    port: int = 0
    health_url: str | None = None
    error: str | None = None
