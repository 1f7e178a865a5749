"""Raw runtime snapshots produced by the CLI translation layer."""

from pydantic import Field

from .base import StackModel


class ContainerListing(StackModel):
    """One line of ``docker ps -a --format '{{json .}}'``."""

    id: str = ""
    names: str = ""
    image: str = ""
    state: str = ""
    status: str = ""
    ports: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class ContainerState(StackModel):
    """Runtime status and health field from ``docker inspect``."""

    status: str = ""
    health: str = ""


class VpnStatus(StackModel):
    """Subset of ``tailscale status --json``."""

    backend_state: str = ""
    version: str = ""
    addresses: list[str] = Field(default_factory=list)


class PortOwner(StackModel):
    """Process holding a port, as far as the OS lets us tell."""

    pid: int = 0
    process_name: str = ""
