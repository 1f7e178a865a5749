"""Immutable description of the managed stack."""

from typing import Literal

from pydantic import ConfigDict, Field

from .. import constants
from .base import StackModel


class RoleSpec(StackModel):
    """One fixed logical position in the stack."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Display name of the role")
    container: str = Field(description="Canonical container name")
    port: int = Field(default=0, ge=0, le=65535, description="Published port, 0 if none")
    service_key: str | None = Field(
        default=None, description="Key used in port maps and access URLs"
    )
    scheme: Literal["http", "https"] = "http"


def _default_roles() -> tuple[RoleSpec, ...]:
    return (
        RoleSpec(name="Tailscale", container=constants.VPN_CONTAINER),
        RoleSpec(
            name="code-server",
            container=constants.IDE_CONTAINER,
            port=constants.IDE_PORT,
            service_key=constants.IDE_SERVICE_KEY,
            scheme="https",
        ),
        RoleSpec(
            name="Claude",
            container=constants.ASSISTANT_CONTAINER,
            port=constants.ASSISTANT_PORT,
            service_key=constants.ASSISTANT_SERVICE_KEY,
        ),
    )


class StackDefinition(StackModel):
    """Everything the engine needs to know about the stack it manages.

    Passed into the engine at construction; never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    roles: tuple[RoleSpec, ...] = Field(default_factory=_default_roles)
    management_label: str = constants.MANAGEMENT_LABEL
    same_kind_signature: str = constants.SAME_KIND_SIGNATURE
    vpn_container: str = constants.VPN_CONTAINER
    ide_container: str = constants.IDE_CONTAINER
    ide_data_dir: str = constants.IDE_DATA_DIR
    env_file: str = constants.ENV_FILE_NAME
    backup_volumes: tuple[str, ...] | None = Field(
        default=constants.DEFAULT_BACKUP_VOLUMES,
        description="Named volumes to back up; None derives them from the compose file",
    )
    external_config_paths: tuple[str, ...] = constants.EXTERNAL_CONFIG_PATHS

    @property
    def container_names(self) -> tuple[str, ...]:
        return tuple(role.container for role in self.roles)

    def target_ports(self) -> dict[str, int]:
        """Port map requested by the stack, keyed by service key."""
        return {
            role.service_key: role.port
            for role in self.roles
            if role.service_key and role.port
        }

    def role_for_key(self, service_key: str) -> RoleSpec | None:
        for role in self.roles:
            if role.service_key == service_key:
                return role
        return None
