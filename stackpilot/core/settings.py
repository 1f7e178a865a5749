"""Engine settings.

Provides centralized configuration using Pydantic BaseSettings with
environment variable support for operational tuning.
"""

from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .. import constants
from ..models.stack import StackDefinition


class EngineSettings(BaseSettings):
    """Runtime configuration for detection, migration and lifecycle operations."""

    project_root: Path = Field(
        default_factory=Path.cwd,
        alias="STACKPILOT_PROJECT_ROOT",
        description="Directory holding the compose definition and .env file",
    )
    compose_file: str = Field(
        constants.DEFAULT_COMPOSE_FILE,
        alias="STACKPILOT_COMPOSE_FILE",
        description="Compose file name, relative to the project root",
    )

    operation_timeout: float = Field(
        120.0, alias="STACKPILOT_OPERATION_TIMEOUT", description="Overall start/stop deadline in seconds"
    )
    health_timeout: float = Field(
        60.0, alias="STACKPILOT_HEALTH_TIMEOUT", description="Per-role health wait in seconds"
    )
    health_poll_interval: float = Field(
        2.0, alias="STACKPILOT_HEALTH_POLL_INTERVAL", description="Seconds between health polls"
    )
    restart_delay: float = Field(
        2.0, alias="STACKPILOT_RESTART_DELAY", description="Pause between stop and start on restart"
    )
    command_timeout: float = Field(
        60.0, alias="STACKPILOT_COMMAND_TIMEOUT", description="Timeout for single CLI probes"
    )
    health_checks: bool = Field(
        True, alias="STACKPILOT_HEALTH_CHECKS", description="Wait for container health after start"
    )

    port_range_start: int = Field(
        constants.PORT_RANGE_START, ge=1, le=65535, alias="STACKPILOT_PORT_RANGE_START"
    )
    port_range_end: int = Field(
        constants.PORT_RANGE_END, ge=1, le=65535, alias="STACKPILOT_PORT_RANGE_END"
    )
    probe_ports: tuple[int, ...] = Field(
        constants.WELL_KNOWN_PORTS,
        alias="STACKPILOT_PROBE_PORTS",
        description="Well-known ports bind-probed for squatters",
    )

    vpn_cli: str = Field(constants.VPN_CLI, alias="STACKPILOT_VPN_CLI")
    backup_image: str = Field(constants.BACKUP_HELPER_IMAGE, alias="STACKPILOT_BACKUP_IMAGE")
    backup_volumes: tuple[str, ...] | None = Field(
        constants.DEFAULT_BACKUP_VOLUMES,
        alias="STACKPILOT_BACKUP_VOLUMES",
        description="Named volumes to back up; null derives them from the compose file",
    )
    dry_run: bool = Field(False, alias="STACKPILOT_DRY_RUN")

    verbose: bool = Field(False, alias="STACKPILOT_VERBOSE")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_dir: Path | None = Field(None, alias="STACKPILOT_LOG_DIR")
    log_file_size_mb: int = Field(10, ge=1, le=100, alias="LOG_FILE_SIZE_MB")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Invalid log level '{value}'")
        return value

    @model_validator(mode="after")
    def _check_port_range(self) -> "EngineSettings":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"Port range start {self.port_range_start} is after end {self.port_range_end}"
            )
        return self

    @property
    def compose_path(self) -> Path:
        return self.project_root / self.compose_file

    @property
    def backup_root(self) -> Path:
        return self.project_root / constants.BACKUP_DIR_NAME

    def stack_definition(self) -> StackDefinition:
        """The frozen stack description the engine is constructed with."""
        return StackDefinition(backup_volumes=self.backup_volumes)
