"""Backup operations run before a migration touches existing data."""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field

from ..constants import BACKUP_DATE_FORMAT
from ..utils import format_size
from .exceptions import DockerCommandError, StackPilotError
from .runtime import ContainerRuntime

logger = structlog.get_logger()


class BackupError(StackPilotError):
    """Backup operation failed."""


class BackupInfo(BaseModel):
    """What a backup step produced."""

    backup_path: str = Field(description="Timestamped backup directory")
    files: list[str] = Field(default_factory=list, description="Files and directories copied")
    volumes: list[str] = Field(default_factory=list, description="Volumes archived")
    failed_volumes: dict[str, str] = Field(
        default_factory=dict, description="Volume name to error for archives that failed"
    )
    backup_size: int = Field(default=0, description="Size of backup in bytes")
    reason: str = Field(description="Reason for creating the backup")
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    @property
    def backup_size_human(self) -> str:
        return format_size(self.backup_size)

    def describe(self) -> str:
        text = f"Backup created at {self.backup_path} ({self.backup_size_human})"
        if self.failed_volumes:
            text += "; volume backups failed: " + ", ".join(
                f"{name} ({error})" for name, error in self.failed_volumes.items()
            )
        return text


def compose_volume_names(compose_path: Path) -> list[str]:
    """Named volumes declared at the top level of a compose file.

    Uses the explicit ``name:`` when set, otherwise compose's default
    ``<project>_<key>`` naming with the compose directory as project.
    Returns an empty list if the file is missing or unparsable.
    """
    try:
        compose_data = yaml.safe_load(compose_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read compose volumes", compose_file=str(compose_path), error=str(e))
        return []
    if not isinstance(compose_data, dict):
        return []

    project = str(compose_data.get("name") or compose_path.parent.name)
    names = []
    for key, definition in (compose_data.get("volumes") or {}).items():
        if isinstance(definition, dict) and definition.get("name"):
            names.append(str(definition["name"]))
        else:
            names.append(f"{project}_{key}")
    return names


class BackupManager:
    """Creates timestamped backups under the project's backup root."""

    def __init__(self, runtime: ContainerRuntime, backup_root: Path, helper_image: str):
        self.logger = logger.bind(component="backup_manager")
        self.runtime = runtime
        self.backup_root = Path(backup_root)
        self.helper_image = helper_image

    def new_backup_dir(self) -> Path:
        timestamp = datetime.now().strftime(BACKUP_DATE_FORMAT)
        backup_path = self.backup_root / timestamp
        try:
            backup_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(f"Failed to create backup directory: {e}") from e
        return backup_path

    async def backup_stack_config(
        self,
        env_file: Path,
        volumes: list[str],
        backup_reason: str = "Pre-upgrade backup",
    ) -> BackupInfo:
        """Copy the ``.env`` file and archive each named volume.

        A missing ``.env`` is not an error. A volume that cannot be archived
        is recorded in ``failed_volumes`` and does not abort the backup.
        """
        backup_path = self.new_backup_dir()
        info = BackupInfo(backup_path=str(backup_path), reason=backup_reason)

        if env_file.is_file():
            try:
                await asyncio.to_thread(shutil.copy2, env_file, backup_path / env_file.name)
            except OSError as e:
                raise BackupError(f"Failed to back up {env_file}: {e}") from e
            info.files.append(str(env_file))

        for volume in volumes:
            try:
                await self.runtime.backup_volume(volume, backup_path, self.helper_image)
            except (DockerCommandError, asyncio.TimeoutError) as e:
                self.logger.warning("Volume backup failed", volume=volume, error=str(e))
                info.failed_volumes[volume] = str(e)
            else:
                info.volumes.append(volume)

        info.backup_size = _dir_size(backup_path)
        self.logger.info(
            "Stack configuration backup created",
            backup=str(backup_path),
            size=info.backup_size_human,
            volumes=info.volumes,
            failed_volumes=list(info.failed_volumes),
        )
        return info

    async def backup_external_config(
        self,
        candidate_paths: list[Path],
        backup_reason: str = "Pre-migration backup",
    ) -> BackupInfo:
        """Copy the first existing external config directory."""
        backup_path = self.new_backup_dir()
        info = BackupInfo(backup_path=str(backup_path), reason=backup_reason)

        for source in candidate_paths:
            if not source.is_dir():
                continue
            destination = backup_path / "code-server"
            try:
                await asyncio.to_thread(shutil.copytree, source, destination, symlinks=True)
            except (OSError, shutil.Error) as e:
                raise BackupError(f"Failed to back up {source}: {e}") from e
            info.files.append(str(source))
            break
        else:
            self.logger.info("No external configuration found, nothing to back up")

        info.backup_size = _dir_size(backup_path)
        return info


def _dir_size(path: Path) -> int:
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file() and not entry.is_symlink():
                total += entry.stat().st_size
        except OSError:
            continue
    return total
