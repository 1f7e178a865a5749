"""Migration planning and execution for existing installations."""

import asyncio
import time
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import structlog

from .. import constants
from ..core.backup import BackupError, BackupManager, compose_volume_names
from ..core.exceptions import DockerCommandError, MigrationError
from ..core.runtime import ContainerRuntime
from ..core.settings import EngineSettings
from ..core.stack_logger import StackLogger
from ..models import (
    ActionResult,
    ActionType,
    MigrationAction,
    MigrationPlan,
    MigrationResult,
    MigrationStrategy,
    ServiceRecord,
    ServiceRole,
)
from ..utils import expand_path
from .detector import ServiceDetector

logger = structlog.get_logger()

REVERSIBLE_ACTIONS = frozenset({ActionType.BACKUP, ActionType.STOP, ActionType.START})


def categorize_services(
    services: Iterable[ServiceRecord],
) -> tuple[list[ServiceRecord], list[ServiceRecord], list[ServiceRecord]]:
    """Split into (self-managed, same-kind external, other port holders)."""
    managed, same_kind, other = [], [], []
    for svc in services:
        if svc.is_managed:
            managed.append(svc)
        elif svc.role == ServiceRole.EXTERNAL_SAME_KIND:
            same_kind.append(svc)
        elif svc.port > 0:
            other.append(svc)
    return managed, same_kind, other


def overlapping_services(
    services: Iterable[ServiceRecord], target_ports: dict[str, int]
) -> list[ServiceRecord]:
    wanted = set(target_ports.values())
    return [svc for svc in services if svc.port in wanted]


def select_strategy(
    services: Iterable[ServiceRecord], target_ports: dict[str, int]
) -> MigrationStrategy:
    """Classify a detection result into exactly one strategy.

    Priority: any self-managed record means upgrade; otherwise any same-kind
    external record means migrate-external; otherwise an unrelated port holder
    on a target port means parallel; otherwise fresh.
    """
    managed, same_kind, other = categorize_services(services)
    if managed:
        return MigrationStrategy.UPGRADE
    if same_kind:
        return MigrationStrategy.MIGRATE_EXTERNAL
    if overlapping_services(other, target_ports):
        return MigrationStrategy.PARALLEL
    return MigrationStrategy.FRESH


def _number(steps: list[tuple[ActionType, str, str]]) -> list[MigrationAction]:
    return [
        MigrationAction(
            order=index,
            type=action_type,
            target=target,
            description=description,
            reversible=action_type in REVERSIBLE_ACTIONS,
        )
        for index, (action_type, target, description) in enumerate(steps, start=1)
    ]


def build_upgrade_actions(services: Iterable[ServiceRecord]) -> list[MigrationAction]:
    steps = [(ActionType.BACKUP, constants.CONFIG_BACKUP_TARGET, "Backup current configuration and data")]
    for svc in services:
        if svc.container_name and svc.is_running:
            steps.append(
                (ActionType.STOP, svc.container_name, f"Stop container {svc.container_name}")
            )
    steps.append((ActionType.PULL, constants.IMAGES_TARGET, "Pull latest container images"))
    steps.append((ActionType.START, constants.STACK_TARGET, "Start updated containers"))
    return _number(steps)


def build_migrate_actions(services: Iterable[ServiceRecord]) -> list[MigrationAction]:
    steps = [
        (ActionType.BACKUP, constants.EXTERNAL_BACKUP_TARGET, "Backup code-server extensions and settings")
    ]
    for svc in services:
        if svc.container_name and svc.is_running:
            steps.append(
                (ActionType.STOP, svc.container_name, f"Stop external code-server ({svc.name})")
            )
    steps.append(
        (ActionType.MIGRATE_DATA, constants.EXTENSIONS_TARGET, "Migrate VS Code extensions")
    )
    steps.append((ActionType.MIGRATE_DATA, constants.SETTINGS_TARGET, "Migrate VS Code settings"))
    steps.append((ActionType.START, constants.STACK_TARGET, "Start managed containers"))
    return _number(steps)


class Migrator:
    """Turns a detection pass into a plan and carries the plan out."""

    def __init__(
        self,
        detector: ServiceDetector,
        project_root: Path,
        compose_file: str = constants.DEFAULT_COMPOSE_FILE,
        *,
        log: StackLogger | None = None,
        dry_run: bool = False,
        backup_image: str = constants.BACKUP_HELPER_IMAGE,
    ):
        self.detector = detector
        self.stack = detector.stack
        self.runtime: ContainerRuntime = detector.runtime
        self.project_root = Path(project_root)
        self.compose_path = self.project_root / compose_file
        self.backup_root = self.project_root / constants.BACKUP_DIR_NAME
        self.log = log or detector.log
        self.dry_run = dry_run
        self.backups = BackupManager(self.runtime, self.backup_root, backup_image)
        self.logger = logger.bind(component="migrator")
        self._last_backup: str | None = None

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, detector: ServiceDetector, log: StackLogger | None = None
    ) -> "Migrator":
        return cls(
            detector,
            settings.project_root,
            settings.compose_file,
            log=log,
            dry_run=settings.dry_run,
            backup_image=settings.backup_image,
        )

    async def analyze_existing(self, target_ports: dict[str, int]) -> MigrationPlan:
        """Detect what is running and decide how to proceed."""
        report = await self.detector.detect()
        plan = MigrationPlan(
            existing_services=report.services,
            port_mappings=dict(target_ports),
            warnings=list(report.warnings),
        )

        managed, same_kind, other = categorize_services(report.services)
        plan.strategy = select_strategy(report.services, target_ports)

        if plan.strategy == MigrationStrategy.UPGRADE:
            plan.actions = build_upgrade_actions(managed)
            self.log.announce("migration_needed", source="migrate")
        elif plan.strategy == MigrationStrategy.MIGRATE_EXTERNAL:
            plan.actions = build_migrate_actions(same_kind)
            plan.requires_confirm = True
            plan.warnings.append(
                "External code-server detected. Migration will preserve your extensions and settings."
            )
        elif plan.strategy == MigrationStrategy.PARALLEL:
            plan.port_mappings = self.resolve_port_conflicts(target_ports, other)
            for svc in overlapping_services(other, target_ports):
                plan.warnings.append(
                    f"Port {svc.port} is in use by {svc.name}. The stack will use port "
                    f"{self.detector.find_free_port(svc.port)} instead."
                )

        self.logger.info(
            "Migration plan computed",
            strategy=plan.strategy.value,
            actions=len(plan.actions),
            services=len(plan.existing_services),
        )
        return plan

    def resolve_port_conflicts(
        self, target_ports: dict[str, int], occupied_services: Iterable[ServiceRecord]
    ) -> dict[str, int]:
        """Target ports with every occupied one replaced by a free alternative."""
        occupied = {svc.port for svc in occupied_services if svc.port > 0}
        return {
            service: self.detector.find_free_port(port) if port in occupied else port
            for service, port in target_ports.items()
        }

    async def execute(self, plan: MigrationPlan) -> MigrationResult:
        """Run the plan's actions in ascending order, halting at the first failure.

        Raises:
            MigrationError: When an action fails; ``error.result`` holds the
                partial result including the failed action
        """
        result = MigrationResult(completed_at=datetime.now())
        self._last_backup = None

        for action in sorted(plan.actions, key=lambda a: a.order):
            if self.dry_run:
                result.actions.append(
                    ActionResult(action=action, success=True, output=constants.DRY_RUN_OUTPUT)
                )
                continue

            self.log.info("migrate", f"{action.order}. {action.description}")
            started = time.monotonic()
            action_result = await self.execute_action(action)
            action_result = action_result.model_copy(update={"duration": time.monotonic() - started})
            result.actions.append(action_result)

            if not action_result.success:
                result.error = f"action '{action.description}' failed: {action_result.error}"
                result.backup_path = self._last_backup
                result.completed_at = datetime.now()
                self.log.error("migrate", result.error)
                raise MigrationError(result.error, result=result)

        result.success = True
        result.backup_path = self._last_backup
        result.completed_at = datetime.now()
        return result

    async def execute_action(self, action: MigrationAction) -> ActionResult:
        """Dispatch a single action; failures are returned, not raised."""
        try:
            output = await self._dispatch(action)
        except (DockerCommandError, BackupError, MigrationError, asyncio.TimeoutError, OSError) as e:
            return ActionResult(action=action, success=False, error=str(e))
        return ActionResult(action=action, success=True, output=output)

    async def _dispatch(self, action: MigrationAction) -> str:
        if action.type == ActionType.BACKUP:
            return await self._backup(action.target)
        if action.type == ActionType.STOP:
            await self.runtime.stop_container(action.target, constants.MIGRATION_STOP_GRACE)
            return "Container stopped"
        if action.type == ActionType.REMOVE:
            await self.runtime.remove_container(action.target)
            return "Container removed"
        if action.type == ActionType.PULL:
            await self.runtime.compose(self.compose_path, "pull")
            return "Images pulled"
        if action.type == ActionType.MIGRATE_DATA:
            return await self._migrate_data(action.target)
        if action.type == ActionType.START:
            await self.runtime.compose(self.compose_path, "up", "-d")
            return "Containers started"
        raise MigrationError(f"unknown action type: {action.type}")

    async def _backup(self, target: str) -> str:
        if target == constants.EXTERNAL_BACKUP_TARGET:
            info = await self.backups.backup_external_config(self._external_config_dirs())
        else:
            info = await self.backups.backup_stack_config(
                self.project_root / self.stack.env_file, self._backup_volumes()
            )
            for volume, error in info.failed_volumes.items():
                self.log.warning("backup", f"Could not back up volume {volume}: {error}")
        self._last_backup = info.backup_path
        return info.describe()

    def _backup_volumes(self) -> list[str]:
        if self.stack.backup_volumes is not None:
            return list(self.stack.backup_volumes)
        return compose_volume_names(self.compose_path)

    def _external_config_dirs(self) -> list[Path]:
        return [expand_path(path) for path in self.stack.external_config_paths]

    async def _migrate_data(self, target: str) -> str:
        """Copy the first existing extensions dir or settings file into the IDE container."""
        data_dir = self.stack.ide_data_dir
        if target == constants.EXTENSIONS_TARGET:
            candidates = [path / "extensions" for path in self._external_config_dirs()]
            destination = f"{data_dir}/"
        elif target == constants.SETTINGS_TARGET:
            candidates = [path / "User" / "settings.json" for path in self._external_config_dirs()]
            destination = f"{data_dir}/User/"
        else:
            raise MigrationError(f"unknown migration target: {target}")

        for source in candidates:
            if not source.exists():
                continue
            try:
                await self.runtime.copy_into(source, self.stack.ide_container, destination)
            except DockerCommandError as e:
                raise MigrationError(f"failed to migrate {target}: {e}") from e
            return f"Migrated {target} from {source}"

        self.log.debug("migrate", f"No existing {target} found, nothing to migrate")
        return f"No {target} found to migrate"

    async def rollback(self, result: MigrationResult) -> list[str]:
        """Undo reversible steps of a (partial) result in reverse order.

        Only stopped containers are restarted. Removed containers cannot be
        recreated without a backup and are reported as such.

        Returns:
            Errors encountered while rolling back
        """
        errors = []
        for action_result in reversed(result.actions):
            action = action_result.action
            if action.type == ActionType.REMOVE:
                self.log.warning("rollback", f"Cannot restore removed container {action.target}")
                continue
            if not action.reversible or action.type != ActionType.STOP:
                continue
            try:
                await self.runtime.start_container(action.target)
                self.log.info("rollback", f"Restarted {action.target}")
            except (DockerCommandError, asyncio.TimeoutError) as e:
                errors.append(f"Failed to restart {action.target}: {e}")
                self.log.error("rollback", errors[-1])
        return errors
