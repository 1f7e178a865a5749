"""Stack lifecycle: pre-flight, start, stop, restart and status."""

import asyncio
import time
from datetime import datetime

import structlog

from .. import constants
from ..core import parsing
from ..core.exceptions import DockerCommandError, EnvironmentCheckError, MigrationError
from ..core.runtime import ContainerRuntime, HostProbe
from ..core.settings import EngineSettings
from ..core.stack_logger import StackLogger
from ..models import (
    MigrationPlan,
    RoleSpec,
    ServiceState,
    ServiceStatus,
    ShutdownResult,
    StartupResult,
)
from .detector import ServiceDetector
from .migrator import Migrator

logger = structlog.get_logger()


class LifecycleManager:
    """Orchestration entry point for the managed stack.

    Every operation re-detects live state; nothing is cached between calls.
    """

    def __init__(
        self,
        settings: EngineSettings,
        detector: ServiceDetector | None = None,
        migrator: Migrator | None = None,
        *,
        log: StackLogger | None = None,
    ):
        self.settings = settings
        self.log = log or StackLogger()
        self.detector = detector or ServiceDetector.from_settings(settings, self.log)
        self.migrator = migrator or Migrator.from_settings(settings, self.detector, self.log)
        self.stack = self.detector.stack
        self.runtime: ContainerRuntime = self.detector.runtime
        self.host: HostProbe = self.detector.host
        self.compose_path = settings.compose_path
        self.logger = logger.bind(component="lifecycle_manager")

    async def pre_start_check(self) -> MigrationPlan:
        """Verify the environment and compute a migration plan.

        Raises:
            EnvironmentCheckError: If docker is unreachable or the compose file is missing
        """
        self.log.info("preflight", "Running pre-start checks...")

        if not await self.runtime.is_available():
            raise EnvironmentCheckError("docker is not available or not running")

        if not self.compose_path.exists():
            raise EnvironmentCheckError(f"compose file not found: {self.compose_path}")

        plan = await self.migrator.analyze_existing(self.stack.target_ports())

        for svc in plan.existing_services:
            if svc.is_managed:
                self.log.info("preflight", f"Found existing stack service: {svc.name}")
            elif svc.port:
                self.log.info("preflight", f"Found service on port {svc.port}: {svc.name}")
            else:
                self.log.info("preflight", f"Found service: {svc.name}")

        return plan

    async def start(self, plan: MigrationPlan | None = None) -> StartupResult:
        """Bring the stack up, running ``plan`` first when it has actions.

        Only a failed ``compose up`` is a hard error. Migration and pull
        failures, and roles that miss their health deadline, are warnings.
        """
        result = StartupResult(started_at=datetime.now())
        started = time.monotonic()
        deadline = started + self.settings.operation_timeout

        if plan is not None and plan.actions:
            self.log.info("startup", "Executing migration plan...")
            try:
                await asyncio.wait_for(self.migrator.execute(plan), timeout=_remaining(deadline))
            except MigrationError as e:
                result.warnings.append(f"Migration failed: {e}")
            except asyncio.TimeoutError:
                result.warnings.append("Migration failed: operation timed out")

        self.log.announce("docker_pull_start", source="startup")
        try:
            await self._compose_filtered("pull", timeout=_remaining(deadline))
            self.log.announce("docker_pull_done", source="startup")
        except (DockerCommandError, asyncio.TimeoutError) as e:
            result.warnings.append(f"Pull warning: {_reason(e)}")

        self.log.announce("services_starting", source="startup")
        try:
            await self._compose_filtered("up", "-d", timeout=_remaining(deadline))
        except (DockerCommandError, asyncio.TimeoutError) as e:
            result.errors.append(f"Start failed: {_reason(e)}")
            self.log.error("startup", result.errors[-1])
            result.duration = time.monotonic() - started
            return result

        port_map = plan.port_mappings if plan is not None else {}

        if self.settings.health_checks:
            self.log.info("startup", "Waiting for services to be healthy...")
            result.services = await self.wait_for_health(deadline, port_map)

            all_healthy = True
            for svc in result.services:
                if svc.state in (ServiceState.HEALTHY, ServiceState.RUNNING):
                    continue
                all_healthy = False
                if svc.error:
                    result.warnings.append(f"{svc.name}: {svc.error}")

            if all_healthy:
                self.log.announce("services_started", source="startup")
            else:
                result.warnings.append(
                    "Some services are not yet healthy. They may still be starting."
                )

        result.access_urls = await self.access_urls(port_map)
        result.success = not result.errors
        result.duration = time.monotonic() - started

        self.logger.info(
            "Startup finished",
            success=result.success,
            duration=round(result.duration, 2),
            warnings=len(result.warnings),
        )
        return result

    async def _compose_filtered(self, *args: str, timeout: float) -> int:
        source = f"compose {args[0]}"
        stdout_filter = self.log.stream_filter(source)
        stderr_filter = self.log.stream_filter(source)
        return await self.runtime.compose_stream(
            self.compose_path,
            *args,
            stdout_consumer=stdout_filter.process,
            stderr_consumer=stderr_filter.process,
            timeout=timeout,
        )

    async def wait_for_health(
        self, deadline: float, port_map: dict[str, int] | None = None
    ) -> list[ServiceStatus]:
        """Poll each role in order until healthy, stopped or out of time."""
        statuses = []
        for role in self.stack.roles:
            status = self._role_status(role, port_map)

            if not await self.runtime.container_exists(role.container):
                status.state = ServiceState.STOPPED
                status.error = "Container not found"
                statuses.append(status)
                continue

            timeout = min(self.settings.health_timeout, _remaining(deadline))
            status.state = await self.wait_for_container_health(role.container, timeout)
            if status.state == ServiceState.UNHEALTHY:
                status.error = "Health check timed out"
                self.log.announce("health_check_fail", source="health")
            elif status.state == ServiceState.STOPPED:
                status.error = "Container is not running"
            elif status.state == ServiceState.HEALTHY:
                self.log.announce("health_check_pass", source="health")
                self.log.info("health", f"{role.name} is healthy")
            else:
                self.log.info("health", f"{role.name} is {status.state.value}")
            statuses.append(status)
        return statuses

    async def wait_for_container_health(self, container: str, timeout: float) -> ServiceState:
        """Poll one container's status and health until a terminal answer.

        Returns STOPPED when it is not running, RUNNING when it defines no
        health check, HEALTHY once healthy, and UNHEALTHY when ``timeout``
        runs out first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = self.settings.health_poll_interval

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return ServiceState.UNHEALTHY

            state = await self.runtime.inspect_state(container, timeout=remaining)
            if state is not None:
                if state.status != "running":
                    return ServiceState.STOPPED
                if not state.health:
                    return ServiceState.RUNNING
                if state.health == "healthy":
                    return ServiceState.HEALTHY

            remaining = deadline - loop.time()
            if remaining <= 0:
                return ServiceState.UNHEALTHY
            await asyncio.sleep(min(interval, remaining))

    async def access_urls(self, port_map: dict[str, int] | None = None) -> dict[str, str]:
        """Reachable URL per published role, keyed by service key."""
        address = await self.resolve_address()
        urls = {}
        for role in self.stack.roles:
            if not role.service_key or not role.port:
                continue
            port = (port_map or {}).get(role.service_key) or role.port
            urls[role.service_key] = f"{role.scheme}://{address}:{port}"
        return urls

    async def resolve_address(self) -> str:
        """Host VPN address, then the VPN sidecar's, then the first host address."""
        if self.host.vpn_installed():
            address = await self.host.vpn_address()
            if address:
                return address

        output = await self.runtime.exec_output(
            self.stack.vpn_container, [self.settings.vpn_cli, "ip", "-4"]
        )
        address = parsing.first_address(output)
        if address:
            return address

        return await self.host.host_address() or "localhost"

    async def stop(self) -> ShutdownResult:
        """Take the stack down and make sure every canonical container stopped.

        Failures are collected into the result rather than raised.
        """
        result = ShutdownResult(stopped_at=datetime.now())
        started = time.monotonic()
        deadline = started + self.settings.operation_timeout

        self.log.info("shutdown", "Stopping services...")
        try:
            output = await self.runtime.compose(
                self.compose_path, "down", timeout=_remaining(deadline)
            )
            compose_filter = self.log.compose_filter("compose down")
            for line in output.combined_output.splitlines():
                if line.strip():
                    compose_filter.filter_line(line.strip())
        except (DockerCommandError, asyncio.TimeoutError) as e:
            result.errors.append(f"Stop failed: {_reason(e)}")

        for role in self.stack.roles:
            status = self._role_status(role)
            state = await self.runtime.inspect_state(role.container, timeout=_remaining(deadline))
            if state is None or state.status != "running":
                status.state = ServiceState.STOPPED
            else:
                try:
                    await self.runtime.stop_container(
                        role.container,
                        constants.FORCE_STOP_GRACE,
                        timeout=_remaining(deadline),
                    )
                    status.state = ServiceState.STOPPED
                except (DockerCommandError, asyncio.TimeoutError) as e:
                    status.state = ServiceState.RUNNING
                    status.error = _reason(e)
                    result.errors.append(f"{role.container}: {status.error}")
            result.services.append(status)

        result.success = not result.errors
        result.duration = time.monotonic() - started
        if result.success:
            self.log.info("shutdown", "All services stopped")
        else:
            for error in result.errors:
                self.log.error("shutdown", error)
        return result

    async def restart(self) -> StartupResult:
        """Stop, pause briefly, then start without a migration plan."""
        self.log.info("restart", "Restarting services...")
        shutdown = await self.stop()
        if not shutdown.success:
            self.log.warning("restart", "Stop reported errors, starting anyway")
        await asyncio.sleep(self.settings.restart_delay)
        return await self.start(None)

    async def status(self) -> list[ServiceStatus]:
        """Current state of every role. Read-only."""
        statuses = []
        for role in self.stack.roles:
            status = self._role_status(role)
            state = await self.runtime.inspect_state(role.container)
            status.state = ServiceState.STOPPED if state is None else parsing.classify_state(state)
            statuses.append(status)
        return statuses

    def _role_status(self, role: RoleSpec, port_map: dict[str, int] | None = None) -> ServiceStatus:
        port = role.port
        if role.service_key and port_map:
            port = port_map.get(role.service_key) or port
        health_url = f"{role.scheme}://localhost:{port}" if port else None
        return ServiceStatus(
            name=role.name, container=role.container, port=port, health_url=health_url
        )


def _remaining(deadline: float) -> float:
    """Seconds left before ``deadline``, never below a small positive floor."""
    return max(deadline - time.monotonic(), 0.01)


def _reason(error: Exception) -> str:
    return str(error) or "timed out"
