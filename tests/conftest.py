"""Shared pytest fixtures for stackpilot tests."""

import asyncio
import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from stackpilot import constants
from stackpilot.core.exceptions import DockerCommandError
from stackpilot.core.settings import EngineSettings
from stackpilot.core.stack_logger import StackLogger
from stackpilot.core.subprocess_manager import SubprocessResult
from stackpilot.models import StackDefinition
from stackpilot.models.runtime import ContainerListing, ContainerState, PortOwner, VpnStatus
from stackpilot.services import LifecycleManager, Migrator, ServiceDetector


def _ok(*cmd: str) -> SubprocessResult:
    return SubprocessResult(returncode=0, stdout="", stderr="", cmd=list(cmd))


class FakeContainer:
    """In-memory container as the fake runtime sees it."""

    def __init__(
        self,
        name: str,
        image: str = "linuxserver/code-server:latest",
        status: str = "running",
        health: str = "healthy",
        ports: str = "",
        labels: dict[str, str] | None = None,
    ):
        self.name = name
        self.image = image
        self.status = status
        self.health = health
        self.ports = ports
        self.labels = labels or {}

    def listing(self) -> ContainerListing:
        if self.status == "running":
            status = "Up 5 minutes"
            if self.health == "healthy":
                status += " (healthy)"
            elif self.health == "unhealthy":
                status += " (unhealthy)"
            elif self.health == "starting":
                status += " (health: starting)"
        else:
            status = "Exited (0) 2 minutes ago"
        return ContainerListing(
            id=f"{abs(hash(self.name)):012x}"[:12],
            names=self.name,
            image=self.image,
            state=self.status,
            status=status,
            ports=self.ports,
            labels=self.labels,
        )


class FakeRuntime:
    """Stand-in for ContainerRuntime that simulates docker in memory.

    ``compose up`` creates or starts every canonical container, ``compose
    down`` stops them. Every call is recorded in ``calls``.
    """

    def __init__(self, stack: StackDefinition | None = None):
        self.stack = stack or StackDefinition()
        self.available = True
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.up_health = "healthy"
        self.stream_lines: dict[str, list[str]] = {}
        self.exec_outputs: dict[str, str] = {}
        self.compose_output: dict[str, str] = {}
        self.subprocess = MagicMock()
        self.subprocess.cleanup_all = AsyncMock()

    def add(self, name: str, **kwargs) -> FakeContainer:
        container = FakeContainer(name, **kwargs)
        self.containers[name] = container
        return container

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail:
            raise self.fail[operation]

    async def is_available(self) -> bool:
        self.calls.append(("info",))
        return self.available

    async def list_containers(self) -> list[ContainerListing]:
        self.calls.append(("ps",))
        self._maybe_fail("ps")
        return [container.listing() for container in self.containers.values()]

    async def container_exists(self, name: str) -> bool:
        return name in self.containers

    async def inspect_state(self, name: str, timeout: float | None = None) -> ContainerState | None:
        container = self.containers.get(name)
        if container is None:
            return None
        health = container.health if container.status == "running" else ""
        return ContainerState(status=container.status, health=health)

    async def stop_container(self, name: str, grace: int, timeout: float | None = None):
        self.calls.append(("stop", name, grace))
        self._maybe_fail(f"stop:{name}")
        if name not in self.containers:
            raise DockerCommandError(f"No such container: {name}")
        self.containers[name].status = "exited"
        return _ok("docker", "stop", name)

    async def kill_container(self, name: str):
        self.calls.append(("kill", name))
        self._maybe_fail(f"kill:{name}")
        self.containers[name].status = "exited"
        return _ok("docker", "kill", name)

    async def start_container(self, name: str):
        self.calls.append(("start", name))
        self._maybe_fail(f"start:{name}")
        if name not in self.containers:
            raise DockerCommandError(f"No such container: {name}")
        self.containers[name].status = "running"
        return _ok("docker", "start", name)

    async def remove_container(self, name: str):
        self.calls.append(("rm", name))
        self.containers.pop(name, None)
        return _ok("docker", "rm", "-f", name)

    async def copy_into(self, source, container: str, destination: str):
        self.calls.append(("cp", str(source), container, destination))
        self._maybe_fail("cp")
        return _ok("docker", "cp")

    async def backup_volume(self, volume: str, backup_dir: Path, image: str):
        self.calls.append(("backup_volume", volume, image))
        self._maybe_fail(f"backup_volume:{volume}")
        (Path(backup_dir) / f"{volume}.tar").write_bytes(b"tar")
        return _ok("docker", "run")

    async def exec_output(self, container: str, cmd: list[str]) -> str | None:
        return self.exec_outputs.get(container)

    def _compose_effect(self, args: tuple[str, ...]) -> None:
        operation = args[0]
        self._maybe_fail(f"compose:{operation}")
        if operation == "up":
            for role in self.stack.roles:
                container = self.containers.get(role.container)
                if container is None:
                    self.add(role.container, image=f"doom/{role.container}", health=self.up_health)
                else:
                    container.status = "running"
                    container.health = self.up_health
        elif operation == "down":
            for name in self.stack.container_names:
                if name in self.containers:
                    self.containers[name].status = "exited"

    async def compose(self, compose_path, *args: str, timeout: float | None = None, check: bool = True):
        self.calls.append(("compose", *args))
        self._compose_effect(args)
        return SubprocessResult(
            returncode=0,
            stdout="",
            stderr=self.compose_output.get(args[0], ""),
            cmd=["docker", "compose", *args],
        )

    async def compose_stream(
        self, compose_path, *args: str, stdout_consumer, stderr_consumer, timeout: float | None = None
    ) -> int:
        self.calls.append(("compose_stream", *args))
        stdout = asyncio.StreamReader()
        stderr = asyncio.StreamReader()
        for line in self.stream_lines.get(args[0], []):
            stdout.feed_data(f"{line}\n".encode())
        stdout.feed_eof()
        stderr.feed_eof()
        await asyncio.gather(stdout_consumer(stdout), stderr_consumer(stderr))
        self._compose_effect(args)
        return 0


class FakeHost:
    """Stand-in for HostProbe with no VPN and a fixed LAN address."""

    def __init__(self):
        self.installed = False
        self.status: VpnStatus | None = None
        self.vpn_ip: str | None = None
        self.lan_ip: str | None = "192.168.1.10"
        self.owners: dict[int, PortOwner] = {}

    def vpn_installed(self) -> bool:
        return self.installed

    async def vpn_status(self) -> VpnStatus | None:
        return self.status

    async def vpn_address(self) -> str | None:
        return self.vpn_ip

    async def host_address(self) -> str | None:
        return self.lan_ip

    async def port_owner(self, port: int) -> PortOwner:
        return self.owners.get(port, PortOwner())


@pytest.fixture(autouse=True)
def captured_logs():
    """Keep structlog output off stdout; tests may inspect the captured events."""
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def stack() -> StackDefinition:
    return StackDefinition()


@pytest.fixture
def runtime(stack: StackDefinition) -> FakeRuntime:
    return FakeRuntime(stack)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def durable() -> MagicMock:
    """Durable sink double recording every call."""
    return MagicMock()


@pytest.fixture
def user_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stack_logger(user_stream: io.StringIO, durable: MagicMock) -> StackLogger:
    return StackLogger(user_stream=user_stream, durable=durable, color=False)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / constants.DEFAULT_COMPOSE_FILE).write_text("services: {}\n", encoding="utf-8")
    (root / constants.ENV_FILE_NAME).write_text("TS_AUTHKEY=tskey-test\n", encoding="utf-8")
    return root


@pytest.fixture
def settings(project_root: Path) -> EngineSettings:
    """Settings with short deadlines so health polling tests finish quickly."""
    return EngineSettings(
        project_root=project_root,
        operation_timeout=5.0,
        health_timeout=0.3,
        health_poll_interval=0.05,
        restart_delay=0.0,
        probe_ports=(),
    )


@pytest.fixture
def detector(stack, runtime, host, stack_logger) -> ServiceDetector:
    return ServiceDetector(stack, runtime, host, log=stack_logger, probe_ports=())


@pytest.fixture
def migrator(detector: ServiceDetector, project_root: Path) -> Migrator:
    return Migrator(detector, project_root)


@pytest.fixture
def lifecycle(settings, detector, migrator, stack_logger) -> LifecycleManager:
    return LifecycleManager(settings, detector, migrator, log=stack_logger)
