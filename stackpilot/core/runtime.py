"""Container runtime and host probes.

The only place that shells out to docker, docker compose, the VPN client and
the OS socket tools. Output is handed to :mod:`.parsing` and returned as
records, so decision logic never sees raw CLI text.
"""

import asyncio
import shutil
from pathlib import Path

import structlog

from ..constants import INSPECT_STATE_FORMAT, VPN_CLI
from ..models.runtime import ContainerListing, ContainerState, PortOwner, VpnStatus
from . import parsing
from .exceptions import DockerCommandError
from .subprocess_manager import LONG_TIMEOUT, StreamConsumer, SubprocessManager, SubprocessResult

logger = structlog.get_logger()


class _CommandRunner:
    def __init__(self, subprocess_manager: SubprocessManager | None, command_timeout: float):
        self.subprocess = subprocess_manager or SubprocessManager()
        self.command_timeout = command_timeout

    async def _run(
        self,
        cmd: list[str],
        *,
        timeout: float | None = None,
        check: bool = True,
        cwd: str | None = None,
    ) -> SubprocessResult:
        """Run a command, mapping launch failures to DockerCommandError."""
        try:
            return await self.subprocess.run_command(
                cmd, timeout=timeout or self.command_timeout, check=check, cwd=cwd
            )
        except OSError as e:
            raise DockerCommandError(f"{cmd[0]} not available: {e}") from e

    async def _output(self, cmd: list[str], timeout: float | None = None) -> str | None:
        """Stdout of a successful command, None on any failure."""
        try:
            result = await self._run(cmd, timeout=timeout, check=False)
        except (DockerCommandError, asyncio.TimeoutError) as e:
            logger.debug("Probe command failed", command=" ".join(cmd), error=str(e))
            return None
        if not result.success:
            return None
        return result.stdout


class ContainerRuntime(_CommandRunner):
    """Docker CLI operations used by the engine."""

    def __init__(
        self,
        subprocess_manager: SubprocessManager | None = None,
        *,
        command_timeout: float = 60.0,
    ):
        super().__init__(subprocess_manager, command_timeout)
        self.logger = logger.bind(component="container_runtime")

    async def is_available(self) -> bool:
        """Whether the docker daemon answers ``docker info``."""
        return await self._output(["docker", "info"]) is not None

    async def list_containers(self) -> list[ContainerListing]:
        """All containers, running or not.

        Raises:
            DockerCommandError: If the listing fails
        """
        result = await self._run(["docker", "ps", "-a", "--format", "{{json .}}"])
        return parsing.parse_container_listing(result.stdout)

    async def container_exists(self, name: str) -> bool:
        return await self._output(["docker", "inspect", "--type", "container", name]) is not None

    async def inspect_state(self, name: str, timeout: float | None = None) -> ContainerState | None:
        """Status and health of a container, None if it cannot be inspected."""
        output = await self._output(
            ["docker", "inspect", "--format", INSPECT_STATE_FORMAT, name], timeout=timeout
        )
        if output is None:
            return None
        return parsing.parse_inspect_state(output)

    async def stop_container(self, name: str, grace: int, timeout: float | None = None) -> SubprocessResult:
        return await self._run(
            ["docker", "stop", "-t", str(grace), name], timeout=timeout or grace + self.command_timeout
        )

    async def kill_container(self, name: str) -> SubprocessResult:
        return await self._run(["docker", "kill", name])

    async def start_container(self, name: str) -> SubprocessResult:
        return await self._run(["docker", "start", name])

    async def remove_container(self, name: str) -> SubprocessResult:
        return await self._run(["docker", "rm", "-f", name])

    async def copy_into(self, source: str | Path, container: str, destination: str) -> SubprocessResult:
        return await self._run(
            ["docker", "cp", str(source), f"{container}:{destination}"], timeout=LONG_TIMEOUT
        )

    async def backup_volume(self, volume: str, backup_dir: Path, image: str) -> SubprocessResult:
        """Tar a named volume into ``backup_dir`` using a disposable helper container."""
        return await self._run(
            [
                "docker", "run", "--rm",
                "-v", f"{volume}:/data:ro",
                "-v", f"{backup_dir}:/backup",
                image,
                "tar", "cf", f"/backup/{volume}.tar", "-C", "/data", ".",
            ],
            timeout=LONG_TIMEOUT,
        )

    async def exec_output(self, container: str, cmd: list[str]) -> str | None:
        return await self._output(["docker", "exec", container, *cmd])

    @staticmethod
    def compose_command(compose_path: str | Path, *args: str) -> list[str]:
        return ["docker", "compose", "-f", str(compose_path), *args]

    async def compose(
        self,
        compose_path: str | Path,
        *args: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> SubprocessResult:
        return await self._run(
            self.compose_command(compose_path, *args),
            timeout=timeout or LONG_TIMEOUT,
            check=check,
            cwd=str(Path(compose_path).parent),
        )

    async def compose_stream(
        self,
        compose_path: str | Path,
        *args: str,
        stdout_consumer: StreamConsumer,
        stderr_consumer: StreamConsumer,
        timeout: float | None = None,
    ) -> int:
        """Run a compose command with both output streams consumed live."""
        cmd = self.compose_command(compose_path, *args)
        try:
            return await self.subprocess.stream_command(
                cmd,
                stdout_consumer=stdout_consumer,
                stderr_consumer=stderr_consumer,
                timeout=timeout,
                cwd=str(Path(compose_path).parent),
            )
        except OSError as e:
            raise DockerCommandError(f"docker not available: {e}") from e


class HostProbe(_CommandRunner):
    """VPN client, socket owner and interface lookups on the host."""

    def __init__(
        self,
        subprocess_manager: SubprocessManager | None = None,
        *,
        command_timeout: float = 30.0,
        vpn_cli: str = VPN_CLI,
    ):
        super().__init__(subprocess_manager, command_timeout)
        self.vpn_cli = vpn_cli

    def vpn_installed(self) -> bool:
        return shutil.which(self.vpn_cli) is not None

    async def vpn_status(self) -> VpnStatus | None:
        """Structured VPN daemon status, None if the query fails."""
        return parsing.parse_vpn_status(await self._output([self.vpn_cli, "status", "--json"]))

    async def vpn_address(self) -> str | None:
        return parsing.first_address(await self._output([self.vpn_cli, "ip", "-4"]))

    async def host_address(self) -> str | None:
        return parsing.first_address(await self._output(["hostname", "-I"]))

    async def port_owner(self, port: int) -> PortOwner:
        """Identify the process bound to ``port``.

        Asks ``lsof`` for the PID first, then falls back to scanning the
        ``ss`` socket table.
        """
        owner = PortOwner()
        pid = parsing.parse_pid(await self._output(["lsof", "-i", f":{port}", "-P", "-n", "-t"]))
        if pid:
            name = await self._output(["ps", "-p", str(pid), "-o", "comm="])
            return PortOwner(pid=pid, process_name=(name or "").strip())

        table = await self._output(["ss", "-tlpn", f"sport = :{port}"])
        if table:
            pid, name = parsing.parse_ss_owner(table)
            owner = PortOwner(pid=pid, process_name=name)
        return owner
