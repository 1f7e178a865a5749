"""Centralized subprocess management with proper resource handling."""

import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import structlog

from .exceptions import DockerCommandError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30  # Default timeout in seconds
LONG_TIMEOUT = 300  # 5 minutes for long operations
KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL

StreamConsumer = Callable[[asyncio.StreamReader], Awaitable[Any]]


class SubprocessManager:
    """Manages subprocess execution with proper resource cleanup."""

    def __init__(self):
        self._active_processes: set[asyncio.subprocess.Process] = set()
        self._cleanup_lock = asyncio.Lock()

    async def run_command(
        self,
        cmd: list[str],
        *,
        timeout: Optional[float] = None,
        check: bool = True,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> "SubprocessResult":
        """
        Run a command asynchronously with proper resource management.

        Args:
            cmd: Command and arguments as a list
            timeout: Timeout in seconds (default: DEFAULT_TIMEOUT)
            check: Raise exception if command fails
            cwd: Working directory for the command
            env: Environment variables
            stdin: Input to provide to the command

        Returns:
            SubprocessResult with returncode, stdout, and stderr

        Raises:
            DockerCommandError: If check=True and command fails
            asyncio.TimeoutError: If command times out
            OSError: If the executable cannot be launched
        """
        if timeout is None:
            timeout = DEFAULT_TIMEOUT

        logger.debug(
            "Executing command",
            command=" ".join(cmd),
            timeout=timeout,
            cwd=cwd,
        )

        kwargs: dict[str, Any] = {
            "cwd": cwd,
            "env": env or os.environ.copy(),
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if stdin is not None:
            kwargs["stdin"] = asyncio.subprocess.PIPE

        process = None
        try:
            process = await asyncio.create_subprocess_exec(*cmd, **kwargs)

            async with self._cleanup_lock:
                self._active_processes.add(process)

            stdin_bytes = stdin.encode() if stdin is not None else None
            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(input=stdin_bytes), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Command timed out, terminating process",
                    command=" ".join(cmd),
                    timeout=timeout,
                    pid=process.pid,
                )
                await self._terminate(process)
                raise asyncio.TimeoutError(
                    f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
                ) from None

            stdout = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
            stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""

            result = SubprocessResult(
                returncode=process.returncode or 0,
                stdout=stdout,
                stderr=stderr,
                cmd=cmd,
            )

            if check:
                result.check_returncode()

            return result

        finally:
            if process is not None:
                await self._release(process)

    async def stream_command(
        self,
        cmd: list[str],
        *,
        stdout_consumer: StreamConsumer,
        stderr_consumer: StreamConsumer,
        timeout: Optional[float] = None,
        check: bool = True,
        cwd: Optional[str] = None,
    ) -> int:
        """Run a command while two consumers read its output streams concurrently.

        Args:
            cmd: Command and arguments as a list
            stdout_consumer: Coroutine function fed the stdout reader
            stderr_consumer: Coroutine function fed the stderr reader
            timeout: Timeout in seconds for the whole run (default: LONG_TIMEOUT)
            check: Raise exception if command fails
            cwd: Working directory for the command

        Returns:
            The process return code

        Raises:
            DockerCommandError: If check=True and command fails
            asyncio.TimeoutError: If command times out
        """
        if timeout is None:
            timeout = LONG_TIMEOUT

        logger.debug("Streaming command", command=" ".join(cmd), timeout=timeout, cwd=cwd)

        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        async with self._cleanup_lock:
            self._active_processes.add(process)

        try:
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        stdout_consumer(process.stdout),
                        stderr_consumer(process.stderr),
                        process.wait(),
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Streamed command timed out, terminating process",
                    command=" ".join(cmd),
                    timeout=timeout,
                    pid=process.pid,
                )
                await self._terminate(process)
                raise asyncio.TimeoutError(
                    f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
                ) from None
        finally:
            await self._release(process)

        returncode = process.returncode or 0
        if check and returncode != 0:
            raise DockerCommandError(
                f"Command failed with exit code {returncode}: {' '.join(cmd)}"
            )
        return returncode

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate gracefully, escalating to SIGKILL."""
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                "Process did not terminate gracefully, sending SIGKILL",
                pid=process.pid,
            )
            process.kill()
            await process.wait()

    async def _release(self, process: asyncio.subprocess.Process) -> None:
        async with self._cleanup_lock:
            self._active_processes.discard(process)
        if process.returncode is None:
            await self._terminate(process)

    async def cleanup_all(self):
        """Cleanup all active processes."""
        async with self._cleanup_lock:
            processes = list(self._active_processes)

        if not processes:
            return

        logger.info(f"Cleaning up {len(processes)} active processes")

        for process in processes:
            if process.returncode is None:
                await self._terminate(process)

        async with self._cleanup_lock:
            self._active_processes.clear()


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        cmd: list[str],
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0

    @property
    def combined_output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())

    def check_returncode(self):
        """Raise an exception if the command failed."""
        if self.returncode != 0:
            error_msg = (
                self.stderr.strip() if self.stderr.strip()
                else self.stdout.strip() if self.stdout.strip()
                else "Command failed"
            )
            raise DockerCommandError(
                f"Command failed with exit code {self.returncode}: {error_msg}"
            )

