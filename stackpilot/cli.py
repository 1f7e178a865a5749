"""Command line entry point for stackpilot."""

import argparse
import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError

from . import __version__
from .core.exceptions import ConfigurationError, EnvironmentCheckError, StackPilotError
from .core.logging_config import setup_logging
from .core.settings import EngineSettings
from .core.stack_logger import StackLogger
from .models import MigrationPlan, PortConflict, ServiceRecord, ServiceStatus, ShutdownResult, StartupResult
from .services import LifecycleManager
from .utils import format_duration

COMMANDS = ("detect", "conflicts", "plan", "start", "stop", "restart", "status")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="stackpilot", description="Detect, migrate and run the doom-coding container stack"
    )
    parser.add_argument("command", choices=COMMANDS, help="Operation to run")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show all subprocess output")
    parser.add_argument(
        "--dry-run", action="store_true", help="Report migration actions without running them"
    )
    parser.add_argument(
        "--yes", "-y", action="store_true", help="Do not ask before migrating an external install"
    )
    parser.add_argument(
        "--no-health-checks", action="store_true", help="Do not wait for containers to be healthy"
    )
    parser.add_argument("--project-root", type=Path, help="Directory holding the compose file")
    parser.add_argument("--compose-file", help="Compose file name relative to the project root")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Durable log level",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> EngineSettings:
    """Settings from the environment with command line overrides applied.

    Raises:
        ConfigurationError: If the resulting settings fail validation
    """
    overrides: dict[str, Any] = {"log_level": args.log_level}
    if args.project_root is not None:
        overrides["project_root"] = args.project_root
    if args.compose_file:
        overrides["compose_file"] = args.compose_file
    if args.dry_run:
        overrides["dry_run"] = True
    if args.verbose:
        overrides["verbose"] = True
    if args.no_health_checks:
        overrides["health_checks"] = False
    try:
        return EngineSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _setup_log_directory(settings: EngineSettings) -> Path | None:
    """Pick a writable log directory with fallback options."""
    candidates = [
        settings.log_dir,
        Path.home() / ".local" / "share" / "stackpilot" / "logs",
        Path(tempfile.gettempdir()) / "stackpilot-logs",
    ]
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            candidate.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if os.access(candidate, os.W_OK):
            return candidate
    return None


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = build_settings(args)
    except ConfigurationError as e:
        print(e, file=sys.stderr)
        return 2

    log_dir = _setup_log_directory(settings)
    if log_dir is not None:
        setup_logging(log_dir, settings.log_level, settings.log_file_size_mb)

    # Keep stdout clean for JSON output
    log = StackLogger(user_stream=sys.stderr if args.json else sys.stdout)
    log.set_verbose(settings.verbose)

    try:
        return asyncio.run(run(args.command, settings, log, as_json=args.json, assume_yes=args.yes))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


async def run(
    command: str,
    settings: EngineSettings,
    log: StackLogger,
    *,
    as_json: bool = False,
    assume_yes: bool = False,
) -> int:
    """Execute one command and render its result. Returns the exit code."""
    manager = LifecycleManager(settings, log=log)
    logger = structlog.get_logger().bind(component="cli", command=command)
    logger.info("Command started", project_root=str(settings.project_root))

    try:
        if command == "detect":
            report = await manager.detector.detect()
            _render_services(report.services, report.warnings, as_json)
            return 0

        if command == "conflicts":
            conflicts = await manager.detector.check_port_conflicts(manager.stack.target_ports())
            _render_conflicts(conflicts, as_json)
            return 1 if any(not c.can_resolve for c in conflicts) else 0

        if command == "plan":
            plan = await manager.pre_start_check()
            _render_plan(plan, as_json)
            return 0

        if command == "start":
            plan = await manager.pre_start_check()
            if not as_json:
                print(plan.summary())
            if plan.requires_confirm and not settings.dry_run and not assume_yes:
                if not _confirm("Proceed with migration?"):
                    log.warning("cli", "Aborted by user")
                    return 1
            result = await manager.start(plan)
            _render_startup(result, as_json)
            return 0 if result.success else 1

        if command == "stop":
            result = await manager.stop()
            _render_shutdown(result, as_json)
            return 0 if result.success else 1

        if command == "restart":
            result = await manager.restart()
            _render_startup(result, as_json)
            return 0 if result.success else 1

        statuses = await manager.status()
        _render_statuses(statuses, as_json)
        return 0

    except EnvironmentCheckError as e:
        log.error("cli", f"Pre-start check failed: {e}")
        return 1
    except StackPilotError as e:
        log.error("cli", str(e))
        logger.error("Command failed", error=str(e))
        return 1
    finally:
        await manager.runtime.subprocess.cleanup_all()


def _confirm(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _render_services(services: list[ServiceRecord], warnings: list[str], as_json: bool) -> None:
    if as_json:
        _print_json(
            {
                "services": [svc.model_dump(mode="json") for svc in services],
                "warnings": warnings,
            }
        )
        return
    if not services:
        print("No existing services detected")
    for svc in services:
        port = f" port {svc.port}/{svc.protocol}" if svc.port else ""
        print(f"  - {svc.name} [{svc.role.value}, {svc.state.value}]{port}")
    for warning in warnings:
        print(f"  ! {warning}")


def _render_conflicts(conflicts: list[PortConflict], as_json: bool) -> None:
    if as_json:
        _print_json([conflict.model_dump(mode="json") for conflict in conflicts])
        return
    if not conflicts:
        print("No port conflicts")
    for conflict in conflicts:
        mark = "resolvable" if conflict.can_resolve else "blocking"
        print(f"  - {conflict.requested_by} port {conflict.port} ({mark}): {conflict.resolution_hint}")


def _render_plan(plan: MigrationPlan, as_json: bool) -> None:
    if as_json:
        _print_json(plan.model_dump(mode="json"))
    else:
        print(plan.summary())


def _render_statuses(statuses: list[ServiceStatus], as_json: bool) -> None:
    if as_json:
        _print_json([status.model_dump(mode="json") for status in statuses])
        return
    for status in statuses:
        line = f"  {status.name:<12} {status.container:<20} {status.state.value}"
        if status.error:
            line += f" ({status.error})"
        print(line)


def _render_startup(result: StartupResult, as_json: bool) -> None:
    if as_json:
        _print_json(result.model_dump(mode="json"))
        return
    _render_statuses(result.services, as_json=False)
    for key, url in result.access_urls.items():
        print(f"  {key}: {url}")
    for warning in result.warnings:
        print(f"  ! {warning}")
    for error in result.errors:
        print(f"  x {error}")
    print(f"Finished in {format_duration(result.duration)}")


def _render_shutdown(result: ShutdownResult, as_json: bool) -> None:
    if as_json:
        _print_json(result.model_dump(mode="json"))
        return
    _render_statuses(result.services, as_json=False)
    for error in result.errors:
        print(f"  x {error}")
    print(f"Finished in {format_duration(result.duration)}")


if __name__ == "__main__":
    sys.exit(main())
