"""Detection of existing stack services and port conflicts."""

import asyncio
from collections.abc import Iterable

import structlog

from ..constants import (
    FORCE_STOP_GRACE,
    HOST_VPN_NAME,
    PORT_RANGE_END,
    PORT_RANGE_START,
    VPN_RUNNING_STATE,
    WELL_KNOWN_PORTS,
)
from ..core import parsing, ports
from ..core.exceptions import DockerCommandError
from ..core.runtime import ContainerRuntime, HostProbe
from ..core.settings import EngineSettings
from ..core.stack_logger import StackLogger
from ..models import (
    DetectionReport,
    PortConflict,
    ServiceRecord,
    ServiceRole,
    ServiceState,
    StackDefinition,
)
from ..models.runtime import ContainerListing

logger = structlog.get_logger()


def deduplicate_services(services: Iterable[ServiceRecord]) -> list[ServiceRecord]:
    """Drop records whose dedup key was already seen; first seen wins."""
    seen: set[tuple] = set()
    result = []
    for svc in services:
        key = svc.dedup_key
        if key in seen:
            continue
        seen.add(key)
        result.append(svc)
    return result


class ServiceDetector:
    """Inventories running stack services and the ports they hold.

    Nothing is cached: every call re-queries the live system.
    """

    def __init__(
        self,
        stack: StackDefinition,
        runtime: ContainerRuntime | None = None,
        host: HostProbe | None = None,
        *,
        log: StackLogger | None = None,
        probe_ports: Iterable[int] = WELL_KNOWN_PORTS,
        port_range: tuple[int, int] | None = None,
    ):
        self.stack = stack
        self.runtime = runtime or ContainerRuntime()
        self.host = host or HostProbe()
        self.log = log or StackLogger()
        self.probe_ports = tuple(probe_ports)
        self.port_range = port_range or (PORT_RANGE_START, PORT_RANGE_END)
        self.logger = logger.bind(component="service_detector")

    @classmethod
    def from_settings(cls, settings: EngineSettings, log: StackLogger | None = None) -> "ServiceDetector":
        return cls(
            settings.stack_definition(),
            ContainerRuntime(command_timeout=settings.command_timeout),
            HostProbe(command_timeout=settings.command_timeout, vpn_cli=settings.vpn_cli),
            log=log,
            probe_ports=settings.probe_ports,
            port_range=(settings.port_range_start, settings.port_range_end),
        )

    async def detect_existing_services(self) -> list[ServiceRecord]:
        """Deduplicated union of container, port and host VPN probes."""
        return (await self.detect()).services

    async def detect(self) -> DetectionReport:
        """Run every probe; failed probes become warnings instead of errors."""
        report = DetectionReport()
        found: list[ServiceRecord] = []

        for probe in (self._detect_containers, self._detect_port_services, self._detect_host_vpn):
            try:
                found.extend(await probe())
            except (DockerCommandError, asyncio.TimeoutError, OSError) as e:
                warning = f"{probe.__name__.removeprefix('_detect_').replace('_', ' ')} probe failed: {e}"
                report.warnings.append(warning)
                self.log.debug("detect", warning)

        report.services = deduplicate_services(found)
        self.logger.debug(
            "Detection pass finished",
            services=len(report.services),
            warnings=len(report.warnings),
        )
        return report

    async def _detect_containers(self) -> list[ServiceRecord]:
        if not await self.runtime.is_available():
            raise DockerCommandError("docker not available")
        records = []
        for listing in await self.runtime.list_containers():
            record = self.classify_container(listing)
            if record is not None:
                records.append(record)
        return records

    def classify_container(self, listing: ContainerListing) -> ServiceRecord | None:
        """Record for a managed or same-kind container, None for anything else."""
        is_managed = any(name in listing.names for name in self.stack.container_names) or any(
            self.stack.management_label in key for key in listing.labels
        )
        signature = self.stack.same_kind_signature
        same_kind = signature in listing.image or signature in listing.names
        if not (is_managed or same_kind):
            return None

        port = parsing.parse_first_port(listing.ports)
        return ServiceRecord(
            name=listing.names,
            role=ServiceRole.MANAGED if is_managed else ServiceRole.EXTERNAL_SAME_KIND,
            state=parsing.listing_state(listing.state, listing.status),
            container_id=listing.id or None,
            container_name=listing.names or None,
            image=listing.image or None,
            port=port,
            protocol=parsing.parse_port_protocol(listing.ports),
            is_managed=is_managed,
            labels=listing.labels,
        )

    async def _detect_port_services(self) -> list[ServiceRecord]:
        records = []
        for port in self.probe_ports:
            record = await self.check_port(port)
            if record is not None:
                records.append(record)
        return records

    async def check_port(self, port: int) -> ServiceRecord | None:
        """Record for whatever holds ``port``, None if it is free."""
        if self.is_port_free(port):
            return None
        owner = await self.host.port_owner(port)
        return ServiceRecord(
            name=owner.process_name or f"Unknown service on port {port}",
            role=ServiceRole.EXTERNAL_GENERIC,
            state=ServiceState.RUNNING,
            port=port,
            protocol="tcp",
            pid=owner.pid,
            process_name=owner.process_name or None,
        )

    async def _detect_host_vpn(self) -> list[ServiceRecord]:
        if not self.host.vpn_installed():
            return []
        status = await self.host.vpn_status()
        if status is None:
            state, version = ServiceState.STOPPED, None
        else:
            running = status.backend_state == VPN_RUNNING_STATE
            state = ServiceState.RUNNING if running else ServiceState.STOPPED
            version = status.version or None
        return [
            ServiceRecord(
                name=HOST_VPN_NAME,
                role=ServiceRole.VPN_DAEMON,
                state=state,
                version=version,
            )
        ]

    async def check_port_conflicts(self, target_ports: dict[str, int]) -> list[PortConflict]:
        """Conflicts between the requested port map and running services."""
        services = await self.detect_existing_services()

        occupied: dict[int, ServiceRecord] = {}
        for svc in services:
            if svc.port > 0 and svc.is_running:
                occupied.setdefault(svc.port, svc)

        conflicts = []
        for requested_by, port in target_ports.items():
            occupier = occupied.get(port)
            if occupier is None:
                continue

            if occupier.is_managed:
                conflict = PortConflict(
                    port=port,
                    requested_by=requested_by,
                    occupied_by=occupier,
                    can_resolve=True,
                    resolution_hint="Previous installation detected. Will upgrade/restart.",
                    suggested_port=port,
                )
            elif occupier.role == ServiceRole.EXTERNAL_SAME_KIND:
                suggested = self.find_free_port(port)
                conflict = PortConflict(
                    port=port,
                    requested_by=requested_by,
                    occupied_by=occupier,
                    can_resolve=True,
                    resolution_hint=(
                        f"Existing code-server found. Suggest relocating to port {suggested} "
                        "or migrating."
                    ),
                    suggested_port=suggested,
                )
            else:
                suggested = self.find_free_port(port)
                conflict = PortConflict(
                    port=port,
                    requested_by=requested_by,
                    occupied_by=occupier,
                    can_resolve=False,
                    resolution_hint=(
                        f"Port {port} in use by {occupier.name}. Consider using "
                        f"--port={suggested} or stop the conflicting service."
                    ),
                    suggested_port=suggested,
                )
            conflicts.append(conflict)

        if conflicts:
            self.log.announce("port_conflict", source="detect")
        return conflicts

    def is_port_free(self, port: int) -> bool:
        return ports.is_port_free(port)

    def find_free_port(self, preferred: int) -> int:
        """Preferred port, else the first free port in range, else 0."""
        return ports.find_free_port(preferred, *self.port_range)

    def find_available_ports(self) -> dict[str, int]:
        """A currently free port for every role that publishes one."""
        result = {}
        for role in self.stack.roles:
            if not role.service_key:
                continue
            result[role.service_key] = self.find_free_port(role.port) if role.port else 0
        return result

    async def stop_managed_services(self, grace: int = FORCE_STOP_GRACE) -> list[str]:
        """Stop each existing canonical container, killing any that refuse.

        Returns:
            Errors for containers that could not be stopped or killed
        """
        errors = []
        for container in self.stack.container_names:
            if not await self.runtime.container_exists(container):
                continue
            try:
                await self.runtime.stop_container(container, grace)
                self.log.info("shutdown", f"Stopped {container}")
                continue
            except (DockerCommandError, asyncio.TimeoutError) as e:
                self.log.warning("shutdown", f"Graceful stop of {container} failed: {e}")
            try:
                await self.runtime.kill_container(container)
            except (DockerCommandError, asyncio.TimeoutError) as e:
                errors.append(f"{container}: {e}")
        return errors

    async def remove_managed_containers(self) -> list[str]:
        """Force-remove each canonical container; missing ones are ignored."""
        errors = []
        for container in self.stack.container_names:
            if not await self.runtime.container_exists(container):
                continue
            try:
                await self.runtime.remove_container(container)
            except (DockerCommandError, asyncio.TimeoutError) as e:
                errors.append(f"{container}: {e}")
        return errors
