"""Parsers for docker, tailscale, lsof, ss and ps output.

Every helper tolerates malformed input by returning a zero value instead of
raising, so a garbled line from one tool never breaks a detection pass.
"""

import json
import re

from ..constants import NO_VALUE
from ..models.enums import ServiceState
from ..models.runtime import ContainerListing, ContainerState, VpnStatus

_SS_USER = re.compile(r'users:\(\("(?P<name>[^"]+)",pid=(?P<pid>\d+)')


def parse_labels(label_str: str | None) -> dict[str, str]:
    """Parse docker's ``k1=v1,k2=v2`` label string; malformed pairs are skipped."""
    result: dict[str, str] = {}
    if not label_str:
        return result
    for pair in label_str.split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            result[key.strip()] = value.strip()
    return result


def parse_first_port(port_str: str | None) -> int:
    """Extract the first published host port.

    Examples:
        >>> parse_first_port("0.0.0.0:8443->8443/tcp, :::8443->8443/tcp")
        8443
        >>> parse_first_port("invalid")
        0
    """
    if not port_str:
        return 0
    host_part, sep, _ = port_str.partition("->")
    if not sep:
        return 0
    _, colon, port = host_part.rpartition(":")
    if not colon:
        return 0
    try:
        value = int(port.strip())
    except ValueError:
        return 0
    return value if 0 < value <= 65535 else 0


def parse_port_protocol(port_str: str | None) -> str:
    """Protocol of the first published port, ``""`` if there is none."""
    if not parse_first_port(port_str):
        return ""
    first = port_str.split(",", 1)[0]
    _, slash, proto = first.rpartition("/")
    proto = proto.strip().lower()
    return proto if slash and proto in ("tcp", "udp") else "tcp"


def parse_container_line(line: str) -> ContainerListing | None:
    """Decode one JSON-per-line container listing."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return ContainerListing(
        id=str(data.get("ID") or ""),
        names=str(data.get("Names") or ""),
        image=str(data.get("Image") or ""),
        state=str(data.get("State") or ""),
        status=str(data.get("Status") or ""),
        ports=str(data.get("Ports") or ""),
        labels=parse_labels(str(data.get("Labels") or "")),
    )


def parse_container_listing(output: str) -> list[ContainerListing]:
    listings = []
    for line in output.splitlines():
        listing = parse_container_line(line)
        if listing is not None:
            listings.append(listing)
    return listings


def listing_state(state: str, status: str = "") -> ServiceState:
    """Lifecycle state from ``docker ps`` State and Status columns."""
    state = state.strip().lower()
    if state == "running":
        status = status.lower()
        if "(unhealthy)" in status:
            return ServiceState.UNHEALTHY
        if "(healthy)" in status:
            return ServiceState.HEALTHY
        if "(health: starting)" in status:
            return ServiceState.STARTING
        return ServiceState.RUNNING
    if state in ("exited", "dead", "created"):
        return ServiceState.STOPPED
    return ServiceState.UNKNOWN


def parse_inspect_state(output: str | None) -> ContainerState:
    """Parse ``<status>,<health>`` from the inspect template."""
    if not output:
        return ContainerState()
    status, _, health = output.strip().partition(",")
    health = health.strip()
    if health == NO_VALUE:
        health = ""
    return ContainerState(status=status.strip().lower(), health=health.lower())


def classify_state(state: ContainerState) -> ServiceState:
    """Lifecycle state from inspect status and health, without waiting."""
    if state.status == "running":
        if state.health == "healthy":
            return ServiceState.HEALTHY
        if state.health == "unhealthy":
            return ServiceState.UNHEALTHY
        if state.health == "starting":
            return ServiceState.STARTING
        return ServiceState.RUNNING
    if state.status in ("exited", "dead", "created"):
        return ServiceState.STOPPED
    if state.status in ("restarting",):
        return ServiceState.STARTING
    if state.status in ("removing",):
        return ServiceState.STOPPING
    return ServiceState.UNKNOWN


def parse_vpn_status(output: str | None) -> VpnStatus | None:
    """Parse ``tailscale status --json``; None if it is not a JSON object."""
    if not output:
        return None
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    self_node = data.get("Self") or {}
    addresses = self_node.get("TailscaleIPs") if isinstance(self_node, dict) else None
    return VpnStatus(
        backend_state=str(data.get("BackendState") or ""),
        version=str(data.get("Version") or ""),
        addresses=[str(ip) for ip in addresses or []],
    )


def parse_pid(output: str | None) -> int:
    """First PID from ``lsof -t`` style output, 0 if none."""
    if not output:
        return 0
    for token in output.split():
        if token.isdigit():
            return int(token)
    return 0


def parse_ss_owner(output: str | None) -> tuple[int, str]:
    """Owning (pid, process name) from ``ss -tlpn`` output."""
    if not output:
        return 0, ""
    match = _SS_USER.search(output)
    if not match:
        return 0, ""
    return int(match.group("pid")), match.group("name")


def first_address(output: str | None) -> str | None:
    """First address of whitespace-separated output such as ``hostname -I``."""
    if not output:
        return None
    fields = output.split()
    return fields[0] if fields else None
