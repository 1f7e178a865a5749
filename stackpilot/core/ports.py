"""Bind-probe helpers for local TCP ports.

A port reported free is only free at the moment of the probe: another
process may take it before the caller binds it. The probe does not hold the
port open across that gap.
"""

import socket

from ..constants import PORT_RANGE_END, PORT_RANGE_START


def is_port_free(port: int) -> bool:
    """Bind to ``port`` on all interfaces and immediately release it."""
    if not 0 < port <= 65535:
        return False
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", port))
        sock.listen(1)
    except OSError:
        return False
    finally:
        sock.close()
    return True


def find_free_port(
    preferred: int,
    range_start: int = PORT_RANGE_START,
    range_end: int = PORT_RANGE_END,
) -> int:
    """Preferred port if free, else the first free port in the range, else 0.

    0 means "let the OS choose".
    """
    if is_port_free(preferred):
        return preferred
    for port in range(range_start, range_end + 1):
        if is_port_free(port):
            return port
    return 0
