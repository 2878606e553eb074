"""Preview-server port allocation."""

import logging
import socket

from build_orchestrator.core.errors import NoPortsAvailableError

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Probe a port by binding a throwaway listener to it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        sock.listen(1)
    except OSError:
        return False
    finally:
        sock.close()
    return True


def find_available_port(start: int, end: int, reserved: set[int] | frozenset = frozenset()) -> int:
    """Return the lowest port in [start, end] that is neither reserved nor bound."""
    for port in range(start, end + 1):
        if port in reserved:
            continue
        if is_port_free(port):
            return port
    raise NoPortsAvailableError(start, end)


class PortAllocator:
    """Tracks which ports are held by preview servers of this process."""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        self.allocated: set[int] = set()

    def allocate(self) -> int:
        """Find and reserve a free port. No await happens between find and reserve."""
        port = find_available_port(self.start, self.end, self.allocated)
        self.allocated.add(port)
        logger.debug("Reserved port %s", port)
        return port

    def release(self, port: int | None):
        if port is None:
            return
        self.allocated.discard(port)

    def release_all(self):
        self.allocated.clear()
