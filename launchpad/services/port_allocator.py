"""
Port Allocator
==============
Hands out host ports from a bounded inclusive range.

A port is handed out only when it is
    - not reserved by another live run of this process, and
    - not currently bound by anything on the host (probe bind).

The check-and-reserve step runs under one lock, so two concurrent
``allocate`` calls can never return the same port. A reservation lives
until ``release`` is called by whoever owns the RunHandle.
"""
import logging
import socket
import threading
from typing import Dict, Optional, Tuple

from launchpad.core.config import PORT_RANGE_END, PORT_RANGE_START
from launchpad.core.errors import NoPortAvailable

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """True when nothing on the host is bound to ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:

    def __init__(self, start: int = PORT_RANGE_START, end: int = PORT_RANGE_END) -> None:
        if start > end:
            raise ValueError(f"invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self._reserved: Dict[int, str] = {}  # port -> run_id
        self._lock = threading.Lock()

    def allocate(self, owner: str, port_range: Optional[Tuple[int, int]] = None) -> int:
        """
        Reserve a free port for ``owner`` (a run id).

        Scans from the top of the range downwards so low ports stay free
        for other host services.

        Raises
        ------
        NoPortAvailable
            Every port in the range is reserved or bound on the host.
        """
        low, high = port_range or (self.start, self.end)
        with self._lock:
            for port in range(high, low - 1, -1):
                if port in self._reserved:
                    continue
                if not is_port_free(port):
                    continue
                self._reserved[port] = owner
                logger.info("Allocated port %d for run %s", port, owner)
                return port
        raise NoPortAvailable(f"no free port in range {low}-{high}")

    def release(self, port: Optional[int], owner: Optional[str] = None) -> bool:
        """
        Drop the reservation on ``port``. Safe to call repeatedly.

        When ``owner`` is given, a reservation held by a different run is
        left untouched.
        """
        if port is None:
            return False
        with self._lock:
            holder = self._reserved.get(port)
            if holder is None:
                return False
            if owner is not None and holder != owner:
                logger.warning("Refusing to release port %d: held by %s, not %s", port, holder, owner)
                return False
            del self._reserved[port]
        logger.info("Released port %d (run %s)", port, holder)
        return True

    def holder(self, port: int) -> Optional[str]:
        with self._lock:
            return self._reserved.get(port)

    def is_reserved(self, port: int) -> bool:
        return self.holder(port) is not None
