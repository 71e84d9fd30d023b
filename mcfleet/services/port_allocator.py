# mcfleet/services/port_allocator.py
"""
Free TCP port discovery for game traffic and RCON.

Ports recorded on any instance are skipped, and each remaining candidate must
pass a throwaway bind before it is handed out. When an instance id is given
the port is written to that instance before the allocator lock is released,
so back-to-back installs never receive the same port.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Optional, Tuple

from mcfleet.core.config import GAME_PORT_RANGE, RCON_PORT_RANGE
from mcfleet.core.errors import NoPortAvailable
from mcfleet.services.instance_store import InstanceStore, get_instance_store

logger = logging.getLogger(__name__)


class PortKind(str, Enum):
    GAME = "game"
    RCON = "rcon"


def is_port_bindable(port: int, host: str = "") -> bool:
    """True if a listening socket can be bound to the port right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, int(port)))
            return True
    except OSError:
        return False


class PortAllocator:
    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        game_range: Tuple[int, int] = GAME_PORT_RANGE,
        rcon_range: Tuple[int, int] = RCON_PORT_RANGE,
    ):
        self.store = store or get_instance_store()
        self.ranges = {PortKind.GAME: game_range, PortKind.RCON: rcon_range}
        self._lock = threading.Lock()

    def allocate(self, kind: PortKind, instance_id: Optional[int] = None) -> int:
        kind = PortKind(kind)
        start, end = self.ranges[kind]
        with self._lock:
            game_ports, rcon_ports = self.store.allocated_ports()
            used = game_ports | rcon_ports
            for candidate in range(start, end + 1):
                if candidate in used:
                    continue
                if is_port_bindable(candidate):
                    if instance_id is not None:
                        field = "port" if kind == PortKind.GAME else "rcon_port"
                        self.store.update(instance_id, **{field: candidate})
                    logger.info("[Ports] Allocated %s port %d", kind.value, candidate)
                    return candidate
        raise NoPortAvailable(f"No available {kind.value} ports in range {start}-{end}")

    def allocate_game_port(self, instance_id: Optional[int] = None) -> int:
        return self.allocate(PortKind.GAME, instance_id)

    def allocate_rcon_port(self, instance_id: Optional[int] = None) -> int:
        return self.allocate(PortKind.RCON, instance_id)


_allocator: Optional[PortAllocator] = None


def get_port_allocator() -> PortAllocator:
    global _allocator
    if _allocator is None:
        _allocator = PortAllocator()
    return _allocator
