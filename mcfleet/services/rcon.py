# mcfleet/services/rcon.py
"""
Minecraft RCON Protocol Client

Handles:
- Packet framing, authentication and single-command exchange
- Per-instance command execution with fixed-delay retry
- Parsing of common command responses (list, seed, version, TPS)
- Minecraft color code stripping
"""

import asyncio
import logging
import re
import socket
import struct
import time
from typing import Callable, List, Optional, Tuple, TypeVar

from mcfleet.core.config import (
    RCON_HOST,
    RCON_MAX_ATTEMPTS,
    RCON_RETRY_DELAY_SECONDS,
    RCON_SOCKET_TIMEOUT_SECONDS,
)
from mcfleet.core.errors import ProtocolFailure
from mcfleet.services.instance_store import Instance, InstanceStore, get_instance_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PLAYER_LIST_RE = re.compile(r"There are (\d+) of a max(?: of)? (\d+) players online:?\s*(.*)")
_SEED_RE = re.compile(r"Seed: \[(-?\d+)\]")
_VERSION_RE = re.compile(r"(Paper|Spigot|CraftBukkit|Forge|Fabric|Vanilla) version ([\d.]+)-")
_TPS_RE = re.compile(r"TPS from last 1m, 5m, 15m:\s*\*?([\d.]+)")
_DEBUG_TPS_RE = re.compile(r"\(([\d.]+) tick\(s\) per second\)")


def strip_minecraft_colors(text: str) -> str:
    """Strip Minecraft color/formatting codes (§X) from text"""
    return re.sub(r'§.', '', text)


def parse_player_list(text: str) -> Tuple[int, int, List[str]]:
    """Parse `list` output into (online, max, names)."""
    match = _PLAYER_LIST_RE.search(strip_minecraft_colors(text or ""))
    if not match:
        return 0, 0, []
    names = [n.strip() for n in match.group(3).split(",") if n.strip()]
    return int(match.group(1)), int(match.group(2)), names


def parse_seed(text: str) -> Optional[str]:
    match = _SEED_RE.search(text or "")
    return match.group(1) if match else None


def parse_version(text: str) -> Optional[str]:
    match = _VERSION_RE.search(strip_minecraft_colors(text or ""))
    if match:
        return f"{match.group(1)} {match.group(2)}"
    return None


def parse_tps(text: str) -> Optional[float]:
    """
    Parse TPS from either Paper's /tps output or the vanilla `debug stop` report.

    Expected formats:
        TPS from last 1m, 5m, 15m: 20.0, 20.0, 20.0
        Stopped tick profiling after 3.00 seconds and 60 ticks (20.00 tick(s) per second)
    """
    text = strip_minecraft_colors(text or "")
    match = _TPS_RE.search(text) or _DEBUG_TPS_RE.search(text)
    if match:
        return float(match.group(1))
    return None


class RCONConnection:
    """One authenticated RCON session; opened per command, never reused."""

    SERVERDATA_AUTH = 3
    SERVERDATA_AUTH_RESPONSE = 2
    SERVERDATA_EXECCOMMAND = 2
    SERVERDATA_RESPONSE_VALUE = 0
    # Vanilla splits replies into 4096-byte payload fragments; the length
    # field adds id, type and two NUL terminators on top of that.
    MAX_PAYLOAD_SIZE = 4096
    MAX_PACKET_SIZE = MAX_PAYLOAD_SIZE + 10

    def __init__(self, host: str, port: int, password: str, timeout: float = RCON_SOCKET_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.socket: Optional[socket.socket] = None
        self.request_id = 0

    def __enter__(self):
        try:
            self.connect()
        except BaseException:
            self.disconnect()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    def _pack_packet(self, packet_type: int, payload: str) -> bytes:
        self.request_id += 1
        payload_bytes = payload.encode("utf-8") + b"\x00\x00"
        length = 4 + 4 + len(payload_bytes)
        return struct.pack("<iii", length, self.request_id, packet_type) + payload_bytes

    def _recv_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.socket.recv(remaining)
            if not chunk:
                raise ConnectionError("Connection lost")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _read_packet(self) -> Tuple[int, int, str]:
        length = struct.unpack("<i", self._recv_exact(4))[0]
        if length < 10 or length > self.MAX_PACKET_SIZE:
            raise ProtocolFailure(f"RCON packet size out of bounds: {length}")

        data = self._recv_exact(length)
        request_id, packet_type = struct.unpack("<ii", data[0:8])
        payload = data[8:-2].decode("utf-8", errors="replace")
        return request_id, packet_type, payload

    def connect(self) -> None:
        """Connect and authenticate; raises on refusal, timeout or bad password."""
        self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self.socket.settimeout(self.timeout)
        self.socket.sendall(self._pack_packet(self.SERVERDATA_AUTH, self.password))

        # Some servers send an empty RESPONSE_VALUE ahead of the auth response
        request_id, packet_type, _ = self._read_packet()
        if packet_type != self.SERVERDATA_AUTH_RESPONSE:
            request_id, packet_type, _ = self._read_packet()

        if request_id == -1:
            raise ProtocolFailure("RCON authentication failed")
        if packet_type != self.SERVERDATA_AUTH_RESPONSE:
            raise ProtocolFailure(f"Unexpected RCON packet type during auth: {packet_type}")

    def send_command(self, command: str) -> str:
        if not self.socket:
            raise ConnectionError("Not connected")
        self.socket.sendall(self._pack_packet(self.SERVERDATA_EXECCOMMAND, command))
        _, _, payload = self._read_packet()
        return payload

    def disconnect(self):
        if self.socket:
            try:
                self.socket.close()
            except OSError:
                pass
            self.socket = None


ConnectionFactory = Callable[[str, int, str, float], RCONConnection]


class RconClient:
    """
    Executes commands against an instance's RCON listener.

    Every call opens a fresh connection, since the server may restart its
    listener between calls. Failures of any kind are retried with a fixed
    delay and finally collapse into a ``None`` result.
    """

    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        max_attempts: int = RCON_MAX_ATTEMPTS,
        retry_delay: float = RCON_RETRY_DELAY_SECONDS,
        timeout: float = RCON_SOCKET_TIMEOUT_SECONDS,
        host: str = RCON_HOST,
    ):
        self.store = store or get_instance_store()
        self.connection_factory = connection_factory or RCONConnection
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.host = host

    @staticmethod
    def instance_is_configured(instance: Instance) -> bool:
        return bool(
            instance.rcon_enabled
            and instance.rcon_port
            and instance.rcon_port > 0
            and instance.rcon_password
        )

    def is_configured(self, instance_id: int) -> bool:
        instance = self.store.find(instance_id)
        return instance is not None and self.instance_is_configured(instance)

    def execute(self, instance_id: int, command: str) -> Optional[str]:
        """Run one command, retrying; returns the response text or None."""
        instance = self.store.find(instance_id)
        if instance is None or not self.instance_is_configured(instance):
            logger.debug("[RCON] Instance %s has no RCON configured, skipping '%s'", instance_id, command)
            return None

        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.connection_factory(
                    self.host, instance.rcon_port, instance.rcon_password, self.timeout
                ) as conn:
                    return conn.send_command(command)
            except Exception as e:
                logger.warning(
                    "[RCON] Attempt %d/%d for instance %s ('%s') failed: %s",
                    attempt, self.max_attempts, instance_id, command, e,
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_delay)

        logger.error("[RCON] Command '%s' failed for instance %s after %d attempts",
                     command, instance_id, self.max_attempts)
        return None

    async def execute_async(self, instance_id: int, command: str) -> Optional[str]:
        """Same as execute(), run on a pool thread so slow instances never block the loop."""
        return await asyncio.to_thread(self.execute, instance_id, command)

    def execute_parsed(self, instance_id: int, command: str, parser: Callable[[str], T]) -> Optional[T]:
        response = self.execute(instance_id, command)
        if response is None:
            return None
        try:
            return parser(response)
        except Exception as e:
            logger.warning("[RCON] Could not parse response to '%s': %s", command, e)
            return None

    def test_connection(self, instance_id: int) -> bool:
        return self.execute(instance_id, "list") is not None

    async def test_connection_async(self, instance_id: int) -> bool:
        return await asyncio.to_thread(self.test_connection, instance_id)

    def connection_info(self, instance_id: int) -> dict:
        instance = self.store.get(instance_id)
        return {
            "host": self.host,
            "port": instance.rcon_port,
            "enabled": instance.rcon_enabled,
            "configured": self.instance_is_configured(instance),
            "password_set": bool(instance.rcon_password),
        }


_client: Optional[RconClient] = None


def get_rcon_client() -> RconClient:
    global _client
    if _client is None:
        _client = RconClient()
    return _client
