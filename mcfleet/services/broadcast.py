# mcfleet/services/broadcast.py
"""
Live event fan-out to WebSocket viewers.

Connections are grouped per channel: one channel per instance id plus the
installation-progress and all-instances sentinels. Each publish is serialized
once and written to every connection on the channel; connections that are
closed or fail on write are dropped during that same pass.
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

from starlette.websockets import WebSocketState

from mcfleet.core.config import CONSOLE_BACKFILL_LINES
from mcfleet.services.console import ConsoleHistory, ConsoleMessage, get_console_history

logger = logging.getLogger(__name__)

INSTALLATION_CHANNEL = -1
SYSTEM_CHANNEL = -2

EVENT_CONSOLE = "console"
EVENT_STATUS = "status"
EVENT_HISTORY = "history"
EVENT_SYSTEM_STATS = "system-stats"


def _to_jsonable(data: Any) -> Any:
    if hasattr(data, "to_dict"):
        return data.to_dict()
    if is_dataclass(data) and not isinstance(data, type):
        return asdict(data)
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (list, tuple)):
        return [_to_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {key: _to_jsonable(value) for key, value in data.items()}
    return data


def encode_event(event_type: str, data: Any) -> str:
    """Serialize the {type, data, timestamp} envelope (timestamp in ms)."""
    return json.dumps(
        {"type": event_type, "data": _to_jsonable(data), "timestamp": int(time.time() * 1000)},
        ensure_ascii=False,
        default=str,
    )


def _is_open(conn) -> bool:
    client_state = getattr(conn, "client_state", WebSocketState.CONNECTED)
    application_state = getattr(conn, "application_state", WebSocketState.CONNECTED)
    return client_state == WebSocketState.CONNECTED and application_state == WebSocketState.CONNECTED


class BroadcastHub:
    def __init__(self, history: Optional[ConsoleHistory] = None):
        self.history = history or get_console_history()
        self._sessions: Dict[int, Set[Any]] = {}
        self._members_lock = threading.Lock()
        self._delivery_locks: Dict[int, asyncio.Lock] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _channel_lock(self, channel_id: int) -> asyncio.Lock:
        """Per-channel delivery lock; keeps order on a channel without blocking the others."""
        with self._members_lock:
            lock = self._delivery_locks.get(channel_id)
            if lock is None:
                lock = self._delivery_locks[channel_id] = asyncio.Lock()
            return lock

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """Remember the event loop that owns the connections (for thread producers)."""
        self._loop = loop

    async def subscribe(self, channel_id: int, conn) -> None:
        if channel_id == INSTALLATION_CHANNEL:
            welcome = ConsoleMessage.info("WebSocket connected for installation.")
        elif channel_id == SYSTEM_CHANNEL:
            welcome = ConsoleMessage.info("WebSocket connected to system telemetry.")
        else:
            welcome = ConsoleMessage.info(f"WebSocket connected successfully to instance {channel_id}")
        # Welcome and backfill go out before any publish can reach the new viewer
        async with self._channel_lock(channel_id):
            with self._members_lock:
                self._sessions.setdefault(channel_id, set()).add(conn)
            logger.info("[Broadcast] Subscriber added to channel %s (%d total)",
                        channel_id, self.subscriber_count(channel_id))
            await self.send_to(conn, EVENT_CONSOLE, welcome)

            if channel_id >= 0:
                backfill = self.history.recent(channel_id, CONSOLE_BACKFILL_LINES)
                if backfill:
                    await self.send_to(conn, EVENT_HISTORY, backfill)

    def unsubscribe(self, channel_id: int, conn) -> None:
        with self._members_lock:
            members = self._sessions.get(channel_id)
            if members is None:
                return
            members.discard(conn)
            if not members:
                self._sessions.pop(channel_id, None)
        logger.info("[Broadcast] Subscriber removed from channel %s", channel_id)

    def has_any_subscribers(self) -> bool:
        return any(self._sessions.values())

    def subscriber_count(self, channel_id: int) -> int:
        return len(self._sessions.get(channel_id, ()))

    def total_subscribers(self) -> int:
        return sum(len(members) for members in list(self._sessions.values()))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send_to(self, conn, event_type: str, data: Any) -> bool:
        """Unicast one event; returns False if the write failed."""
        try:
            await conn.send_text(encode_event(event_type, data))
            return True
        except Exception as e:
            logger.debug("[Broadcast] Unicast failed: %s", e)
            return False

    async def publish(self, channel_id: int, event_type: str, data: Any) -> int:
        """Deliver an event to every live subscriber; returns the delivery count."""
        with self._members_lock:
            members = list(self._sessions.get(channel_id, ()))
        if not members:
            return 0

        payload = encode_event(event_type, data)
        delivered = 0
        dead = []
        async with self._channel_lock(channel_id):
            for conn in members:
                if not _is_open(conn):
                    dead.append(conn)
                    continue
                try:
                    await conn.send_text(payload)
                    delivered += 1
                except Exception as e:
                    logger.debug("[Broadcast] Dropping subscriber on channel %s: %s", channel_id, e)
                    dead.append(conn)

        for conn in dead:
            self.unsubscribe(channel_id, conn)
        return delivered

    async def publish_console(self, channel_id: int, message: ConsoleMessage) -> int:
        return await self.publish(channel_id, EVENT_CONSOLE, message)

    def publish_threadsafe(self, channel_id: int, event_type: str, data: Any) -> None:
        """Schedule a publish from a worker thread onto the bound event loop."""
        if not self.has_any_subscribers():
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("[Broadcast] No event loop bound, dropping %s event for channel %s",
                         event_type, channel_id)
            return
        asyncio.run_coroutine_threadsafe(self.publish(channel_id, event_type, data), loop)

    def publish_console_threadsafe(self, channel_id: int, message: ConsoleMessage) -> None:
        self.publish_threadsafe(channel_id, EVENT_CONSOLE, message)


_hub: Optional[BroadcastHub] = None


def get_broadcast_hub() -> BroadcastHub:
    global _hub
    if _hub is None:
        _hub = BroadcastHub()
    return _hub
