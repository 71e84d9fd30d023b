# mcfleet/services/console.py
"""
Console messages and the bounded per-instance console history.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional

from mcfleet.core.config import CONSOLE_HISTORY_CAPACITY


class MessageType(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    COMMAND = "command"
    PLAYER_JOIN = "player_join"
    PLAYER_LEAVE = "player_leave"
    RAW = "raw"


class MessageSource(str, Enum):
    SERVER = "server"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConsoleMessage:
    type: MessageType
    message: str
    source: MessageSource = MessageSource.SERVER
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
        }

    @classmethod
    def info(cls, message: str) -> "ConsoleMessage":
        return cls(MessageType.INFO, message, MessageSource.SYSTEM)

    @classmethod
    def warning(cls, message: str) -> "ConsoleMessage":
        return cls(MessageType.WARNING, message, MessageSource.SYSTEM)

    @classmethod
    def error(cls, message: str) -> "ConsoleMessage":
        return cls(MessageType.ERROR, message, MessageSource.SYSTEM)

    @classmethod
    def command(cls, command: str) -> "ConsoleMessage":
        return cls(MessageType.COMMAND, command, MessageSource.ADMIN)

    @classmethod
    def server_output(cls, message: str) -> "ConsoleMessage":
        return cls(MessageType.INFO, message, MessageSource.SERVER)


class ConsoleHistory:
    """FIFO of recent console messages per instance; oldest evicted first."""

    def __init__(self, capacity: int = CONSOLE_HISTORY_CAPACITY):
        self.capacity = max(1, capacity)
        self._histories: Dict[int, Deque[ConsoleMessage]] = {}
        self._lock = threading.Lock()

    def _queue(self, instance_id: int) -> Deque[ConsoleMessage]:
        queue = self._histories.get(instance_id)
        if queue is None:
            with self._lock:
                queue = self._histories.setdefault(instance_id, deque(maxlen=self.capacity))
        return queue

    def append(self, instance_id: int, message: ConsoleMessage) -> None:
        self._queue(instance_id).append(message)

    def all(self, instance_id: int) -> List[ConsoleMessage]:
        queue = self._histories.get(instance_id)
        return list(queue) if queue is not None else []

    def recent(self, instance_id: int, limit: Optional[int] = None) -> List[ConsoleMessage]:
        messages = self.all(instance_id)
        if limit is not None and limit >= 0:
            return messages[-limit:] if limit else []
        return messages

    def size(self, instance_id: int) -> int:
        queue = self._histories.get(instance_id)
        return len(queue) if queue is not None else 0

    def clear(self, instance_id: int) -> None:
        queue = self._histories.get(instance_id)
        if queue is not None:
            queue.clear()

    def reset(self, instance_id: int) -> None:
        with self._lock:
            self._histories[instance_id] = deque(maxlen=self.capacity)

    def discard(self, instance_id: int) -> None:
        with self._lock:
            self._histories.pop(instance_id, None)


_history: Optional[ConsoleHistory] = None


def get_console_history() -> ConsoleHistory:
    global _history
    if _history is None:
        _history = ConsoleHistory()
    return _history
