# mcfleet/services/log_monitor.py
"""
Real-time tailing and classification of instance log files.

One watcher thread per monitored instance waits on watchdog change
notifications for the log directory (with a polling timeout as fallback),
reads only the bytes appended since the last read and turns each complete
line into a ConsoleMessage. Retained messages go into the console history
and, when anyone is watching, out through the broadcast hub.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from mcfleet.core.config import CONSOLE_SEED_LINES, LOG_WATCH_JOIN_SECONDS, LOG_WATCH_POLL_SECONDS
from mcfleet.services.broadcast import BroadcastHub, get_broadcast_hub
from mcfleet.services.console import (
    ConsoleHistory,
    ConsoleMessage,
    MessageSource,
    MessageType,
    get_console_history,
)
from mcfleet.services.instance_store import InstanceStore, get_instance_store
from mcfleet.services.rcon import strip_minecraft_colors

logger = logging.getLogger(__name__)

# Lines dropped before classification
NOISE_PATTERNS = [
    re.compile(r"Thread RCON Client .* (started|shutting down)"),
    re.compile(r"RCON running on.*"),
    re.compile(r"UUID of player .* is .*"),
]

_ERROR_RE = re.compile(r"\[\d{2}:\d{2}:\d{2}\] \[.*?/ERROR\]: (.+)")
_WARN_RE = re.compile(r"\[\d{2}:\d{2}:\d{2}\] \[.*?/WARN\]: (.+)")
_INFO_RE = re.compile(r"\[\d{2}:\d{2}:\d{2}\] \[.*?/INFO\]: (.+)")
_TIMESTAMP_RE = re.compile(r"\[(\d{2}):(\d{2}):(\d{2})\]")
_JOIN_RE = re.compile(r"(.+) joined the game")
_LEAVE_RE = re.compile(r"(.+) left the game")


def extract_timestamp(line: str) -> datetime:
    """[HH:MM:SS] combined with today's date, or now if absent."""
    now = datetime.now()
    match = _TIMESTAMP_RE.search(line)
    if not match:
        return now
    try:
        return now.replace(
            hour=int(match.group(1)),
            minute=int(match.group(2)),
            second=int(match.group(3)),
            microsecond=0,
        )
    except ValueError:
        return now


def is_noise(line: str) -> bool:
    return any(pattern.search(line) for pattern in NOISE_PATTERNS)


def parse_log_line(raw_line: Optional[str]) -> Optional[ConsoleMessage]:
    """Classify one log line; returns None for blank or noise lines."""
    if raw_line is None or not raw_line.strip():
        return None

    line = strip_minecraft_colors(raw_line.rstrip("\r\n"))
    if is_noise(line):
        return None

    timestamp = extract_timestamp(line)

    match = _ERROR_RE.search(line)
    if match:
        return ConsoleMessage(MessageType.ERROR, match.group(1), MessageSource.SERVER, timestamp)

    match = _WARN_RE.search(line)
    if match:
        return ConsoleMessage(MessageType.WARNING, match.group(1), MessageSource.SERVER, timestamp)

    match = _INFO_RE.search(line)
    if match:
        body = match.group(1)
        if _JOIN_RE.search(body):
            return ConsoleMessage(MessageType.PLAYER_JOIN, f"🟢 {body}", MessageSource.SERVER, timestamp)
        if _LEAVE_RE.search(body):
            return ConsoleMessage(MessageType.PLAYER_LEAVE, f"🔴 {body}", MessageSource.SERVER, timestamp)
        # Plain INFO keeps the receive time rather than the line's own timestamp
        return ConsoleMessage(MessageType.INFO, body, MessageSource.SERVER, datetime.now())

    return ConsoleMessage(MessageType.RAW, line, MessageSource.SERVER, timestamp)


class _LogChangeHandler(FileSystemEventHandler):
    """Wakes the watcher when anything happens to the watched log file."""

    def __init__(self, filename: str, changed: threading.Event):
        super().__init__()
        self.filename = filename
        self.changed = changed

    def on_any_event(self, event):
        if event.is_directory:
            return
        paths = [getattr(event, "src_path", ""), getattr(event, "dest_path", "")]
        if any(Path(str(p)).name == self.filename for p in paths if p):
            self.changed.set()


@dataclass
class _LogWatch:
    instance_id: int
    path: Path
    offset: int = 0
    inode: Optional[int] = None
    stop_requested: threading.Event = field(default_factory=threading.Event)
    changed: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    observer: Optional[Observer] = None


class LogMonitor:
    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        history: Optional[ConsoleHistory] = None,
        hub: Optional[BroadcastHub] = None,
        poll_interval: float = LOG_WATCH_POLL_SECONDS,
        join_timeout: float = LOG_WATCH_JOIN_SECONDS,
    ):
        self.store = store or get_instance_store()
        self.history = history or get_console_history()
        self.hub = hub or get_broadcast_hub()
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self._watches: Dict[int, _LogWatch] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_monitoring(self, instance_id: int) -> bool:
        watch = self._watches.get(instance_id)
        return bool(watch and watch.thread and watch.thread.is_alive())

    def start_monitoring(self, instance_id: int) -> bool:
        """Begin tailing an instance's latest.log; False if the file is missing."""
        if self.is_monitoring(instance_id):
            return True

        instance = self.store.get(instance_id)
        log_path = instance.latest_log
        if not log_path.exists():
            logger.warning("[LogMonitor] Log file not found for instance %s: %s", instance_id, log_path)
            return False

        stat = log_path.stat()
        watch = _LogWatch(instance_id=instance_id, path=log_path, offset=stat.st_size, inode=stat.st_ino)

        self.history.reset(instance_id)
        self._seed_history(instance_id, log_path)

        try:
            observer = Observer()
            observer.schedule(_LogChangeHandler(log_path.name, watch.changed), str(log_path.parent), recursive=False)
            observer.start()
            watch.observer = observer
        except OSError as e:
            logger.warning("[LogMonitor] File notifications unavailable for %s, polling only: %s", log_path, e)

        watch.thread = threading.Thread(
            target=self._watch_loop,
            args=(watch,),
            name=f"log-watch-{instance_id}",
            daemon=True,
        )
        with self._lock:
            self._watches[instance_id] = watch
        watch.thread.start()
        logger.info("[LogMonitor] Started monitoring logs for instance %s", instance_id)
        return True

    def stop_monitoring(self, instance_id: int) -> None:
        with self._lock:
            watch = self._watches.pop(instance_id, None)
        if watch is None:
            return

        watch.stop_requested.set()
        watch.changed.set()
        if watch.observer is not None:
            watch.observer.stop()
            watch.observer.join(timeout=self.join_timeout)
        if watch.thread is not None:
            watch.thread.join(timeout=self.join_timeout)
            if watch.thread.is_alive():
                logger.warning(
                    "[LogMonitor] Watcher for instance %s did not stop within %.1fs, abandoning it",
                    instance_id, self.join_timeout,
                )
        logger.info("[LogMonitor] Stopped monitoring logs for instance %s", instance_id)

    def stop_all(self) -> None:
        for instance_id in list(self._watches):
            self.stop_monitoring(instance_id)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _seed_history(self, instance_id: int, log_path: Path) -> None:
        try:
            with open(log_path, "r", encoding="utf-8", errors="replace") as f:
                tail = deque(f, maxlen=CONSOLE_SEED_LINES)
        except OSError as e:
            logger.warning("[LogMonitor] Could not read existing log for instance %s: %s", instance_id, e)
            return
        for line in tail:
            self.process_line(instance_id, line)

    def _watch_loop(self, watch: _LogWatch) -> None:
        logger.debug("[LogMonitor] Watcher thread running for %s", watch.path)
        while not watch.stop_requested.is_set():
            watch.changed.wait(timeout=self.poll_interval)
            if watch.stop_requested.is_set():
                break
            watch.changed.clear()
            try:
                self._read_new_lines(watch)
            except Exception:
                logger.error("[LogMonitor] Error reading log for instance %s", watch.instance_id, exc_info=True)
        logger.debug("[LogMonitor] Watcher thread exiting for %s", watch.path)

    def _read_new_lines(self, watch: _LogWatch) -> List[ConsoleMessage]:
        """Consume complete lines appended since the last read."""
        try:
            stat = watch.path.stat()
        except FileNotFoundError:
            return []

        if stat.st_ino != watch.inode or stat.st_size < watch.offset:
            logger.info("[LogMonitor] Log file rotated for instance %s", watch.instance_id)
            watch.offset = 0
            watch.inode = stat.st_ino

        if stat.st_size == watch.offset:
            return []

        with open(watch.path, "rb") as f:
            f.seek(watch.offset)
            data = f.read()

        end = data.rfind(b"\n")
        if end < 0:
            return []
        watch.offset += end + 1

        messages = []
        for line in data[:end + 1].decode("utf-8", errors="replace").splitlines():
            message = self.process_line(watch.instance_id, line)
            if message is not None:
                messages.append(message)
        return messages

    def process_line(self, instance_id: int, raw_line: str) -> Optional[ConsoleMessage]:
        message = parse_log_line(raw_line)
        if message is None:
            return None
        self.history.append(instance_id, message)
        if self.hub.has_any_subscribers():
            self.hub.publish_console_threadsafe(instance_id, message)
        return message

    # ------------------------------------------------------------------
    # History access
    # ------------------------------------------------------------------

    def get_console_history(self, instance_id: int) -> List[ConsoleMessage]:
        return self.history.all(instance_id)

    def clear_history(self, instance_id: int) -> None:
        self.history.clear(instance_id)


_monitor: Optional[LogMonitor] = None


def get_log_monitor() -> LogMonitor:
    global _monitor
    if _monitor is None:
        _monitor = LogMonitor()
    return _monitor
