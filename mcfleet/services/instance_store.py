# mcfleet/services/instance_store.py
"""
SQLite-backed store for server instance records.

The instance record is the single source of truth for process id, ports and
RCON credentials. Every caller re-reads it per operation; nothing here caches
records between calls.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from mcfleet.core.config import INSTANCE_DB_PATH
from mcfleet.core.errors import InstanceNotFound

logger = logging.getLogger(__name__)


class InstallationStatus(str, Enum):
    """Lifecycle state of an instance, from installation to running."""
    PENDING_INSTALLATION = "PENDING_INSTALLATION"
    DOWNLOADING = "DOWNLOADING"
    RUNNING_INSTALLER = "RUNNING_INSTALLER"
    CONFIGURING = "CONFIGURING"
    INSTALLATION_FAILED = "INSTALLATION_FAILED"
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    DELETING = "DELETING"


# States in which the supervisor must not launch the process
NOT_STARTABLE_STATES = frozenset({
    InstallationStatus.PENDING_INSTALLATION,
    InstallationStatus.DOWNLOADING,
    InstallationStatus.RUNNING_INSTALLER,
    InstallationStatus.CONFIGURING,
    InstallationStatus.INSTALLATION_FAILED,
    InstallationStatus.DELETING,
})


@dataclass
class Instance:
    """A configured game-server deployment on the local host."""
    id: Optional[int] = None
    name: str = ""
    instance_path: str = ""
    jar_file_name: str = "server.jar"
    version: str = ""
    server_type: str = ""
    template_id: Optional[str] = None
    ip: str = "0.0.0.0"
    port: Optional[int] = None
    rcon_port: Optional[int] = None
    rcon_password: Optional[str] = None
    rcon_enabled: bool = False
    pid: Optional[int] = None
    status: InstallationStatus = InstallationStatus.PENDING_INSTALLATION
    status_message: str = ""
    allocated_memory: Optional[str] = None
    java_path: Optional[str] = None

    @property
    def root(self) -> Path:
        return Path(self.instance_path)

    @property
    def latest_log(self) -> Path:
        return self.root / "logs" / "latest.log"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Instance":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "status" in values and values["status"] is not None:
            values["status"] = InstallationStatus(values["status"])
        if "rcon_enabled" in values:
            values["rcon_enabled"] = bool(values["rcon_enabled"])
        return cls(**values)


_COLUMNS = [f.name for f in fields(Instance) if f.name != "id"]


class InstanceStore:
    """Thread-safe instance persistence; one sqlite connection per call."""

    def __init__(self, db_path: Path = INSTANCE_DB_PATH):
        self.db_path = Path(db_path)
        self._initialized = False
        self._init_lock = threading.Lock()

    @contextmanager
    def _connect(self):
        """Thread-safe connection with WAL mode."""
        if not self._initialized:
            self.init_db()
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_db(self):
        """Create the instances table if it doesn't exist."""
        with self._init_lock:
            if self._initialized:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=10)
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS instances (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL UNIQUE,
                        instance_path TEXT NOT NULL,
                        jar_file_name TEXT NOT NULL,
                        version TEXT NOT NULL DEFAULT '',
                        server_type TEXT NOT NULL DEFAULT '',
                        template_id TEXT,
                        ip TEXT NOT NULL DEFAULT '0.0.0.0',
                        port INTEGER,
                        rcon_port INTEGER,
                        rcon_password TEXT,
                        rcon_enabled INTEGER NOT NULL DEFAULT 0,
                        pid INTEGER,
                        status TEXT NOT NULL,
                        status_message TEXT NOT NULL DEFAULT '',
                        allocated_memory TEXT,
                        java_path TEXT
                    )
                """)
                conn.commit()
            finally:
                conn.close()
            self._initialized = True
        logger.info("Instance database initialized at %s", self.db_path)

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> Instance:
        return Instance.from_dict(dict(row))

    @staticmethod
    def _to_row(instance: Instance) -> Dict[str, Any]:
        row = instance.to_dict()
        row["rcon_enabled"] = 1 if instance.rcon_enabled else 0
        row.pop("id", None)
        return row

    def find(self, instance_id: int) -> Optional[Instance]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM instances WHERE id = ?", (instance_id,)).fetchone()
        return self._row_to_instance(row) if row else None

    def get(self, instance_id: int) -> Instance:
        instance = self.find(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def find_by_name(self, name: str) -> Optional[Instance]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM instances WHERE name = ?", (name,)).fetchone()
        return self._row_to_instance(row) if row else None

    def list_all(self) -> List[Instance]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM instances ORDER BY id").fetchall()
        return [self._row_to_instance(r) for r in rows]

    def save(self, instance: Instance) -> Instance:
        """Insert a new record or overwrite an existing one (last write wins)."""
        row = self._to_row(instance)
        with self._connect() as conn:
            if instance.id is None:
                cols = ", ".join(_COLUMNS)
                marks = ", ".join("?" for _ in _COLUMNS)
                cur = conn.execute(
                    f"INSERT INTO instances ({cols}) VALUES ({marks})",
                    [row[c] for c in _COLUMNS],
                )
                instance.id = cur.lastrowid
            else:
                assignments = ", ".join(f"{c} = ?" for c in _COLUMNS)
                cur = conn.execute(
                    f"UPDATE instances SET {assignments} WHERE id = ?",
                    [row[c] for c in _COLUMNS] + [instance.id],
                )
                if cur.rowcount == 0:
                    raise InstanceNotFound(instance.id)
        return instance

    def update(self, instance_id: int, **changes) -> None:
        """Write only the given columns, leaving concurrent writes to other fields intact."""
        unknown = set(changes) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown instance fields: {sorted(unknown)}")
        if not changes:
            return
        values = []
        for key, value in changes.items():
            if isinstance(value, InstallationStatus):
                value = value.value
            elif key == "rcon_enabled":
                value = 1 if value else 0
            values.append(value)
        assignments = ", ".join(f"{k} = ?" for k in changes)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE instances SET {assignments} WHERE id = ?",
                values + [instance_id],
            )
            if cur.rowcount == 0:
                raise InstanceNotFound(instance_id)

    def set_status(self, instance_id: int, status: InstallationStatus, message: str = "") -> None:
        self.update(instance_id, status=status, status_message=message)

    def delete(self, instance_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM instances WHERE id = ?", (instance_id,))

    def allocated_ports(self) -> Tuple[Set[int], Set[int]]:
        """Return (game ports, rcon ports) recorded across all instances."""
        with self._connect() as conn:
            rows = conn.execute("SELECT port, rcon_port FROM instances").fetchall()
        game = {r["port"] for r in rows if r["port"] is not None}
        rcon = {r["rcon_port"] for r in rows if r["rcon_port"] is not None}
        return game, rcon


_store: Optional[InstanceStore] = None


def get_instance_store() -> InstanceStore:
    global _store
    if _store is None:
        _store = InstanceStore()
    return _store
