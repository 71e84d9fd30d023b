import os
from pathlib import Path

from dotenv import load_dotenv

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
APP_DIR = CORE_DIR.parent
ROOT_DIR = APP_DIR.parent

ENV_FILE = ROOT_DIR / ".env"
load_dotenv(dotenv_path=ENV_FILE)


def _resolve_path(raw: str) -> Path:
    path = Path(raw.strip()).expanduser()
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


DATA_DIR = _resolve_path(os.getenv("MCFLEET_DATA_DIR", "data"))
HISTORY_DIR = DATA_DIR / "history"
SERVERS_DIR = _resolve_path(os.getenv("MCFLEET_SERVERS_DIR", str(DATA_DIR / "servers")))
JAVA_DIR = _resolve_path(os.getenv("MCFLEET_JAVA_DIR", str(DATA_DIR / "java")))
INSTANCE_DB_PATH = DATA_DIR / "instances.db"
TEMPLATES_FILE = _resolve_path(os.getenv("MCFLEET_TEMPLATES_FILE", str(DATA_DIR / "templates.yml")))

# ==========================================
# Port Allocation
# ==========================================

GAME_PORT_RANGE = (
    int(os.getenv("GAME_PORT_START", "25565")),
    int(os.getenv("GAME_PORT_END", "25665")),
)
RCON_PORT_RANGE = (
    int(os.getenv("RCON_PORT_START", "25700")),
    int(os.getenv("RCON_PORT_END", "25800")),
)

# ==========================================
# RCON Configuration
# ==========================================

RCON_HOST = os.getenv("RCON_HOST", "127.0.0.1")
RCON_MAX_ATTEMPTS = int(os.getenv("RCON_MAX_ATTEMPTS", "3"))
RCON_RETRY_DELAY_SECONDS = float(os.getenv("RCON_RETRY_DELAY_SECONDS", "1.0"))
RCON_SOCKET_TIMEOUT_SECONDS = float(os.getenv("RCON_SOCKET_TIMEOUT_SECONDS", "5.0"))

# ==========================================
# Process / Installation Timeouts
# ==========================================

STOP_GRACE_SECONDS = float(os.getenv("STOP_GRACE_SECONDS", "5"))
STOP_TERMINATE_WAIT_SECONDS = float(os.getenv("STOP_TERMINATE_WAIT_SECONDS", "10"))
FIRST_BOOT_TIMEOUT_SECONDS = float(os.getenv("FIRST_BOOT_TIMEOUT_SECONDS", "180"))
INSTALL_STEP_TIMEOUT_SECONDS = float(os.getenv("INSTALL_STEP_TIMEOUT_SECONDS", "300"))
DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "120"))
BACKUP_TIMEOUT_SECONDS = float(os.getenv("BACKUP_TIMEOUT_SECONDS", "600"))
DEFAULT_JAVA_VERSION = int(os.getenv("DEFAULT_JAVA_VERSION", "17"))

# ==========================================
# Console / Log Monitoring
# ==========================================

CONSOLE_HISTORY_CAPACITY = int(os.getenv("CONSOLE_HISTORY_CAPACITY", "1000"))
CONSOLE_SEED_LINES = int(os.getenv("CONSOLE_SEED_LINES", "100"))
CONSOLE_BACKFILL_LINES = int(os.getenv("CONSOLE_BACKFILL_LINES", "50"))
LOG_WATCH_POLL_SECONDS = float(os.getenv("LOG_WATCH_POLL_SECONDS", "1.0"))
LOG_WATCH_JOIN_SECONDS = float(os.getenv("LOG_WATCH_JOIN_SECONDS", "5.0"))

# ==========================================
# Scheduled Jobs
# ==========================================

STATUS_BROADCAST_INTERVAL = int(os.getenv("STATUS_BROADCAST_INTERVAL", "15"))
SYSTEM_STATS_INTERVAL = int(os.getenv("SYSTEM_STATS_INTERVAL", "5"))
PLAYER_LIST_INTERVAL = int(os.getenv("PLAYER_LIST_INTERVAL", "30"))
TPS_SAMPLE_INTERVAL = int(os.getenv("TPS_SAMPLE_INTERVAL", "30"))
RESOURCE_CHECK_INTERVAL = int(os.getenv("RESOURCE_CHECK_INTERVAL", "30"))
HEALTH_CHECK_INTERVAL = int(os.getenv("HEALTH_CHECK_INTERVAL", "120"))
MAINTENANCE_TIME = os.getenv("MAINTENANCE_TIME", "02:00")
NIGHTLY_BACKUP_TIME = os.getenv("NIGHTLY_BACKUP_TIME", "03:00")
BACKUP_RETENTION_DAYS = int(os.getenv("BACKUP_RETENTION_DAYS", "7"))

CPU_ALERT_PERCENT = float(os.getenv("CPU_ALERT_PERCENT", "80"))
MEMORY_ALERT_PERCENT = float(os.getenv("MEMORY_ALERT_PERCENT", "85"))
DISK_ALERT_PERCENT = float(os.getenv("DISK_ALERT_PERCENT", "90"))

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
