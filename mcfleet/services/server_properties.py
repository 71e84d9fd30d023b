# mcfleet/services/server_properties.py
"""
server.properties and whitelist.json handling for an instance root.

Properties are rewritten line by line so comments and keys we don't know
about survive every edit.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from mcfleet.core.errors import IOFailure

logger = logging.getLogger(__name__)

PROPERTIES_FILE = "server.properties"
WHITELIST_FILE = "whitelist.json"
MOJANG_PROFILE_URL = "https://api.mojang.com/users/profiles/minecraft/{name}"
FALLBACK_UUID = "00000000-0000-0000-0000-000000000000"

RESTART_REQUIRED_KEYS = frozenset({
    "server-port", "server-ip", "online-mode", "max-players",
    "enable-rcon", "rcon.port", "rcon.password",
    "level-name", "level-seed", "level-type", "generator-settings",
})

PROPERTY_VALIDATIONS = {
    "max-players": {"type": "integer", "description": "Maximum number of players allowed on the server", "min": 1, "max": 1000},
    "server-port": {"type": "integer", "description": "Port the game server listens on", "min": 1, "max": 65535},
    "rcon.port": {"type": "integer", "description": "Port the RCON listener binds to", "min": 1, "max": 65535},
    "gamemode": {"type": "enum", "description": "Default game mode for new players",
                 "values": ["survival", "creative", "adventure", "spectator"]},
    "difficulty": {"type": "enum", "description": "Server difficulty level",
                   "values": ["peaceful", "easy", "normal", "hard"]},
    "pvp": {"type": "boolean", "description": "Enable Player vs Player combat"},
    "online-mode": {"type": "boolean", "description": "Verify player accounts against Minecraft servers"},
    "white-list": {"type": "boolean", "description": "Enable whitelist (only whitelisted players can join)"},
}

DEFAULT_PROPERTIES = """#Minecraft server properties
enable-jmx-monitoring=false
rcon.port=25575
level-seed=
gamemode=survival
enable-command-block=false
enable-query=false
generator-settings={}
enforce-secure-profile=true
level-name=world
motd=A Minecraft Server
query.port=25565
pvp=true
generate-structures=true
difficulty=easy
network-compression-threshold=256
max-tick-time=60000
require-resource-pack=false
use-native-transport=true
max-players=20
online-mode=true
enable-status=true
allow-flight=false
broadcast-rcon-to-ops=true
view-distance=10
server-ip=
allow-nether=true
server-port=25565
enable-rcon=false
sync-chunk-writes=true
op-permission-level=4
simulation-distance=10
rcon.password=
player-idle-timeout=0
force-gamemode=false
hardcore=false
white-list=false
broadcast-console-to-ops=true
spawn-protection=16
"""


def _is_property_line(line: str) -> bool:
    return not line.lstrip().startswith("#") and "=" in line


def read_properties(root: Path) -> Dict[str, str]:
    props_file = Path(root) / PROPERTIES_FILE
    props: Dict[str, str] = {}
    if not props_file.exists():
        return props
    with open(props_file, "r", encoding="utf-8") as f:
        for line in f:
            if _is_property_line(line):
                key, value = line.split("=", 1)
                props[key.strip()] = value.strip()
    return props


def ensure_default_properties(root: Path) -> bool:
    """Write a stock server.properties if none exists; True if one was created."""
    props_file = Path(root) / PROPERTIES_FILE
    if props_file.exists():
        return False
    props_file.parent.mkdir(parents=True, exist_ok=True)
    props_file.write_text(DEFAULT_PROPERTIES, encoding="utf-8")
    logger.info("[Properties] Created default server.properties at %s", props_file)
    return True


def update_properties(root: Path, updates: Dict[str, object]) -> None:
    """Replace matching keys in place and append keys that were missing."""
    props_file = Path(root) / PROPERTIES_FILE
    if not props_file.exists():
        raise IOFailure(f"server.properties not found at {props_file}")

    pending = {key: str(value) for key, value in updates.items()}
    try:
        lines = props_file.read_text(encoding="utf-8").splitlines()
        for index, line in enumerate(lines):
            if not _is_property_line(line):
                continue
            key = line.split("=", 1)[0].strip()
            if key in pending:
                lines[index] = f"{key}={pending.pop(key)}"
        lines.extend(f"{key}={value}" for key, value in pending.items())
        props_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as e:
        raise IOFailure(f"Failed to update {props_file}: {e}") from e
    logger.info("[Properties] Updated %s: %s", props_file, ", ".join(sorted(updates)))


def get_int_property(root: Path, key: str, default: int) -> int:
    value = read_properties(root).get(key)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning("[Properties] '%s' has a non-integer value '%s', using %d", key, value, default)
        return default


def requires_restart(keys: Iterable[str]) -> bool:
    return any(key in RESTART_REQUIRED_KEYS for key in keys)


def validate_property(key: str, value: str) -> Optional[str]:
    """Return an error message if the value is not acceptable for the key."""
    rule = PROPERTY_VALIDATIONS.get(key)
    if rule is None:
        return None
    value = str(value).strip()
    if rule["type"] == "integer":
        try:
            number = int(value)
        except ValueError:
            return f"{key} must be an integer"
        if not rule["min"] <= number <= rule["max"]:
            return f"{key} must be between {rule['min']} and {rule['max']}"
    elif rule["type"] == "enum":
        if value.lower() not in rule["values"]:
            return f"{key} must be one of: {', '.join(rule['values'])}"
    elif rule["type"] == "boolean":
        if value.lower() not in ("true", "false"):
            return f"{key} must be true or false"
    return None


# ==========================================
# Whitelist
# ==========================================

def _format_uuid(raw: str) -> str:
    return f"{raw[0:8]}-{raw[8:12]}-{raw[12:16]}-{raw[16:20]}-{raw[20:32]}"


def lookup_player_uuid(player_name: str) -> Optional[str]:
    """Resolve a player's UUID through the Mojang profile API."""
    try:
        response = httpx.get(MOJANG_PROFILE_URL.format(name=player_name), timeout=10.0)
        if response.status_code == 200:
            raw = response.json().get("id")
            if raw and len(raw) == 32:
                return _format_uuid(raw)
    except (httpx.HTTPError, ValueError) as e:
        logger.error("[Whitelist] Unable to get player uuid from Mojang: %s", e)
    return None


def read_whitelist(root: Path) -> List[dict]:
    whitelist_file = Path(root) / WHITELIST_FILE
    if not whitelist_file.exists():
        return []
    try:
        data = json.loads(whitelist_file.read_text(encoding="utf-8") or "[]")
    except ValueError as e:
        logger.error("[Whitelist] Invalid JSON in %s: %s", whitelist_file, e)
        return []
    return [entry for entry in data if isinstance(entry, dict) and entry.get("name")]


def _write_whitelist(root: Path, entries: List[dict]) -> None:
    whitelist_file = Path(root) / WHITELIST_FILE
    try:
        whitelist_file.write_text(json.dumps(entries, indent=2), encoding="utf-8")
    except OSError as e:
        raise IOFailure(f"Failed to write {whitelist_file}: {e}") from e


def add_to_whitelist(
    root: Path,
    player_name: str,
    uuid_lookup: Callable[[str], Optional[str]] = lookup_player_uuid,
) -> bool:
    """Add a player; False if they were already listed."""
    entries = read_whitelist(root)
    if any(entry["name"].lower() == player_name.lower() for entry in entries):
        return False
    entries.append({"uuid": uuid_lookup(player_name) or FALLBACK_UUID, "name": player_name})
    _write_whitelist(root, entries)
    return True


def remove_from_whitelist(root: Path, player_name: str) -> bool:
    entries = read_whitelist(root)
    remaining = [entry for entry in entries if entry["name"].lower() != player_name.lower()]
    if len(remaining) == len(entries):
        return False
    _write_whitelist(root, remaining)
    return True
