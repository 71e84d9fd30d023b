# mcfleet/services/game_commands.py
"""
In-game administrative commands as plain command strings.

Everything here is sent through the supervisor's send_command; no operation
has its own code path beyond building the string.
"""

from typing import Optional

GAMEMODES = ("survival", "creative", "adventure", "spectator")
WEATHER_TYPES = ("clear", "rain", "thunder")
DIFFICULTIES = ("peaceful", "easy", "normal", "hard")
TIME_PRESETS = ("day", "night", "noon", "midnight")


def _require(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value or any(ch.isspace() for ch in value):
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


def kick(player: str, reason: Optional[str] = None) -> str:
    player = _require(player, "player name")
    return f"kick {player} {reason.strip()}" if reason and reason.strip() else f"kick {player}"


def ban(player: str, reason: Optional[str] = None) -> str:
    player = _require(player, "player name")
    return f"ban {player} {reason.strip()}" if reason and reason.strip() else f"ban {player}"


def pardon(player: str) -> str:
    return f"pardon {_require(player, 'player name')}"


def op(player: str) -> str:
    return f"op {_require(player, 'player name')}"


def deop(player: str) -> str:
    return f"deop {_require(player, 'player name')}"


def teleport(player: str, x: float, y: float, z: float) -> str:
    return f"tp {_require(player, 'player name')} {float(x):.2f} {float(y):.2f} {float(z):.2f}"


def give(player: str, item: str, amount: int = 1) -> str:
    if int(amount) < 1:
        raise ValueError("Amount must be positive")
    return f"give {_require(player, 'player name')} {_require(item, 'item')} {int(amount)}"


def gamemode(player: str, mode: str) -> str:
    mode = (mode or "").strip().lower()
    if mode not in GAMEMODES:
        raise ValueError(f"Unknown gamemode: {mode}")
    return f"gamemode {mode} {_require(player, 'player name')}"


def heal(player: str) -> str:
    return f"effect give {_require(player, 'player name')} minecraft:instant_health 1 255"


def feed(player: str) -> str:
    return f"effect give {_require(player, 'player name')} minecraft:saturation 1 255"


def say(message: str) -> str:
    message = (message or "").strip()
    if not message:
        raise ValueError("Message must not be empty")
    return f"say {message}"


def tell(player: str, message: str) -> str:
    message = (message or "").strip()
    if not message:
        raise ValueError("Message must not be empty")
    return f"tell {_require(player, 'player name')} {message}"


def set_time(value: str) -> str:
    value = (value or "").strip().lower()
    if value not in TIME_PRESETS and not value.isdigit():
        raise ValueError(f"Invalid time: {value}")
    return f"time set {value}"


def weather(kind: str, duration: Optional[int] = None) -> str:
    kind = (kind or "").strip().lower()
    if kind not in WEATHER_TYPES:
        raise ValueError(f"Unknown weather: {kind}")
    if duration:
        return f"weather {kind} {int(duration)}"
    return f"weather {kind}"


def gamerule(rule: str, value: str) -> str:
    return f"gamerule {_require(rule, 'gamerule')} {_require(str(value), 'gamerule value')}"


def difficulty(level: str) -> str:
    level = (level or "").strip().lower()
    if level not in DIFFICULTIES:
        raise ValueError(f"Unknown difficulty: {level}")
    return f"difficulty {level}"


def save_all() -> str:
    return "save-all"


def save_on() -> str:
    return "save-on"


def save_off() -> str:
    return "save-off"


def reload() -> str:
    return "reload"
