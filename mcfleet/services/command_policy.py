from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

# Commands with a dedicated lifecycle endpoint, or that affect the whole host
DANGEROUS_COMMANDS = frozenset({
    "stop",
    "restart",
    "ban-ip",
    "pardon-ip",
})

MAX_COMMAND_LENGTH = 256

audit_logger = logging.getLogger("mcfleet.audit")


@dataclass(frozen=True)
class CommandDecision:
    allowed: bool
    base_command: str
    command: str
    reason: str = ""


def sanitize_command(command: str) -> str:
    """Strip control characters and cap length."""
    return re.sub(r"[\x00-\x1f\x7f]", "", command or "").strip()[:MAX_COMMAND_LENGTH]


def decide_console_command(*, command: str, dangerous_commands: frozenset[str] = DANGEROUS_COMMANDS) -> CommandDecision:
    command = sanitize_command(command)
    parts = command.split()
    base = parts[0].lstrip("/").lower() if parts else ""
    if not base:
        return CommandDecision(allowed=False, base_command="", command=command, reason="empty_command")
    if base in dangerous_commands:
        return CommandDecision(allowed=False, base_command=base, command=command, reason="dangerous_command")
    return CommandDecision(allowed=True, base_command=base, command=command)


def audit_event(*, actor: str, action: str, target: str = "", result: str = "", extra: dict[str, Any] | None = None) -> None:
    payload: dict[str, Any] = {
        "ts": int(time.time()),
        "actor": actor,
        "action": action,
        "target": target,
        "result": result,
    }
    if extra:
        payload.update(extra)
    audit_logger.info(json.dumps(payload, ensure_ascii=False))
