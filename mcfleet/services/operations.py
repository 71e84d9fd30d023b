from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from mcfleet.core.config import HISTORY_DIR
from mcfleet.services.installer import get_installation_pipeline
from mcfleet.services.supervisor import get_supervisor

logger = logging.getLogger(__name__)

ExecutorFn = Callable[[int, dict[str, Any]], Awaitable[dict]]

_IDEMPOTENCY_TTL_SECONDS = int(os.getenv("OPERATIONS_IDEMPOTENCY_TTL_SECONDS", "900"))
_IDEMPOTENCY_LOCK = threading.Lock()
_IDEMPOTENCY_CACHE: dict[str, dict[str, Any]] = {}

_OPERATION_STATE_FILE = HISTORY_DIR / "operation_state.jsonl"
_OPERATION_STATE_LOCK = threading.Lock()

_IN_FLIGHT_LOCK = threading.Lock()
_IN_FLIGHT: dict[int, str] = {}


class OperationNotFound(Exception):
    pass


def _cleanup_expired_idempotency_entries(now: float) -> None:
    expired_keys = [
        cache_key
        for cache_key, entry in _IDEMPOTENCY_CACHE.items()
        if float(entry.get("expires_at", 0)) <= now
    ]
    for cache_key in expired_keys:
        _IDEMPOTENCY_CACHE.pop(cache_key, None)


def _append_operation_state(record: dict[str, Any]) -> None:
    state_file: Path = _OPERATION_STATE_FILE
    state_file.parent.mkdir(parents=True, exist_ok=True)
    with _OPERATION_STATE_LOCK:
        with state_file.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")


@dataclass(frozen=True)
class OperationSpec:
    key: str
    risk: str
    executor: ExecutorFn


async def _exec_server_start(instance_id: int, params: dict[str, Any]) -> dict:
    ok = await get_supervisor().start(instance_id)
    return {"success": ok, "message": "Server started" if ok else "", "error": "" if ok else "Failed to start server"}


async def _exec_server_stop(instance_id: int, params: dict[str, Any]) -> dict:
    ok = await get_supervisor().stop(instance_id)
    return {"success": ok, "message": "Server stopped" if ok else "", "error": "" if ok else "Failed to stop server"}


async def _exec_server_restart(instance_id: int, params: dict[str, Any]) -> dict:
    ok = await get_supervisor().restart(instance_id)
    return {"success": ok, "message": "Server restarted" if ok else "", "error": "" if ok else "Failed to restart server"}


async def _exec_server_install(instance_id: int, params: dict[str, Any]) -> dict:
    get_installation_pipeline().start_installation(instance_id, params.get("template_id"))
    return {"success": True, "message": "Installation started"}


async def _exec_server_delete(instance_id: int, params: dict[str, Any]) -> dict:
    ok = await get_supervisor().delete_instance(instance_id)
    return {"success": ok, "message": "Server deleted" if ok else "", "error": "" if ok else "Failed to delete server"}


_REGISTRY: dict[str, OperationSpec] = {
    "server:start": OperationSpec(key="server:start", risk="medium", executor=_exec_server_start),
    "server:stop": OperationSpec(key="server:stop", risk="high", executor=_exec_server_stop),
    "server:restart": OperationSpec(key="server:restart", risk="medium", executor=_exec_server_restart),
    "server:install": OperationSpec(key="server:install", risk="medium", executor=_exec_server_install),
    "server:delete": OperationSpec(key="server:delete", risk="high", executor=_exec_server_delete),
}


def get_operation_spec(key: str) -> OperationSpec:
    spec = _REGISTRY.get(key)
    if spec is None:
        raise OperationNotFound(key)
    return spec


def list_operations() -> list[str]:
    return sorted(_REGISTRY)


def operation_in_progress(instance_id: int) -> Optional[str]:
    """Name of whatever lifecycle work is running for the instance, if any."""
    with _IN_FLIGHT_LOCK:
        current = _IN_FLIGHT.get(instance_id)
    if current:
        return current
    if get_installation_pipeline().is_installing(instance_id):
        return "server:install"
    if get_supervisor().is_busy(instance_id):
        return "lifecycle"
    return None


def _claim_instance(instance_id: int, key: str) -> Optional[str]:
    with _IN_FLIGHT_LOCK:
        current = _IN_FLIGHT.get(instance_id)
        if current:
            return current
        _IN_FLIGHT[instance_id] = key
    return None


def _release_instance(instance_id: int) -> None:
    with _IN_FLIGHT_LOCK:
        _IN_FLIGHT.pop(instance_id, None)


async def execute_operation(
    *,
    key: str,
    instance_id: int,
    actor: str = "",
    params: Optional[dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    params = params or {}
    spec = get_operation_spec(key)
    actor_label = actor or "unknown"

    normalized_idempotency_key = (idempotency_key or "").strip() or None
    idempotency_cache_key = ""
    now = time.time()

    if normalized_idempotency_key:
        idempotency_cache_key = f"{spec.key}:{instance_id}:{actor_label}:{normalized_idempotency_key}"
        with _IDEMPOTENCY_LOCK:
            _cleanup_expired_idempotency_entries(now)
            existing_entry = _IDEMPOTENCY_CACHE.get(idempotency_cache_key)
            if existing_entry:
                if existing_entry.get("status") == "done":
                    cached_result = dict(existing_entry.get("result") or {"success": False, "error": "Unknown idempotency replay result"})
                    cached_result["idempotent_replay"] = True
                    return cached_result
                return {
                    "success": False,
                    "error": "Operation already in progress for this idempotency key",
                    "status": "in_progress",
                    "idempotent_replay": True,
                }

    busy = operation_in_progress(instance_id) or _claim_instance(instance_id, spec.key)
    if busy:
        logger.info("[Operations] Rejected %s for instance %s: %s in progress", spec.key, instance_id, busy)
        return {
            "success": False,
            "error": f"Another operation ({busy}) is already in progress for this server",
            "error_code": "operation_in_progress",
        }

    if normalized_idempotency_key:
        with _IDEMPOTENCY_LOCK:
            _IDEMPOTENCY_CACHE[idempotency_cache_key] = {
                "status": "in_progress",
                "expires_at": now + _IDEMPOTENCY_TTL_SECONDS,
                "result": None,
            }

    op_id = str(uuid.uuid4())
    started_at = int(time.time())
    base_state: dict[str, Any] = {
        "op_key": spec.key,
        "op_id": op_id,
        "instance_id": instance_id,
        "actor": actor_label,
        "idempotency_key": normalized_idempotency_key,
        "started_at": started_at,
    }
    _append_operation_state({
        **base_state,
        "finished_at": None,
        "status": "started",
        "error": "",
    })

    try:
        result = await spec.executor(instance_id, params)
    except Exception as exc:
        logger.error("[Operations] %s failed for instance %s", spec.key, instance_id, exc_info=True)
        finished_at = int(time.time())
        error_message = str(exc) or "Operation execution failed"
        failure_result = {"success": False, "error": error_message}
        _append_operation_state({
            **base_state,
            "finished_at": finished_at,
            "status": "failed",
            "error": error_message,
        })
        if normalized_idempotency_key:
            with _IDEMPOTENCY_LOCK:
                _IDEMPOTENCY_CACHE[idempotency_cache_key] = {
                    "status": "done",
                    "expires_at": finished_at + _IDEMPOTENCY_TTL_SECONDS,
                    "result": failure_result,
                }
        return failure_result
    finally:
        _release_instance(instance_id)

    finished_at = int(time.time())
    success = bool(result.get("success")) if isinstance(result, dict) else False
    error_message = ""
    if not success:
        if isinstance(result, dict):
            error_message = str(result.get("error", ""))
        else:
            error_message = "Operation execution failed"
    _append_operation_state({
        **base_state,
        "finished_at": finished_at,
        "status": "succeeded" if success else "failed",
        "error": error_message,
    })

    if normalized_idempotency_key:
        with _IDEMPOTENCY_LOCK:
            _IDEMPOTENCY_CACHE[idempotency_cache_key] = {
                "status": "done",
                "expires_at": finished_at + _IDEMPOTENCY_TTL_SECONDS,
                "result": result,
            }

    return result
