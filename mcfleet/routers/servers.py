# mcfleet/routers/servers.py
"""
Server instance REST API: catalogue, lifecycle, console, players, world,
configuration and host statistics.

Lifecycle actions go through the operation registry so they are journaled,
idempotent per Idempotency-Key and rejected while another one is running.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from mcfleet.core.auth import require_admin
from mcfleet.core.errors import InstanceNotFound, ManagerError, NotConfigured, NotRunning, TemplateNotFound
from mcfleet.services import backups, game_commands, server_properties, system_monitor
from mcfleet.services.broadcast import get_broadcast_hub
from mcfleet.services.command_policy import audit_event, decide_console_command
from mcfleet.services.console import ConsoleMessage, get_console_history
from mcfleet.services.instance_store import Instance, get_instance_store
from mcfleet.services.operations import execute_operation
from mcfleet.services.supervisor import get_supervisor
from mcfleet.services.templates import get_template_catalog

logger = logging.getLogger(__name__)

router = APIRouter()


def _public(instance: Instance) -> dict:
    data = instance.to_dict()
    data.pop("rcon_password", None)
    return data


def _get_instance(instance_id: int) -> Instance:
    try:
        return get_instance_store().get(instance_id)
    except InstanceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _operation_response(result: dict) -> JSONResponse:
    if result.get("error_code") == "operation_in_progress":
        return JSONResponse(result, status_code=409)
    return JSONResponse(result)


async def _run_operation(key: str, instance_id: int, request: Request, user_info: dict,
                         params: Optional[dict] = None) -> JSONResponse:
    _get_instance(instance_id)
    result = await execute_operation(
        key=key,
        instance_id=instance_id,
        actor=user_info.get("email", ""),
        params=params,
        idempotency_key=request.headers.get("Idempotency-Key"),
    )
    return _operation_response(result)


# ==========================================
# Collection
# ==========================================

@router.get("/api/servers")
async def list_servers(user_info: dict = Depends(require_admin)):
    """List every configured instance."""
    instances = await asyncio.to_thread(get_instance_store().list_all)
    return JSONResponse({"status": "ok", "servers": [_public(i) for i in instances]})


@router.get("/api/servers/statuses")
async def list_server_statuses(user_info: dict = Depends(require_admin)):
    statuses = await asyncio.to_thread(get_supervisor().get_all_server_statuses)
    return JSONResponse({"status": "ok", "statuses": [s.to_dict() for s in statuses]})


@router.get("/api/servers/templates")
async def list_templates(user_info: dict = Depends(require_admin)):
    templates = get_template_catalog().list_templates()
    return JSONResponse({"status": "ok", "templates": [t.to_dict() for t in templates]})


@router.post("/api/servers")
async def create_server(request: Request, user_info: dict = Depends(require_admin)):
    """Create an instance from a template and (by default) start installing it."""
    body = await _json_body(request)
    try:
        instance = get_supervisor().create_instance(body.get("name", ""), body.get("template_id", ""))
    except TemplateNotFound as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=404)
    except (ValueError, ManagerError) as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    audit_event(actor=user_info.get("email", ""), action="server_create", target=instance.name, result="created")
    response = {"success": True, "server": _public(instance)}
    if body.get("auto_install", True):
        response["install"] = await execute_operation(
            key="server:install",
            instance_id=instance.id,
            actor=user_info.get("email", ""),
            params={"template_id": instance.template_id},
        )
    return JSONResponse(response, status_code=201)


@router.post("/api/servers/{instance_id}/install")
async def install_server(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    body = await _json_body(request)
    return await _run_operation("server:install", instance_id, request, user_info,
                                {"template_id": body.get("template_id")})


@router.delete("/api/servers/{instance_id}")
async def delete_server(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_operation("server:delete", instance_id, request, user_info)


# ==========================================
# Lifecycle
# ==========================================

@router.post("/api/servers/{instance_id}/start")
async def start_server(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_operation("server:start", instance_id, request, user_info)


@router.post("/api/servers/{instance_id}/stop")
async def stop_server(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_operation("server:stop", instance_id, request, user_info)


@router.post("/api/servers/{instance_id}/restart")
async def restart_server(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_operation("server:restart", instance_id, request, user_info)


# ==========================================
# Runtime queries
# ==========================================

@router.get("/api/servers/{instance_id}/status")
async def get_server_status(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    status = await get_supervisor().get_server_status_async(instance_id)
    return JSONResponse({"status": "ok", "server": status.to_dict()})


@router.get("/api/servers/{instance_id}/info")
async def get_server_info(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    info = await asyncio.to_thread(get_supervisor().get_detailed_server_info, instance_id)
    return JSONResponse({"status": "ok", **info})


@router.post("/api/servers/{instance_id}/rcon/test")
async def test_rcon(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    supervisor = get_supervisor()
    connected = await supervisor.rcon.test_connection_async(instance_id)
    return JSONResponse({"success": connected, "rcon": supervisor.rcon.connection_info(instance_id)})


@router.post("/api/servers/{instance_id}/refresh")
async def refresh_server(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    supervisor = get_supervisor()
    if not await supervisor.is_running_async(instance_id):
        return JSONResponse({"success": False, "error": "Server is not running"})
    await asyncio.to_thread(supervisor.refresh_server_info, instance_id)
    status = await supervisor.get_server_status_async(instance_id)
    return JSONResponse({"success": True, "server": status.to_dict()})


# ==========================================
# Console
# ==========================================

@router.post("/api/servers/{instance_id}/command")
async def send_console_command(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    """Send a console command (with audit logging and denylist)"""
    body = await _json_body(request)
    admin_email = user_info.get("email", "unknown")

    decision = decide_console_command(command=body.get("command", ""))
    if decision.reason == "empty_command":
        return JSONResponse({"success": False, "error": "No command provided"}, status_code=400)
    if not decision.allowed:
        audit_event(actor=admin_email, action="console_command", target=decision.base_command,
                    result="blocked", extra={"reason": decision.reason, "instance_id": instance_id})
        return JSONResponse(
            {"success": False, "error": f"Command '{decision.base_command}' is blocked. Use dedicated endpoints."},
            status_code=403,
        )

    _get_instance(instance_id)
    audit_event(actor=admin_email, action="console_command", target=decision.base_command,
                result="allowed", extra={"instance_id": instance_id})

    await get_broadcast_hub().publish_console(instance_id, ConsoleMessage.command(f"> {decision.command}"))
    try:
        response = await get_supervisor().run_command(instance_id, decision.command)
    except (NotRunning, NotConfigured) as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=409)
    if response is None:
        return JSONResponse({"success": False, "error": "RCON command failed"})
    return JSONResponse({"success": True, "response": response})


@router.get("/api/servers/{instance_id}/console/history")
async def get_console_history_route(instance_id: int, limit: Optional[int] = None,
                                    user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    messages = get_console_history().recent(instance_id, limit)
    return JSONResponse({"status": "ok", "count": len(messages), "messages": [m.to_dict() for m in messages]})


@router.delete("/api/servers/{instance_id}/console/history")
async def clear_console_history(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    get_console_history().clear(instance_id)
    return JSONResponse({"success": True})


# ==========================================
# Player / world administration
# ==========================================

PLAYER_ACTIONS = {
    "kick": lambda b: game_commands.kick(b.get("player", ""), b.get("reason")),
    "ban": lambda b: game_commands.ban(b.get("player", ""), b.get("reason")),
    "pardon": lambda b: game_commands.pardon(b.get("player", "")),
    "op": lambda b: game_commands.op(b.get("player", "")),
    "deop": lambda b: game_commands.deop(b.get("player", "")),
    "teleport": lambda b: game_commands.teleport(b.get("player", ""), float(b["x"]), float(b["y"]), float(b["z"])),
    "give": lambda b: game_commands.give(b.get("player", ""), b.get("item", ""), int(b.get("amount", 1))),
    "gamemode": lambda b: game_commands.gamemode(b.get("player", ""), b.get("mode", "")),
    "heal": lambda b: game_commands.heal(b.get("player", "")),
    "feed": lambda b: game_commands.feed(b.get("player", "")),
    "tell": lambda b: game_commands.tell(b.get("player", ""), b.get("message", "")),
}

WORLD_ACTIONS = {
    "time": lambda b: game_commands.set_time(str(b.get("value", ""))),
    "weather": lambda b: game_commands.weather(b.get("value", ""), b.get("duration")),
    "gamerule": lambda b: game_commands.gamerule(b.get("rule", ""), b.get("value", "")),
    "difficulty": lambda b: game_commands.difficulty(b.get("value", "")),
    "save-all": lambda b: game_commands.save_all(),
    "save-on": lambda b: game_commands.save_on(),
    "save-off": lambda b: game_commands.save_off(),
    "reload": lambda b: game_commands.reload(),
    "say": lambda b: game_commands.say(b.get("message", "")),
}


async def _run_admin_action(instance_id: int, action: str, actions: dict, request: Request, user_info: dict):
    builder = actions.get(action)
    if builder is None:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    _get_instance(instance_id)
    body = await _json_body(request)
    try:
        command = builder(body)
    except (KeyError, TypeError, ValueError) as e:
        return JSONResponse({"success": False, "error": f"Invalid parameters: {e}"}, status_code=400)

    audit_event(actor=user_info.get("email", ""), action=action, target=command,
                result="sent", extra={"instance_id": instance_id})
    try:
        response = await get_supervisor().run_command(instance_id, command)
    except (NotRunning, NotConfigured) as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=409)
    if response is None:
        return JSONResponse({"success": False, "error": "RCON command failed"})
    return JSONResponse({"success": True, "command": command, "response": response})


@router.post("/api/servers/{instance_id}/players/{action}")
async def player_action(instance_id: int, action: str, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_admin_action(instance_id, action, PLAYER_ACTIONS, request, user_info)


@router.post("/api/servers/{instance_id}/world/{action}")
async def world_action(instance_id: int, action: str, request: Request, user_info: dict = Depends(require_admin)):
    return await _run_admin_action(instance_id, action, WORLD_ACTIONS, request, user_info)


@router.get("/api/servers/{instance_id}/players")
async def list_players(instance_id: int, user_info: dict = Depends(require_admin)):
    _get_instance(instance_id)
    supervisor = get_supervisor()
    if not await supervisor.is_running_async(instance_id):
        return JSONResponse({"status": "ok", "players": [], "message": "Server offline"})
    players = await asyncio.to_thread(supervisor.get_player_details, instance_id)
    return JSONResponse({"status": "ok", "players": players})


@router.post("/api/servers/{instance_id}/backup")
async def backup_server(instance_id: int, user_info: dict = Depends(require_admin)):
    """Flush the world if running, then archive it."""
    instance = _get_instance(instance_id)
    supervisor = get_supervisor()
    if await supervisor.is_running_async(instance_id):
        await supervisor.send_command(instance_id, game_commands.save_all())
    try:
        archive = await asyncio.to_thread(backups.backup_world, instance.root)
    except ManagerError as e:
        logger.error("[Servers] Backup failed for instance %s: %s", instance_id, e)
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)
    audit_event(actor=user_info.get("email", ""), action="backup", target=archive.name,
                result="created", extra={"instance_id": instance_id})
    return JSONResponse({"success": True, "backup": archive.name})


# ==========================================
# Configuration
# ==========================================

@router.get("/api/servers/{instance_id}/properties")
async def get_properties(instance_id: int, user_info: dict = Depends(require_admin)):
    instance = _get_instance(instance_id)
    return JSONResponse({
        "status": "ok",
        "properties": server_properties.read_properties(instance.root),
        "validations": server_properties.PROPERTY_VALIDATIONS,
    })


@router.put("/api/servers/{instance_id}/properties")
async def update_properties(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    instance = _get_instance(instance_id)
    updates = await _json_body(request)
    if not updates:
        return JSONResponse({"success": False, "error": "No properties provided"}, status_code=400)

    errors = {}
    for key, value in updates.items():
        error = server_properties.validate_property(key, value)
        if error:
            errors[key] = error
    if errors:
        return JSONResponse({"success": False, "errors": errors}, status_code=400)

    try:
        server_properties.update_properties(instance.root, updates)
    except ManagerError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=404)
    return JSONResponse({
        "success": True,
        "restart_required": server_properties.requires_restart(updates.keys()),
    })


@router.get("/api/servers/{instance_id}/whitelist")
async def get_whitelist(instance_id: int, user_info: dict = Depends(require_admin)):
    instance = _get_instance(instance_id)
    return JSONResponse({"status": "ok", "whitelist": server_properties.read_whitelist(instance.root)})


@router.post("/api/servers/{instance_id}/whitelist")
async def add_whitelist(instance_id: int, request: Request, user_info: dict = Depends(require_admin)):
    instance = _get_instance(instance_id)
    player = str((await _json_body(request)).get("player", "")).strip()
    if not player:
        return JSONResponse({"success": False, "error": "No player provided"}, status_code=400)

    added = await asyncio.to_thread(server_properties.add_to_whitelist, instance.root, player)
    if not added:
        return JSONResponse({"success": False, "error": f"{player} is already whitelisted"}, status_code=409)
    await get_supervisor().send_command(instance_id, "whitelist reload")
    return JSONResponse({"success": True})


@router.delete("/api/servers/{instance_id}/whitelist/{player}")
async def remove_whitelist(instance_id: int, player: str, user_info: dict = Depends(require_admin)):
    instance = _get_instance(instance_id)
    if not server_properties.remove_from_whitelist(instance.root, player):
        return JSONResponse({"success": False, "error": f"{player} is not whitelisted"}, status_code=404)
    await get_supervisor().send_command(instance_id, "whitelist reload")
    return JSONResponse({"success": True})


# ==========================================
# Host
# ==========================================

@router.get("/api/system")
async def get_system(user_info: dict = Depends(require_admin)):
    stats = await asyncio.to_thread(system_monitor.get_system_stats)
    return JSONResponse({
        "status": "ok",
        "system": stats.to_dict(),
        "high_usage": system_monitor.pressure_reasons(stats),
        "websocket_sessions": get_broadcast_hub().total_subscribers(),
    })
