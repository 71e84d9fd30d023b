# mcfleet/services/supervisor.py
"""
Server Process Supervisor

Handles:
- Starting/stopping/restarting instance processes
- Liveness checks derived from the stored PID on every call
- Command execution over RCON
- Status, player and world info gathered via RCON
- Periodic reconciliation (crash detection, on-start refresh)
- Creating and deleting instances

Lifecycle operations on one instance are serialized by that instance's lock;
different instances never wait on each other.
"""

import asyncio
import logging
import re
import shutil
import subprocess
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set
from urllib.parse import urlparse

import psutil

from mcfleet.core.config import SERVERS_DIR, STOP_GRACE_SECONDS, STOP_TERMINATE_WAIT_SECONDS
from mcfleet.core.errors import IOFailure, ManagerError, NotConfigured, NotRunning, ProcessFailure
from mcfleet.services import system_monitor
from mcfleet.services.broadcast import EVENT_STATUS, BroadcastHub, get_broadcast_hub
from mcfleet.services.console import ConsoleMessage
from mcfleet.services.instance_store import (
    NOT_STARTABLE_STATES,
    Instance,
    InstallationStatus,
    InstanceStore,
    get_instance_store,
)
from mcfleet.services.log_monitor import LogMonitor, get_log_monitor
from mcfleet.services.rcon import (
    RconClient,
    get_rcon_client,
    parse_player_list,
    parse_seed,
    parse_tps,
    parse_version,
)
from mcfleet.services.server_properties import get_int_property, read_properties
from mcfleet.services.templates import TemplateCatalog, get_template_catalog

logger = logging.getLogger(__name__)

EXIT_POLL_INTERVAL_SEC = 0.5
TPS_PROBE_SECONDS = 3
MAX_TPS = 20.0
_INSTANCE_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,63}")
_POSITION_RE = re.compile(r"\[(-?[\d.]+)d, (-?[\d.]+)d, (-?[\d.]+)d\]")

_LIVE_STATES = frozenset({InstallationStatus.STARTING, InstallationStatus.RUNNING, InstallationStatus.STOPPING})


@dataclass
class ServerStatus:
    """Snapshot of one instance for the UI and the status broadcast."""
    instance_id: int
    name: str
    server_type: str = ""
    port: Optional[int] = None
    status: str = ""
    online: bool = False
    players_online: int = 0
    max_players: int = 20
    online_players: List[str] = field(default_factory=list)
    cpu_usage: float = 0.0
    ram_usage_mb: float = 0.0
    total_ram_mb: float = 0.0
    disk_usage_percent: float = 0.0
    uptime: str = "0m"
    tps: float = 0.0
    version: str = ""
    world_name: str = "world"
    last_updated: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InstanceRuntime:
    """In-memory bookkeeping for one instance; never persisted."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    process: Optional[subprocess.Popen] = None
    started_at: Optional[datetime] = None
    online_players: Set[str] = field(default_factory=set)
    player_count: int = 0
    max_players: Optional[int] = None
    version: Optional[str] = None
    seed: Optional[str] = None
    tps: Optional[float] = None
    tps_probe_active: bool = False
    last_observed_online: bool = False
    stop_requested: bool = False

    def reset(self) -> None:
        self.process = None
        self.started_at = None
        self.online_players = set()
        self.player_count = 0
        self.max_players = None
        self.version = None
        self.seed = None
        self.tps = None
        self.tps_probe_active = False


def format_uptime(started_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if started_at is None:
        return "0m"
    total_minutes = int(((now or datetime.now()) - started_at).total_seconds() // 60)
    days, rem = divmod(max(total_minutes, 0), 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def jar_name_from_url(url: str) -> str:
    name = Path(urlparse(url or "").path).name
    return name or "server.jar"


class ServerSupervisor:
    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        rcon: Optional[RconClient] = None,
        hub: Optional[BroadcastHub] = None,
        log_monitor: Optional[LogMonitor] = None,
        catalog: Optional[TemplateCatalog] = None,
        stop_grace: float = STOP_GRACE_SECONDS,
        terminate_wait: float = STOP_TERMINATE_WAIT_SECONDS,
    ):
        self.store = store or get_instance_store()
        self.rcon = rcon or get_rcon_client()
        self.hub = hub or get_broadcast_hub()
        self.log_monitor = log_monitor or get_log_monitor()
        self.catalog = catalog or get_template_catalog()
        self.stop_grace = stop_grace
        self.terminate_wait = terminate_wait
        self._runtime: Dict[int, InstanceRuntime] = {}
        self._runtime_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Runtime state
    # ------------------------------------------------------------------

    def runtime(self, instance_id: int) -> InstanceRuntime:
        state = self._runtime.get(instance_id)
        if state is None:
            with self._runtime_lock:
                state = self._runtime.setdefault(instance_id, InstanceRuntime())
        return state

    def is_busy(self, instance_id: int) -> bool:
        state = self._runtime.get(instance_id)
        return bool(state and state.lock.locked())

    async def _system_message(self, instance_id: int, message: ConsoleMessage) -> None:
        try:
            await self.hub.publish_console(instance_id, message)
        except Exception:
            logger.debug("[Supervisor] Could not broadcast console message", exc_info=True)

    async def _publish_lifecycle(self, instance_id: int) -> None:
        instance = self.store.find(instance_id)
        if instance is None:
            return
        try:
            await self.hub.publish(instance_id, EVENT_STATUS, {
                "instance_id": instance_id,
                "status": instance.status.value,
                "status_message": instance.status_message,
                "online": instance.pid is not None,
            })
        except Exception:
            logger.debug("[Supervisor] Could not broadcast lifecycle status", exc_info=True)

    # ------------------------------------------------------------------
    # Process detection (sync; called via asyncio.to_thread from async code)
    # ------------------------------------------------------------------

    def _pid_alive(self, instance: Instance) -> bool:
        state = self._runtime.get(instance.id)
        proc = state.process if state else None
        if proc is not None and proc.pid == instance.pid:
            return proc.poll() is None

        try:
            process = psutil.Process(instance.pid)
            if not process.is_running() or process.status() == psutil.STATUS_ZOMBIE:
                return False
            # Guard against PID reuse after the server exited
            cmdline = " ".join(process.cmdline())
            return not cmdline or instance.jar_file_name in cmdline
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def is_running(self, instance_id: int) -> bool:
        """Fresh liveness check; clears a stale PID from the record."""
        instance = self.store.find(instance_id)
        if instance is None or not instance.pid:
            return False
        if self._pid_alive(instance):
            return True
        logger.info("[Supervisor] Process %s for instance %s is gone, clearing PID", instance.pid, instance_id)
        self.store.update(instance_id, pid=None)
        return False

    async def is_running_async(self, instance_id: int) -> bool:
        return await asyncio.to_thread(self.is_running, instance_id)

    def build_launch_command(self, instance: Instance) -> List[str]:
        jar = instance.root / instance.jar_file_name
        if not jar.exists():
            raise ProcessFailure(f"Server jar not found: {jar}")
        args = [instance.java_path or "java"]
        if instance.allocated_memory:
            args.append(f"-Xmx{instance.allocated_memory}")
        args += ["-jar", instance.jar_file_name, "nogui"]
        return args

    def _launch(self, instance: Instance) -> subprocess.Popen:
        args = self.build_launch_command(instance)
        logger.info("[Supervisor] Launching instance %s: %s", instance.id, " ".join(args))
        try:
            return subprocess.Popen(
                args,
                cwd=str(instance.root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessFailure(f"Failed to launch server: {e}") from e

    def _terminate(self, instance_id: int, pid: int) -> None:
        """SIGTERM, wait, then SIGKILL; raises if the process survives."""
        state = self._runtime.get(instance_id)
        proc = state.process if state else None
        if proc is not None and proc.pid == pid:
            proc.terminate()
            try:
                proc.wait(timeout=self.terminate_wait)
            except subprocess.TimeoutExpired:
                logger.warning("[Supervisor] Force killing PID %s", pid)
                proc.kill()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired as e:
                    raise ProcessFailure(f"Process {pid} did not exit after SIGKILL") from e
            return

        try:
            process = psutil.Process(pid)
            process.terminate()
            _, alive = psutil.wait_procs([process], timeout=self.terminate_wait)
            for survivor in alive:
                logger.warning("[Supervisor] Force killing PID %s", survivor.pid)
                survivor.kill()
            _, alive = psutil.wait_procs(alive, timeout=5)
            if alive:
                raise ProcessFailure(f"Process {pid} did not exit after SIGKILL")
        except psutil.NoSuchProcess:
            pass

    def _start_log_monitoring(self, instance_id: int) -> None:
        try:
            self.log_monitor.start_monitoring(instance_id)
        except Exception:
            logger.warning("[Supervisor] Could not start log monitoring for instance %s",
                           instance_id, exc_info=True)

    def _clear_runtime(self, instance_id: int) -> None:
        self.log_monitor.stop_monitoring(instance_id)
        self.runtime(instance_id).reset()
        self.store.update(instance_id, pid=None)

    async def _wait_for_exit(self, instance_id: int, timeout: float) -> bool:
        waited = 0.0
        while waited < timeout:
            if not await self.is_running_async(instance_id):
                return True
            await asyncio.sleep(EXIT_POLL_INTERVAL_SEC)
            waited += EXIT_POLL_INTERVAL_SEC
        return not await self.is_running_async(instance_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, instance_id: int) -> bool:
        async with self.runtime(instance_id).lock:
            return await self._start_locked(instance_id)

    async def stop(self, instance_id: int) -> bool:
        async with self.runtime(instance_id).lock:
            return await self._stop_locked(instance_id)

    async def restart(self, instance_id: int) -> bool:
        async with self.runtime(instance_id).lock:
            if not await self._stop_locked(instance_id):
                await self._system_message(instance_id, ConsoleMessage.error(
                    "[ERROR] Restart aborted: the server could not be stopped"
                ))
                return False
            return await self._start_locked(instance_id)

    async def _start_locked(self, instance_id: int) -> bool:
        instance = self.store.get(instance_id)
        if instance.status in NOT_STARTABLE_STATES:
            await self._system_message(instance_id, ConsoleMessage.error(
                f"[ERROR] Cannot start server while it is {instance.status.value}"
            ))
            return False

        if await self.is_running_async(instance_id):
            await self._system_message(instance_id, ConsoleMessage.info("[SYSTEM] Server is already running"))
            return True

        state = self.runtime(instance_id)
        self.store.set_status(instance_id, InstallationStatus.STARTING, "Starting server...")
        await self._system_message(instance_id, ConsoleMessage.info("[SYSTEM] Starting server..."))
        await self._publish_lifecycle(instance_id)

        try:
            process = await asyncio.to_thread(self._launch, instance)
        except Exception as e:
            logger.error("[Supervisor] Failed to start instance %s", instance_id, exc_info=True)
            self.store.set_status(instance_id, InstallationStatus.STOPPED, f"Failed to start: {e}")
            await self._system_message(instance_id, ConsoleMessage.error(f"[ERROR] Failed to start server: {e}"))
            await self._publish_lifecycle(instance_id)
            return False

        state.reset()
        state.process = process
        state.started_at = datetime.now()
        state.stop_requested = False
        self.store.update(
            instance_id,
            pid=process.pid,
            status=InstallationStatus.RUNNING,
            status_message="Server running",
        )
        await asyncio.to_thread(self._start_log_monitoring, instance_id)
        await self._system_message(instance_id, ConsoleMessage.info(
            f"[SYSTEM] Server process started (PID {process.pid})"
        ))
        await self._publish_lifecycle(instance_id)
        return True

    async def _stop_locked(self, instance_id: int) -> bool:
        instance = self.store.get(instance_id)
        state = self.runtime(instance_id)
        state.stop_requested = True

        if not await self.is_running_async(instance_id):
            await asyncio.to_thread(self._clear_runtime, instance_id)
            if instance.status in _LIVE_STATES:
                self.store.set_status(instance_id, InstallationStatus.STOPPED, "Server stopped")
            return True

        pid = self.store.get(instance_id).pid
        self.store.set_status(instance_id, InstallationStatus.STOPPING, "Stopping server...")
        await self._system_message(instance_id, ConsoleMessage.info("[SYSTEM] Stopping server..."))
        await self._publish_lifecycle(instance_id)

        success = True
        try:
            if self.rcon.is_configured(instance_id):
                response = await self.rcon.execute_async(instance_id, "stop")
                if response is not None:
                    await self._wait_for_exit(instance_id, self.stop_grace)

            if await self.is_running_async(instance_id):
                logger.warning("[Supervisor] Instance %s still running, terminating PID %s", instance_id, pid)
                await self._system_message(instance_id, ConsoleMessage.warning(
                    "[SYSTEM] Server did not stop gracefully, terminating process"
                ))
                await asyncio.to_thread(self._terminate, instance_id, pid)
        except Exception as e:
            logger.error("[Supervisor] Error stopping instance %s", instance_id, exc_info=True)
            await self._system_message(instance_id, ConsoleMessage.error(f"[ERROR] Failed to stop server: {e}"))
            success = False
        finally:
            await asyncio.to_thread(self._clear_runtime, instance_id)

        if success:
            self.store.set_status(instance_id, InstallationStatus.STOPPED, "Server stopped")
            await self._system_message(instance_id, ConsoleMessage.info("[SYSTEM] Server stopped"))
        else:
            self.store.set_status(instance_id, InstallationStatus.STOPPED, "Server stop failed")
        await self._publish_lifecycle(instance_id)
        return success

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute_command(self, instance_id: int, command: str) -> Optional[str]:
        """Run a command on a live server; None when not running or RCON failed."""
        if not await self.is_running_async(instance_id):
            logger.debug("[Supervisor] Instance %s not running, not sending '%s'", instance_id, command)
            return None
        return await self.rcon.execute_async(instance_id, command)

    async def run_command(self, instance_id: int, command: str) -> Optional[str]:
        """
        Strict variant of execute_command() for callers that report why a
        command could not be sent. Raises NotRunning or NotConfigured; a None
        result means RCON failed after its retries.
        """
        if not await self.is_running_async(instance_id):
            raise NotRunning(f"Server instance {instance_id} is not running")
        if not self.rcon.is_configured(instance_id):
            raise NotConfigured(f"RCON is not configured for instance {instance_id}")
        return await self.rcon.execute_async(instance_id, command)

    async def send_command(self, instance_id: int, command: str) -> bool:
        return await self.execute_command(instance_id, command) is not None

    # ------------------------------------------------------------------
    # Status / info (blocking; RCON round trips)
    # ------------------------------------------------------------------

    def update_player_list(self, instance_id: int) -> List[str]:
        response = self.rcon.execute(instance_id, "list")
        state = self.runtime(instance_id)
        if response is None:
            return sorted(state.online_players)
        online, max_players, names = parse_player_list(response)
        state.player_count = online
        state.online_players = set(names)
        if max_players:
            state.max_players = max_players
        return names

    def _update_tps(self, instance_id: int) -> None:
        tps = self.rcon.execute_parsed(instance_id, "tps", parse_tps)
        if tps is not None:
            self.runtime(instance_id).tps = min(tps, MAX_TPS)

    def refresh_server_info(self, instance_id: int) -> None:
        """Re-read version, seed and players from the live server."""
        state = self.runtime(instance_id)
        version = self.rcon.execute_parsed(instance_id, "version", parse_version)
        if version:
            state.version = version
        seed = self.rcon.execute_parsed(instance_id, "seed", parse_seed)
        if seed:
            state.seed = seed
        self.update_player_list(instance_id)

    def get_server_status(self, instance_id: int) -> ServerStatus:
        instance = self.store.get(instance_id)
        stats = system_monitor.get_system_stats()
        status = ServerStatus(
            instance_id=instance.id,
            name=instance.name,
            server_type=instance.server_type,
            port=instance.port,
            status=instance.status.value,
            total_ram_mb=stats.memory_total_mb,
            disk_usage_percent=stats.disk_percent,
            version=instance.version,
            last_updated=datetime.now().isoformat(),
        )
        if not self.is_running(instance_id):
            return status

        state = self.runtime(instance_id)
        self.update_player_list(instance_id)
        if not state.tps_probe_active:
            self._update_tps(instance_id)
        if state.version is None:
            self.refresh_server_info(instance_id)

        process_stats = system_monitor.get_process_stats(self.store.get(instance_id).pid)
        status.online = True
        status.players_online = state.player_count
        status.max_players = state.max_players or get_int_property(instance.root, "max-players", 20)
        status.online_players = sorted(state.online_players)
        status.cpu_usage = process_stats.get("cpu_percent", stats.cpu_percent)
        status.ram_usage_mb = process_stats.get("ram_mb", stats.memory_used_mb)
        status.uptime = format_uptime(state.started_at)
        status.tps = state.tps if state.tps is not None else MAX_TPS
        status.version = state.version or instance.version
        status.world_name = read_properties(instance.root).get("level-name", "world")
        return status

    async def get_server_status_async(self, instance_id: int) -> ServerStatus:
        return await asyncio.to_thread(self.get_server_status, instance_id)

    def get_all_server_statuses(self) -> List[ServerStatus]:
        statuses = []
        for instance in self.store.list_all():
            try:
                statuses.append(self.get_server_status(instance.id))
            except Exception:
                logger.error("[Supervisor] Status failed for instance %s", instance.id, exc_info=True)
        return statuses

    def get_player_details(self, instance_id: int) -> List[dict]:
        players = []
        for name in self.update_player_list(instance_id):
            entry = {"name": name, "position": None}
            response = self.rcon.execute(instance_id, f"data get entity {name} Pos")
            match = _POSITION_RE.search(response or "")
            if match:
                entry["position"] = [round(float(v), 2) for v in match.groups()]
            players.append(entry)
        return players

    def get_detailed_server_info(self, instance_id: int) -> dict:
        instance = self.store.get(instance_id)
        status = self.get_server_status(instance_id)
        state = self.runtime(instance_id)
        record = instance.to_dict()
        record.pop("rcon_password", None)
        info = {
            "status": status.to_dict(),
            "instance": record,
            "seed": state.seed,
            "rcon": self.rcon.connection_info(instance_id),
            "process": system_monitor.get_process_stats(instance.pid),
            "worldborder": None,
        }
        if status.online:
            info["worldborder"] = self.rcon.execute(instance_id, "worldborder get")
        return info

    async def sample_tps(self, instance_id: int) -> Optional[float]:
        """Profile ticks for a few seconds with `debug start` / `debug stop`."""
        state = self.runtime(instance_id)
        if state.tps_probe_active:
            return None
        state.tps_probe_active = True
        try:
            started = await self.rcon.execute_async(instance_id, "debug start")
            if not started or "Started" not in started:
                return None
            await asyncio.sleep(TPS_PROBE_SECONDS)
            report = await self.rcon.execute_async(instance_id, "debug stop")
            tps = parse_tps(report or "")
            if tps is not None:
                state.tps = min(tps, MAX_TPS)
            return state.tps
        finally:
            state.tps_probe_active = False

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> None:
        """Compare last observed liveness with a fresh check for every instance."""
        for instance in await asyncio.to_thread(self.store.list_all):
            try:
                await self._reconcile_instance(instance)
            except Exception:
                logger.error("[Supervisor] Reconciliation failed for instance %s", instance.id, exc_info=True)

    async def _reconcile_instance(self, instance: Instance) -> None:
        if instance.status in NOT_STARTABLE_STATES or self.is_busy(instance.id):
            return

        state = self.runtime(instance.id)
        was_online = state.last_observed_online
        online = await self.is_running_async(instance.id)
        state.last_observed_online = online

        if not online:
            if was_online and not state.stop_requested:
                logger.warning("[Supervisor] Instance %s stopped unexpectedly", instance.id)
                await asyncio.to_thread(self._clear_runtime, instance.id)
                await self._system_message(instance.id, ConsoleMessage.error(
                    "[SYSTEM] Server appears to have stopped unexpectedly"
                ))
            if instance.status in _LIVE_STATES:
                message = "Server stopped unexpectedly" if not state.stop_requested else "Server stopped"
                self.store.set_status(instance.id, InstallationStatus.STOPPED, message)
                await self._publish_lifecycle(instance.id)
            return

        if not was_online:
            logger.info("[Supervisor] Instance %s is now running", instance.id)
            await self._system_message(instance.id, ConsoleMessage.info("[SYSTEM] Server has started"))
            if instance.status != InstallationStatus.RUNNING:
                self.store.set_status(instance.id, InstallationStatus.RUNNING, "Server running")
            await asyncio.to_thread(self.refresh_server_info, instance.id)

        if not self.log_monitor.is_monitoring(instance.id):
            await asyncio.to_thread(self._start_log_monitoring, instance.id)

        if self.rcon.is_configured(instance.id) and not await self.rcon.test_connection_async(instance.id):
            await self._system_message(instance.id, ConsoleMessage.warning(
                "[SYSTEM] RCON connection lost - some features may not work"
            ))

    async def resume_monitoring(self) -> int:
        """Re-attach log watchers to instances that survived an app restart."""
        resumed = 0
        for instance in await asyncio.to_thread(self.store.list_all):
            if instance.pid and await self.is_running_async(instance.id):
                await asyncio.to_thread(self._start_log_monitoring, instance.id)
                resumed += 1
        return resumed

    # ------------------------------------------------------------------
    # Instance creation / deletion
    # ------------------------------------------------------------------

    def create_instance(self, name: str, template_id: str) -> Instance:
        name = (name or "").strip()
        if not _INSTANCE_NAME_RE.fullmatch(name):
            raise ValueError("Instance name may only contain letters, digits, '.', '_' and '-'")
        if self.store.find_by_name(name):
            raise ManagerError(f"An instance named '{name}' already exists")

        template = self.catalog.get(template_id)
        instance = Instance(
            name=name,
            instance_path=str(SERVERS_DIR / name),
            jar_file_name=jar_name_from_url(template.download_url),
            version=template.version,
            server_type=template.type,
            template_id=template.id,
            ip="0.0.0.0",
            rcon_enabled=False,
            status=InstallationStatus.PENDING_INSTALLATION,
            status_message="Waiting for installation",
        )
        self.store.save(instance)
        logger.info("[Supervisor] Created instance %s (%s) from template %s", instance.id, name, template.id)
        return instance

    async def delete_instance(self, instance_id: int) -> bool:
        async with self.runtime(instance_id).lock:
            instance = self.store.get(instance_id)
            if not await self._stop_locked(instance_id):
                return False

            self.store.set_status(instance_id, InstallationStatus.DELETING, "Deleting server...")
            await self._system_message(instance_id, ConsoleMessage.info("[SYSTEM] Deleting server..."))
            try:
                await asyncio.to_thread(self._remove_files, instance)
            except IOFailure as e:
                logger.error("[Supervisor] Failed to delete files for instance %s: %s", instance_id, e)
                self.store.set_status(instance_id, InstallationStatus.STOPPED, f"Delete failed: {e}")
                await self._system_message(instance_id, ConsoleMessage.error(f"[ERROR] Failed to delete server: {e}"))
                return False

            self.log_monitor.history.discard(instance_id)
            self.store.delete(instance_id)

        with self._runtime_lock:
            self._runtime.pop(instance_id, None)
        logger.info("[Supervisor] Deleted instance %s (%s)", instance_id, instance.name)
        return True

    @staticmethod
    def _remove_files(instance: Instance) -> None:
        root = instance.root.resolve()
        if not root.exists():
            return
        if not root.is_relative_to(SERVERS_DIR.resolve()):
            logger.warning("[Supervisor] Not deleting %s: outside %s", root, SERVERS_DIR)
            return
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise IOFailure(str(e)) from e


_supervisor: Optional[ServerSupervisor] = None


def get_supervisor() -> ServerSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = ServerSupervisor()
    return _supervisor
