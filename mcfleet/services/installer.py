# mcfleet/services/installer.py
"""
Server Installation Pipeline

Per-instance state machine:
PENDING_INSTALLATION → DOWNLOADING → RUNNING_INSTALLER → CONFIGURING → STOPPED
Any failure lands in INSTALLATION_FAILED with the cause as status message.

Steps:
1. Resolve a Java runtime that satisfies the template
2. Create the instance root and accept the EULA
3. Run the template's DOWNLOAD / RUN steps
4. Boot the server once so it generates its files, then stop it
5. Allocate ports, generate RCON credentials and write server.properties

Every status change is persisted before the next step starts, so a crash
mid-install leaves an inspectable record. The pipeline itself is blocking and
runs in a worker thread; progress goes out through the broadcast hub.
"""

import asyncio
import logging
import re
import secrets
import shlex
import subprocess
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from mcfleet.core.config import FIRST_BOOT_TIMEOUT_SECONDS, INSTALL_STEP_TIMEOUT_SECONDS
from mcfleet.core.errors import ManagerError, OperationTimeout, ProcessFailure
from mcfleet.services.broadcast import EVENT_STATUS, INSTALLATION_CHANNEL, BroadcastHub, get_broadcast_hub
from mcfleet.services.console import ConsoleMessage
from mcfleet.services.downloads import download_file
from mcfleet.services.instance_store import (
    Instance,
    InstallationStatus,
    InstanceStore,
    get_instance_store,
)
from mcfleet.services.java_runtime import JavaRuntimeResolver, get_java_resolver
from mcfleet.services.port_allocator import PortAllocator, get_port_allocator
from mcfleet.services.server_properties import ensure_default_properties, update_properties
from mcfleet.services.templates import StepType, ServerTemplate, TemplateCatalog, get_template_catalog

logger = logging.getLogger(__name__)

DEFAULT_RAM = "2G"
READY_BANNER = re.compile(r'Done \(.+?s\)! For help, type "help"')
BASELINE_FILES = ("server.properties", "eula.txt")
BASELINE_DIRS = ("logs", "world")

# Re-installing is refused while the server is live or being removed
_BUSY_STATES = frozenset({
    InstallationStatus.STARTING,
    InstallationStatus.RUNNING,
    InstallationStatus.STOPPING,
    InstallationStatus.DELETING,
})

_RAM_TOKEN_RE = re.compile(r"(\d+)\s*([GgMm])[Bb]?\+?")


def parse_ram(requirement: Optional[str]) -> str:
    """'4GB+ RAM' -> '4G'. The first token with a G/M size wins; default 2G."""
    for token in (requirement or "").split():
        match = _RAM_TOKEN_RE.search(token)
        if match:
            return f"{match.group(1)}{match.group(2).upper()}"
    return DEFAULT_RAM


def substitute_placeholders(command: str, values: Dict[str, str]) -> str:
    for placeholder, value in values.items():
        command = command.replace(placeholder, value)
    return command


class InstallationPipeline:
    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        catalog: Optional[TemplateCatalog] = None,
        ports: Optional[PortAllocator] = None,
        runtime: Optional[JavaRuntimeResolver] = None,
        hub: Optional[BroadcastHub] = None,
        downloader: Callable[[str, Path], Path] = download_file,
        step_timeout: float = INSTALL_STEP_TIMEOUT_SECONDS,
        first_boot_timeout: float = FIRST_BOOT_TIMEOUT_SECONDS,
    ):
        self.store = store or get_instance_store()
        self.catalog = catalog or get_template_catalog()
        self.ports = ports or get_port_allocator()
        self.runtime = runtime or get_java_resolver()
        self.hub = hub or get_broadcast_hub()
        self.downloader = downloader
        self.step_timeout = step_timeout
        self.first_boot_timeout = first_boot_timeout
        self._active: Set[int] = set()
        self._processes: Dict[int, subprocess.Popen] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Progress reporting
    # ------------------------------------------------------------------

    def _announce(self, instance_id: int, message: ConsoleMessage) -> None:
        self.hub.publish_console_threadsafe(instance_id, message)
        self.hub.publish_console_threadsafe(INSTALLATION_CHANNEL, message)

    def _set_status(self, instance_id: int, status: InstallationStatus, message: str) -> None:
        self.store.set_status(instance_id, status, message)
        logger.info("[Installer] Instance %s: %s - %s", instance_id, status.value, message)
        self._announce(instance_id, ConsoleMessage.info(f"[INSTALL] {message}"))
        payload = {"instance_id": instance_id, "status": status.value, "message": message}
        self.hub.publish_threadsafe(instance_id, EVENT_STATUS, payload)
        self.hub.publish_threadsafe(INSTALLATION_CHANNEL, EVENT_STATUS, payload)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def is_installing(self, instance_id: int) -> bool:
        return instance_id in self._active

    def _claim(self, instance_id: int) -> None:
        with self._lock:
            if instance_id in self._active:
                raise ManagerError(f"Installation already in progress for instance {instance_id}")
            self._active.add(instance_id)

    def _release(self, instance_id: int) -> None:
        with self._lock:
            self._active.discard(instance_id)

    def install(self, instance_id: int, template_id: Optional[str] = None) -> bool:
        """Run the whole pipeline in the calling thread; True on success."""
        self._claim(instance_id)
        try:
            return self._install(instance_id, template_id)
        finally:
            self._release(instance_id)

    def start_installation(self, instance_id: int, template_id: Optional[str] = None) -> asyncio.Task:
        """Launch the pipeline in a worker thread and return its task."""
        instance = self.store.get(instance_id)
        if instance.status in _BUSY_STATES:
            raise ManagerError(f"Cannot install while instance is {instance.status.value}")
        self._claim(instance_id)

        async def _run() -> bool:
            try:
                return await asyncio.to_thread(self._install, instance_id, template_id)
            finally:
                self._release(instance_id)
                self._tasks.pop(instance_id, None)

        task = asyncio.create_task(_run())
        self._tasks[instance_id] = task
        return task

    def cancel_all(self) -> None:
        """Kill any installer or first-boot processes still running and cancel their tasks."""
        for instance_id, proc in list(self._processes.items()):
            if proc.poll() is None:
                logger.warning("[Installer] Killing installer process for instance %s", instance_id)
                proc.kill()
        for task in list(self._tasks.values()):
            task.cancel()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _install(self, instance_id: int, template_id: Optional[str]) -> bool:
        try:
            instance = self.store.get(instance_id)
            template = self.catalog.get(template_id or instance.template_id)

            self._set_status(instance_id, InstallationStatus.DOWNLOADING, "Starting installation...")
            java_path = self.runtime.ensure_available(template.system_requirements)
            self.store.update(instance_id, java_path=java_path, template_id=template.id)

            root = instance.root
            root.mkdir(parents=True, exist_ok=True)
            (root / "eula.txt").write_text("eula=true\n", encoding="utf-8")

            ram = parse_ram(template.hardware_requirements)
            self._run_steps(instance, template, java_path, ram)

            self._set_status(instance_id, InstallationStatus.CONFIGURING, "Generating baseline server files...")
            self._first_boot(instance, java_path)
            self._verify_baseline(instance)

            self._set_status(instance_id, InstallationStatus.CONFIGURING, "Configuring ports and RCON...")
            self._configure(instance, ram)

            self._set_status(instance_id, InstallationStatus.STOPPED, "Installation completed successfully!")
            return True

        except Exception as e:
            logger.error("[Installer] Installation failed for instance %s", instance_id, exc_info=True)
            message = f"Installation failed: {e}"
            try:
                self.store.set_status(instance_id, InstallationStatus.INSTALLATION_FAILED, message)
            except ManagerError:
                logger.error("[Installer] Could not record failure for instance %s", instance_id)
            self._announce(instance_id, ConsoleMessage.error(f"[ERROR] {message}"))
            self.hub.publish_threadsafe(INSTALLATION_CHANNEL, EVENT_STATUS, {
                "instance_id": instance_id,
                "status": InstallationStatus.INSTALLATION_FAILED.value,
                "message": message,
            })
            return False

    def _run_steps(self, instance: Instance, template: ServerTemplate, java_path: str, ram: str) -> None:
        values = {
            "{downloadUrl}": template.download_url,
            "{jar}": instance.jar_file_name,
            "{ram}": ram,
        }
        steps = template.installation_steps
        for index, step in enumerate(steps, 1):
            command = substitute_placeholders(step.command, values)
            if step.type == StepType.DOWNLOAD:
                self._set_status(instance.id, InstallationStatus.DOWNLOADING,
                                 f"Downloading {instance.jar_file_name} (step {index}/{len(steps)})")
                self.downloader(command, instance.root / instance.jar_file_name)
            else:
                self._set_status(instance.id, InstallationStatus.RUNNING_INSTALLER,
                                 f"Running installer (step {index}/{len(steps)})")
                args = shlex.split(command)
                if args and args[0] == "java":
                    args[0] = java_path
                exit_code = self._run_command(instance.id, args, instance.root)
                if exit_code != 0:
                    raise ProcessFailure(f"Installation command failed with exit code: {exit_code}", exit_code)

    # ------------------------------------------------------------------
    # External processes
    # ------------------------------------------------------------------

    @contextmanager
    def _spawn(self, instance_id: int, args: List[str], cwd: Path, stdin=None):
        """Spawned process that is always killed and reaped on exit."""
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd),
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise ProcessFailure(f"Failed to launch {args[0]}: {e}") from e

        self._processes[instance_id] = proc
        try:
            yield proc
        finally:
            if proc.poll() is None:
                proc.kill()
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logger.error("[Installer] Process %s did not exit after kill", proc.pid)
            if proc.stdin:
                try:
                    proc.stdin.close()
                except OSError:
                    pass
            self._processes.pop(instance_id, None)

    def _start_reader(self, instance_id: int, proc: subprocess.Popen,
                      on_line: Optional[Callable[[str], None]] = None) -> threading.Thread:
        def _pump():
            for line in proc.stdout:
                line = line.rstrip()
                if not line:
                    continue
                self._announce(instance_id, ConsoleMessage.server_output(line))
                if on_line:
                    on_line(line)

        reader = threading.Thread(target=_pump, name=f"install-output-{instance_id}", daemon=True)
        reader.start()
        return reader

    def _run_command(self, instance_id: int, args: List[str], cwd: Path) -> int:
        """Run one installer command with a timeout; returns its exit code."""
        logger.info("[Installer] Running: %s", " ".join(args))
        with self._spawn(instance_id, args, cwd) as proc:
            reader = self._start_reader(instance_id, proc)
            try:
                exit_code = proc.wait(timeout=self.step_timeout)
            except subprocess.TimeoutExpired as e:
                raise OperationTimeout(
                    f"Installation command timed out after {self.step_timeout:.0f}s"
                ) from e
            reader.join(timeout=5)
        return exit_code

    def _first_boot(self, instance: Instance, java_path: str) -> None:
        """Start the server once, stop it when it reports ready."""
        args = [java_path, "-Xms512M", "-Xmx1G", "-jar", instance.jar_file_name, "nogui"]
        ready = threading.Event()

        with self._spawn(instance.id, args, instance.root, stdin=subprocess.PIPE) as proc:
            def _on_line(line: str) -> None:
                if ready.is_set() or not READY_BANNER.search(line):
                    return
                ready.set()
                logger.info("[Installer] First boot finished for instance %s, sending stop", instance.id)
                try:
                    proc.stdin.write("stop\n")
                    proc.stdin.flush()
                except (OSError, ValueError) as e:
                    logger.warning("[Installer] Could not send stop to first-boot process: %s", e)

            reader = self._start_reader(instance.id, proc, _on_line)
            try:
                proc.wait(timeout=self.first_boot_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[Installer] First boot for instance %s exceeded %.0fs, killing it",
                               instance.id, self.first_boot_timeout)
                self._announce(instance.id, ConsoleMessage.warning(
                    f"[SYSTEM] First boot did not finish within {self.first_boot_timeout:.0f}s, process killed"
                ))
        reader.join(timeout=5)

    def _verify_baseline(self, instance: Instance) -> None:
        root = instance.root
        missing = [name for name in BASELINE_FILES if not (root / name).is_file()]
        missing += [name for name in BASELINE_DIRS if not (root / name).is_dir()]
        if missing:
            logger.warning("[Installer] Instance %s is missing after first boot: %s",
                           instance.id, ", ".join(missing))
        else:
            logger.info("[Installer] Baseline files present for instance %s", instance.id)

    def _configure(self, instance: Instance, ram: str) -> None:
        game_port = self.ports.allocate_game_port(instance.id)
        rcon_port = self.ports.allocate_rcon_port(instance.id)
        rcon_password = secrets.token_hex(8)

        self.store.update(
            instance.id,
            ip="0.0.0.0",
            rcon_password=rcon_password,
            rcon_enabled=True,
            allocated_memory=ram,
        )

        ensure_default_properties(instance.root)
        update_properties(instance.root, {
            "server-port": game_port,
            "enable-rcon": "true",
            "rcon.port": rcon_port,
            "rcon.password": rcon_password,
        })
        logger.info("[Installer] Instance %s configured: port=%d rcon=%d memory=%s",
                    instance.id, game_port, rcon_port, ram)


_pipeline: Optional[InstallationPipeline] = None


def get_installation_pipeline() -> InstallationPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = InstallationPipeline()
    return _pipeline
