# mcfleet/services/scheduled_tasks.py
"""
Background jobs for all instances.

Interval loops (status/system broadcasts, player and TPS refresh, resource
alerts, reconciliation) plus two daily jobs (maintenance and world backup).
Every loop isolates failures per iteration and per instance so one broken
server never stalls the others.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from mcfleet.core.config import (
    BACKUP_RETENTION_DAYS,
    BACKUP_TIMEOUT_SECONDS,
    HEALTH_CHECK_INTERVAL,
    MAINTENANCE_TIME,
    NIGHTLY_BACKUP_TIME,
    PLAYER_LIST_INTERVAL,
    RESOURCE_CHECK_INTERVAL,
    STATUS_BROADCAST_INTERVAL,
    SYSTEM_STATS_INTERVAL,
    TPS_SAMPLE_INTERVAL,
)
from mcfleet.services import backups, game_commands, system_monitor
from mcfleet.services.broadcast import EVENT_STATUS, EVENT_SYSTEM_STATS, SYSTEM_CHANNEL, BroadcastHub, get_broadcast_hub
from mcfleet.services.console import ConsoleMessage
from mcfleet.services.instance_store import Instance, InstanceStore, get_instance_store
from mcfleet.services.supervisor import ServerSupervisor, get_supervisor

logger = logging.getLogger(__name__)

MAINTENANCE_COMMANDS = [
    game_commands.save_all(),
    "kill @e[type=minecraft:item]",
    game_commands.weather("clear"),
    game_commands.set_time("day"),
]


def parse_clock(value: str) -> tuple:
    """'03:00' -> (3, 0)"""
    hour, minute = value.strip().split(":", 1)
    hour, minute = int(hour), int(minute)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid time of day: {value}")
    return hour, minute


def seconds_until(hour: int, minute: int, now: Optional[datetime] = None) -> float:
    """Seconds from now until the next HH:MM (tomorrow if already passed)."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class TaskScheduler:
    def __init__(
        self,
        supervisor: Optional[ServerSupervisor] = None,
        hub: Optional[BroadcastHub] = None,
        store: Optional[InstanceStore] = None,
    ):
        self.supervisor = supervisor or get_supervisor()
        self.hub = hub or get_broadcast_hub()
        self.store = store or get_instance_store()
        self._tasks: List[asyncio.Task] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._tasks:
            return
        maintenance = parse_clock(MAINTENANCE_TIME)
        backup = parse_clock(NIGHTLY_BACKUP_TIME)
        self._tasks = [
            asyncio.create_task(self._every(STATUS_BROADCAST_INTERVAL, self.broadcast_statuses, "status")),
            asyncio.create_task(self._every(SYSTEM_STATS_INTERVAL, self.broadcast_system_stats, "system stats")),
            asyncio.create_task(self._every(PLAYER_LIST_INTERVAL, self.refresh_player_lists, "players")),
            asyncio.create_task(self._every(TPS_SAMPLE_INTERVAL, self.sample_tps, "tps")),
            asyncio.create_task(self._every(RESOURCE_CHECK_INTERVAL, self.check_resources, "resources")),
            asyncio.create_task(self._every(HEALTH_CHECK_INTERVAL, self.supervisor.reconcile, "reconcile")),
            asyncio.create_task(self._daily(maintenance, self.daily_maintenance, "maintenance")),
            asyncio.create_task(self._daily(backup, self.nightly_backup, "backup")),
        ]
        logger.info("[Scheduler] Started %d background jobs", len(self._tasks))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Scheduler] Stopped")

    async def _every(self, interval: float, job, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("[Scheduler] Error in %s job", name, exc_info=True)

    async def _daily(self, clock: tuple, job, name: str) -> None:
        while True:
            await asyncio.sleep(seconds_until(*clock))
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("[Scheduler] Error in %s job", name, exc_info=True)
            # Step past the trigger minute so a fast job doesn't run twice
            await asyncio.sleep(60)

    async def _instances(self) -> List[Instance]:
        return await asyncio.to_thread(self.store.list_all)

    async def _live_rcon_instances(self) -> List[Instance]:
        live = []
        for instance in await self._instances():
            if (await self.supervisor.is_running_async(instance.id)
                    and self.supervisor.rcon.instance_is_configured(instance)):
                live.append(instance)
        return live

    # =========================================================================
    # Interval jobs
    # =========================================================================

    async def broadcast_statuses(self) -> None:
        if not self.hub.has_any_subscribers():
            return
        for instance in await self._instances():
            if not self.hub.subscriber_count(instance.id):
                continue
            try:
                status = await self.supervisor.get_server_status_async(instance.id)
                await self.hub.publish(instance.id, EVENT_STATUS, status)
            except Exception:
                logger.error("[Scheduler] Status broadcast failed for instance %s", instance.id, exc_info=True)

    async def broadcast_system_stats(self) -> None:
        if not self.hub.subscriber_count(SYSTEM_CHANNEL):
            return
        stats = await asyncio.to_thread(system_monitor.get_system_stats)
        payload = stats.to_dict()
        payload["active_websocket_sessions"] = self.hub.total_subscribers()
        await self.hub.publish(SYSTEM_CHANNEL, EVENT_SYSTEM_STATS, payload)

    async def refresh_player_lists(self) -> None:
        for instance in await self._live_rcon_instances():
            try:
                await asyncio.to_thread(self.supervisor.update_player_list, instance.id)
            except Exception:
                logger.debug("[Scheduler] Player list refresh failed for instance %s", instance.id, exc_info=True)

    async def sample_tps(self) -> None:
        for instance in await self._live_rcon_instances():
            try:
                await self.supervisor.sample_tps(instance.id)
            except Exception:
                logger.debug("[Scheduler] TPS sampling failed for instance %s", instance.id, exc_info=True)

    async def check_resources(self) -> None:
        stats = await asyncio.to_thread(system_monitor.get_system_stats)
        if not system_monitor.is_high_resource_usage(stats):
            return

        alert = system_monitor.describe_pressure(stats)
        logger.warning("[Scheduler] %s", alert)
        for instance in await self._instances():
            try:
                await self.hub.publish_console(instance.id, ConsoleMessage.warning(f"[SYSTEM] {alert}"))
                if (await self.supervisor.is_running_async(instance.id)
                        and self.supervisor.rcon.instance_is_configured(instance)):
                    await self.supervisor.send_command(
                        instance.id, game_commands.say("Server resources are running high. Please be patient.")
                    )
            except Exception:
                logger.error("[Scheduler] Resource alert failed for instance %s", instance.id, exc_info=True)

    # =========================================================================
    # Daily jobs
    # =========================================================================

    async def daily_maintenance(self) -> None:
        for instance in await self._instances():
            try:
                logger.info("[Scheduler] Daily maintenance for instance %s", instance.id)
                if (await self.supervisor.is_running_async(instance.id)
                        and self.supervisor.rcon.instance_is_configured(instance)):
                    for command in MAINTENANCE_COMMANDS:
                        await self.supervisor.send_command(instance.id, command)
                removed = await asyncio.to_thread(backups.prune_backups, instance.root, BACKUP_RETENTION_DAYS)
                if removed:
                    logger.info("[Scheduler] Pruned %d old backups for instance %s", removed, instance.id)
            except Exception:
                logger.error("[Scheduler] Daily maintenance failed for instance %s", instance.id, exc_info=True)

    async def nightly_backup(self) -> None:
        for instance in await self._instances():
            try:
                await self.backup_instance(instance)
            except Exception:
                logger.error("[Scheduler] Scheduled backup failed for instance %s", instance.id, exc_info=True)

    async def backup_instance(self, instance: Instance) -> bool:
        """Announce, flush and archive one running instance's world."""
        if not await self.supervisor.is_running_async(instance.id):
            logger.info("[Scheduler] Skipping scheduled backup for instance %s - server is offline", instance.id)
            return False
        if not self.supervisor.rcon.instance_is_configured(instance):
            logger.info("[Scheduler] Skipping scheduled backup for instance %s - RCON not configured", instance.id)
            return False

        await self.supervisor.send_command(instance.id, game_commands.say("Starting scheduled world backup..."))
        success = await self.supervisor.send_command(instance.id, game_commands.save_all())
        if success:
            try:
                archive = await asyncio.to_thread(backups.backup_world, instance.root, BACKUP_TIMEOUT_SECONDS)
                logger.info("[Scheduler] Backup for instance %s written to %s", instance.id, archive)
            except Exception as e:
                logger.error("[Scheduler] Backup for instance %s failed: %s", instance.id, e)
                success = False

        message = "Scheduled world backup completed successfully" if success else "Scheduled world backup failed"
        await self.hub.publish_console(instance.id, ConsoleMessage.info(f"[SYSTEM] {message}"))
        await self.supervisor.send_command(
            instance.id,
            game_commands.say("Backup completed!" if success else "Backup failed - contact admin"),
        )
        return success


_scheduler: Optional[TaskScheduler] = None


def get_task_scheduler() -> TaskScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = TaskScheduler()
    return _scheduler


async def start_scheduler():
    """Start all background jobs."""
    get_task_scheduler().start()


async def stop_scheduler():
    """Stop all background jobs."""
    if _scheduler is not None:
        await _scheduler.stop()
