import asyncio
from datetime import datetime

import pytest

from mcfleet.services import scheduled_tasks
from mcfleet.services.instance_store import Instance
from mcfleet.services.scheduled_tasks import MAINTENANCE_COMMANDS, TaskScheduler, parse_clock, seconds_until


class _FakeRcon:
    def __init__(self, configured=True):
        self.configured = configured

    def instance_is_configured(self, instance):
        return self.configured


class _FakeSupervisor:
    def __init__(self, running=True, configured=True):
        self.running = running
        self.rcon = _FakeRcon(configured)
        self.commands = []
        self.status_requests = []

    async def is_running_async(self, instance_id):
        return self.running

    async def send_command(self, instance_id, command):
        self.commands.append(command)
        return True

    async def get_server_status_async(self, instance_id):
        self.status_requests.append(instance_id)
        return {"instance_id": instance_id}


class _FakeHub:
    def __init__(self, subscribers=None):
        self.subscribers = subscribers or {}
        self.published = []

    def has_any_subscribers(self):
        return any(self.subscribers.values())

    def subscriber_count(self, channel_id):
        return self.subscribers.get(channel_id, 0)

    def total_subscribers(self):
        return sum(self.subscribers.values())

    async def publish(self, channel_id, event_type, data):
        self.published.append((channel_id, event_type, data))
        return 1

    async def publish_console(self, channel_id, message):
        self.published.append((channel_id, "console", message.message))
        return 1


class _FakeStore:
    def __init__(self, instances):
        self.instances = instances

    def list_all(self):
        return list(self.instances)


def _scheduler(tmp_path, supervisor=None, hub=None):
    instances = [
        Instance(id=1, name="alpha", instance_path=str(tmp_path / "alpha")),
        Instance(id=2, name="beta", instance_path=str(tmp_path / "beta")),
    ]
    return TaskScheduler(
        supervisor=supervisor or _FakeSupervisor(),
        hub=hub or _FakeHub(),
        store=_FakeStore(instances),
    )


def test_seconds_until_later_today():
    now = datetime(2024, 5, 1, 2, 30, 0)
    assert seconds_until(3, 0, now) == 30 * 60


def test_seconds_until_rolls_to_tomorrow():
    now = datetime(2024, 5, 1, 3, 0, 0)
    assert seconds_until(3, 0, now) == 24 * 3600


@pytest.mark.parametrize("value,expected", [("03:00", (3, 0)), (" 23:59 ", (23, 59))])
def test_parse_clock(value, expected):
    assert parse_clock(value) == expected


def test_parse_clock_rejects_out_of_range():
    with pytest.raises(ValueError):
        parse_clock("24:00")


def test_status_broadcast_only_for_watched_instances(tmp_path):
    supervisor = _FakeSupervisor()
    hub = _FakeHub(subscribers={2: 1})
    scheduler = _scheduler(tmp_path, supervisor, hub)

    asyncio.run(scheduler.broadcast_statuses())

    assert supervisor.status_requests == [2]
    assert [(channel, event) for channel, event, _ in hub.published] == [(2, "status")]


def test_status_broadcast_skipped_without_viewers(tmp_path):
    supervisor = _FakeSupervisor()
    scheduler = _scheduler(tmp_path, supervisor, _FakeHub())

    asyncio.run(scheduler.broadcast_statuses())

    assert supervisor.status_requests == []


def test_daily_maintenance_sends_commands_and_prunes(tmp_path, monkeypatch):
    supervisor = _FakeSupervisor()
    pruned = []
    monkeypatch.setattr(scheduled_tasks.backups, "prune_backups",
                        lambda root, days: pruned.append(root) or 0)
    scheduler = _scheduler(tmp_path, supervisor)

    asyncio.run(scheduler.daily_maintenance())

    assert supervisor.commands == MAINTENANCE_COMMANDS * 2
    assert pruned == [tmp_path / "alpha", tmp_path / "beta"]


def test_backup_skips_offline_instance(tmp_path):
    supervisor = _FakeSupervisor(running=False)
    scheduler = _scheduler(tmp_path, supervisor)

    assert asyncio.run(scheduler.backup_instance(scheduler.store.instances[0])) is False
    assert supervisor.commands == []


def test_backup_runs_archive_and_reports(tmp_path, monkeypatch):
    supervisor = _FakeSupervisor()
    hub = _FakeHub()
    archives = []
    monkeypatch.setattr(scheduled_tasks.backups, "backup_world",
                        lambda root, timeout: archives.append(root) or root / "backups" / "x.tar.gz")
    scheduler = _scheduler(tmp_path, supervisor, hub)

    assert asyncio.run(scheduler.backup_instance(scheduler.store.instances[0])) is True

    assert archives == [tmp_path / "alpha"]
    assert supervisor.commands == ["say Starting scheduled world backup...", "save-all", "say Backup completed!"]
    assert (1, "console", "[SYSTEM] Scheduled world backup completed successfully") in hub.published


def test_failing_job_does_not_stop_the_loop(monkeypatch):
    calls = []

    async def _job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) == 3:
            raise asyncio.CancelledError()

    async def _run():
        scheduler = TaskScheduler(supervisor=_FakeSupervisor(), hub=_FakeHub(), store=_FakeStore([]))
        with pytest.raises(asyncio.CancelledError):
            await scheduler._every(0, _job, "test")

    asyncio.run(_run())

    assert len(calls) == 3
