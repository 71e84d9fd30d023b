import asyncio
import sys
from datetime import datetime, timedelta

import pytest

from mcfleet.core.errors import ManagerError, NotConfigured, NotRunning
from mcfleet.services import supervisor as supervisor_module
from mcfleet.services.console import ConsoleHistory
from mcfleet.services.instance_store import Instance, InstallationStatus, InstanceStore
from mcfleet.services.supervisor import ServerSupervisor, format_uptime, jar_name_from_url
from mcfleet.services.templates import ServerTemplate


class _FakeRcon:
    def __init__(self):
        self.commands = []

    def is_configured(self, instance_id):
        return False

    def execute(self, instance_id, command):
        self.commands.append(command)
        return None

    async def execute_async(self, instance_id, command):
        return self.execute(instance_id, command)

    def execute_parsed(self, instance_id, command, parser):
        return None

    async def test_connection_async(self, instance_id):
        return False

    def connection_info(self, instance_id):
        return {}


class _FakeLogMonitor:
    def __init__(self):
        self.history = ConsoleHistory(capacity=10)
        self.watching = set()

    def start_monitoring(self, instance_id):
        self.watching.add(instance_id)
        return True

    def stop_monitoring(self, instance_id):
        self.watching.discard(instance_id)

    def is_monitoring(self, instance_id):
        return instance_id in self.watching


class _FakeHub:
    def __init__(self):
        self.messages = []

    async def publish_console(self, channel_id, message):
        self.messages.append((channel_id, message.message))
        return 1

    async def publish(self, channel_id, event_type, data):
        return 1


class _FakeCatalog:
    def get(self, template_id):
        return ServerTemplate(
            id=template_id,
            name="Paper",
            download_url="https://example.invalid/builds/paper-1.21.1.jar",
            type="paper",
            version="1.21.1",
        )


@pytest.fixture
def supervisor(tmp_path, monkeypatch):
    monkeypatch.setattr(supervisor_module, "SERVERS_DIR", tmp_path / "servers")
    sup = ServerSupervisor(
        store=InstanceStore(tmp_path / "instances.db"),
        rcon=_FakeRcon(),
        hub=_FakeHub(),
        log_monitor=_FakeLogMonitor(),
        catalog=_FakeCatalog(),
        stop_grace=0.5,
        terminate_wait=5,
    )
    monkeypatch.setattr(sup, "build_launch_command",
                        lambda instance: [sys.executable, "-c", "import time; time.sleep(30)"])
    return sup


def _installed(sup, tmp_path, status=InstallationStatus.STOPPED):
    root = tmp_path / "servers" / "alpha"
    root.mkdir(parents=True)
    return sup.store.save(Instance(name="alpha", instance_path=str(root), status=status))


def _messages(sup):
    return [text for _, text in sup.hub.messages]


def test_start_then_stop_clears_pid(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    async def _scenario():
        assert await supervisor.start(instance.id) is True
        assert supervisor.is_running(instance.id) is True
        assert supervisor.log_monitor.is_monitoring(instance.id)
        assert await supervisor.stop(instance.id) is True

    try:
        asyncio.run(_scenario())
    finally:
        proc = supervisor.runtime(instance.id).process
        if proc is not None and proc.poll() is None:
            proc.kill()

    record = supervisor.store.get(instance.id)
    assert record.pid is None
    assert record.status == InstallationStatus.STOPPED
    assert supervisor.is_running(instance.id) is False
    assert not supervisor.log_monitor.is_monitoring(instance.id)


def test_stop_when_already_stopped_succeeds(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    assert asyncio.run(supervisor.stop(instance.id)) is True
    assert supervisor.store.get(instance.id).pid is None


def test_start_refused_before_installation(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path, status=InstallationStatus.PENDING_INSTALLATION)

    assert asyncio.run(supervisor.start(instance.id)) is False
    assert supervisor.store.get(instance.id).pid is None
    assert any("Cannot start server" in text for text in _messages(supervisor))


def test_stale_pid_is_cleared(supervisor, tmp_path, monkeypatch):
    instance = _installed(supervisor, tmp_path)
    supervisor.store.update(instance.id, pid=4242424)
    monkeypatch.setattr(supervisor, "_pid_alive", lambda inst: False)

    assert supervisor.is_running(instance.id) is False
    assert supervisor.store.get(instance.id).pid is None


def test_execute_command_on_stopped_server_returns_none(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    assert asyncio.run(supervisor.execute_command(instance.id, "list")) is None
    assert supervisor.rcon.commands == []


def test_run_command_on_stopped_server_raises_not_running(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    with pytest.raises(NotRunning):
        asyncio.run(supervisor.run_command(instance.id, "list"))
    assert supervisor.rcon.commands == []


def test_run_command_without_rcon_raises_not_configured(supervisor, tmp_path, monkeypatch):
    instance = _installed(supervisor, tmp_path)
    monkeypatch.setattr(supervisor, "is_running", lambda instance_id: True)

    with pytest.raises(NotConfigured):
        asyncio.run(supervisor.run_command(instance.id, "list"))
    assert supervisor.rcon.commands == []


def test_reconcile_reports_start_and_crash(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    async def _scenario():
        await supervisor.start(instance.id)
        await supervisor.reconcile()
        assert "[SYSTEM] Server has started" in _messages(supervisor)

        proc = supervisor.runtime(instance.id).process
        proc.kill()
        proc.wait()
        await supervisor.reconcile()

    asyncio.run(_scenario())

    assert "[SYSTEM] Server appears to have stopped unexpectedly" in _messages(supervisor)
    record = supervisor.store.get(instance.id)
    assert record.status == InstallationStatus.STOPPED
    assert record.status_message == "Server stopped unexpectedly"
    assert record.pid is None


def test_status_of_stopped_instance(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)

    status = supervisor.get_server_status(instance.id)

    assert status.online is False
    assert status.players_online == 0
    assert status.name == "alpha"
    assert status.status == "STOPPED"


def test_create_instance_uses_template(supervisor, tmp_path):
    instance = supervisor.create_instance("lobby", "paper-1.21")

    assert instance.id is not None
    assert instance.jar_file_name == "paper-1.21.1.jar"
    assert instance.status == InstallationStatus.PENDING_INSTALLATION
    assert instance.port is None
    assert instance.root == tmp_path / "servers" / "lobby"


def test_create_instance_rejects_duplicate_and_bad_names(supervisor):
    supervisor.create_instance("lobby", "paper-1.21")

    with pytest.raises(ManagerError):
        supervisor.create_instance("lobby", "paper-1.21")
    with pytest.raises(ValueError):
        supervisor.create_instance("../escape", "paper-1.21")


def test_delete_instance_removes_files_and_record(supervisor, tmp_path):
    instance = _installed(supervisor, tmp_path)
    (instance.root / "server.properties").write_text("motd=x\n", encoding="utf-8")

    assert asyncio.run(supervisor.delete_instance(instance.id)) is True

    assert not instance.root.exists()
    assert supervisor.store.find(instance.id) is None


def test_format_uptime():
    now = datetime(2024, 1, 1, 12, 0)
    assert format_uptime(None) == "0m"
    assert format_uptime(now - timedelta(minutes=5), now) == "5m"
    assert format_uptime(now - timedelta(hours=2, minutes=3), now) == "2h 3m"
    assert format_uptime(now - timedelta(days=1, hours=1), now) == "1d 1h 0m"


def test_jar_name_from_url():
    assert jar_name_from_url("https://example.invalid/a/b/server-1.jar?x=1") == "server-1.jar"
    assert jar_name_from_url("") == "server.jar"
