import pytest
import yaml

from mcfleet.services import installer as installer_module
from mcfleet.services import port_allocator
from mcfleet.services.installer import InstallationPipeline, parse_ram, substitute_placeholders
from mcfleet.services.instance_store import Instance, InstallationStatus, InstanceStore
from mcfleet.services.port_allocator import PortAllocator
from mcfleet.services.server_properties import read_properties
from mcfleet.services.templates import TemplateCatalog


class _FakeRuntime:
    def __init__(self):
        self.requirements = []

    def ensure_available(self, requirement):
        self.requirements.append(requirement)
        return "/opt/java/bin/java"


class _FakeHub:
    def __init__(self):
        self.console = []
        self.events = []

    def publish_console_threadsafe(self, channel_id, message):
        self.console.append((channel_id, message.message))

    def publish_threadsafe(self, channel_id, event_type, data):
        self.events.append((channel_id, event_type, data))


def _catalog(tmp_path):
    path = tmp_path / "templates.yml"
    path.write_text(yaml.safe_dump({"templates": [{
        "id": "paper-1.21",
        "name": "Paper 1.21",
        "download_url": "https://example.invalid/paper.jar",
        "system_requirements": "Java 21",
        "hardware_requirements": "4GB+ RAM",
        "installation_steps": [
            {"type": "DOWNLOAD", "command": "{downloadUrl}"},
            {"type": "RUN", "command": "java -Xmx{ram} -jar {jar} --initSettings"},
        ],
    }]}), encoding="utf-8")
    return TemplateCatalog(path)


@pytest.fixture
def pipeline(tmp_path, monkeypatch):
    monkeypatch.setattr(port_allocator, "is_port_bindable", lambda port, host="": True)
    store = InstanceStore(tmp_path / "instances.db")
    downloads = []

    def _download(url, dest):
        downloads.append(url)
        dest.write_bytes(b"jar")
        return dest

    pipe = InstallationPipeline(
        store=store,
        catalog=_catalog(tmp_path),
        ports=PortAllocator(store, game_range=(25565, 25600), rcon_range=(25700, 25750)),
        runtime=_FakeRuntime(),
        hub=_FakeHub(),
        downloader=_download,
    )
    pipe.downloads = downloads
    pipe.commands = []

    def _first_boot(instance, java_path):
        (instance.root / "logs").mkdir(exist_ok=True)
        (instance.root / "world").mkdir(exist_ok=True)
        (instance.root / "server.properties").write_text("motd=Fresh\nserver-port=25565\n", encoding="utf-8")

    monkeypatch.setattr(pipe, "_first_boot", _first_boot)
    return pipe


def _new_instance(pipe, tmp_path):
    return pipe.store.save(Instance(
        name="alpha",
        instance_path=str(tmp_path / "servers" / "alpha"),
        template_id="paper-1.21",
    ))


def test_successful_install_ends_stopped_with_credentials(pipeline, tmp_path, monkeypatch):
    monkeypatch.setattr(pipeline, "_run_command", lambda instance_id, args, cwd: pipeline.commands.append(args) or 0)
    instance = _new_instance(pipeline, tmp_path)

    assert pipeline.install(instance.id) is True

    record = pipeline.store.get(instance.id)
    assert record.status == InstallationStatus.STOPPED
    assert record.port == 25565
    assert record.rcon_port == 25700
    assert record.rcon_enabled is True
    assert len(record.rcon_password) == 16
    assert record.allocated_memory == "4G"
    assert record.java_path == "/opt/java/bin/java"

    props = read_properties(record.root)
    assert props["server-port"] == "25565"
    assert props["enable-rcon"] == "true"
    assert props["rcon.password"] == record.rcon_password
    assert props["motd"] == "Fresh"
    assert (record.root / "eula.txt").read_text(encoding="utf-8").strip() == "eula=true"


def test_run_step_placeholders_and_java_substitution(pipeline, tmp_path, monkeypatch):
    monkeypatch.setattr(pipeline, "_run_command", lambda instance_id, args, cwd: pipeline.commands.append(args) or 0)
    instance = _new_instance(pipeline, tmp_path)

    pipeline.install(instance.id)

    assert pipeline.downloads == ["https://example.invalid/paper.jar"]
    assert pipeline.commands == [["/opt/java/bin/java", "-Xmx4G", "-jar", "server.jar", "--initSettings"]]
    assert pipeline.runtime.requirements == ["Java 21"]


def test_failed_step_marks_installation_failed(pipeline, tmp_path, monkeypatch):
    monkeypatch.setattr(pipeline, "_run_command", lambda instance_id, args, cwd: 3)
    instance = _new_instance(pipeline, tmp_path)

    assert pipeline.install(instance.id) is False

    record = pipeline.store.get(instance.id)
    assert record.status == InstallationStatus.INSTALLATION_FAILED
    assert "exit code: 3" in record.status_message
    assert record.port is None
    assert any("[ERROR]" in text for _, text in pipeline.hub.console)


def test_progress_goes_to_instance_and_installation_channels(pipeline, tmp_path, monkeypatch):
    monkeypatch.setattr(pipeline, "_run_command", lambda instance_id, args, cwd: 0)
    instance = _new_instance(pipeline, tmp_path)

    pipeline.install(instance.id)

    channels = {channel for channel, _ in pipeline.hub.console}
    assert channels == {instance.id, installer_module.INSTALLATION_CHANNEL}
    statuses = [data["status"] for channel, _, data in pipeline.hub.events if channel == instance.id]
    assert statuses[0] == "DOWNLOADING"
    assert statuses[-1] == "STOPPED"


def test_second_install_for_same_instance_is_refused(pipeline, tmp_path):
    instance = _new_instance(pipeline, tmp_path)
    pipeline._claim(instance.id)
    try:
        with pytest.raises(installer_module.ManagerError):
            pipeline.install(instance.id)
    finally:
        pipeline._release(instance.id)
    assert pipeline.is_installing(instance.id) is False


class _LiveProcess:
    def __init__(self):
        self.killed = False

    def poll(self):
        return 0 if self.killed else None

    def kill(self):
        self.killed = True


def test_cancel_all_kills_running_installer_processes(pipeline):
    running, finished = _LiveProcess(), _LiveProcess()
    finished.killed = True
    pipeline._processes.update({1: running, 2: finished})

    pipeline.cancel_all()

    assert running.killed is True


@pytest.mark.parametrize("requirement,expected", [
    ("4GB+ RAM", "4G"),
    ("512MB RAM minimum", "512M"),
    ("lots of memory", "2G"),
    (None, "2G"),
])
def test_parse_ram(requirement, expected):
    assert parse_ram(requirement) == expected


def test_substitute_placeholders_leaves_unknown_tokens():
    assert substitute_placeholders("java -Xmx{ram} {other}", {"{ram}": "2G"}) == "java -Xmx2G {other}"
