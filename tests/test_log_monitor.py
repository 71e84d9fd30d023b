from datetime import datetime
from pathlib import Path

from mcfleet.services.console import ConsoleHistory, ConsoleMessage, MessageType
from mcfleet.services.instance_store import Instance
from mcfleet.services.log_monitor import LogMonitor, _LogWatch, parse_log_line


class _FakeStore:
    def __init__(self, instance):
        self.instance = instance

    def get(self, instance_id):
        return self.instance


class _FakeHub:
    def __init__(self, subscribers=False):
        self.subscribers = subscribers
        self.published = []

    def has_any_subscribers(self):
        return self.subscribers

    def publish_console_threadsafe(self, channel_id, message):
        self.published.append((channel_id, message))


def _monitor(tmp_path, subscribers=False):
    instance = Instance(id=1, name="alpha", instance_path=str(tmp_path))
    return LogMonitor(store=_FakeStore(instance), history=ConsoleHistory(capacity=10), hub=_FakeHub(subscribers))


# ==========================================
# Line classification
# ==========================================

def test_player_join_line():
    message = parse_log_line("[12:34:56] [Server thread/INFO]: Steve joined the game")

    assert message.type == MessageType.PLAYER_JOIN
    assert "Steve joined the game" in message.message
    assert (message.timestamp.hour, message.timestamp.minute, message.timestamp.second) == (12, 34, 56)


def test_player_leave_line():
    message = parse_log_line("[12:35:00] [Server thread/INFO]: Alex left the game")

    assert message.type == MessageType.PLAYER_LEAVE
    assert message.message.endswith("Alex left the game")


def test_warning_line():
    message = parse_log_line("[12:34:56] [Server thread/WARN]: Can't keep up!")

    assert message.type == MessageType.WARNING
    assert message.message == "Can't keep up!"


def test_error_line_keeps_line_timestamp():
    message = parse_log_line("[01:02:03] [Server thread/ERROR]: Exception ticking world")

    assert message.type == MessageType.ERROR
    assert message.message == "Exception ticking world"
    assert message.timestamp.hour == 1


def test_plain_info_uses_receive_time():
    before = datetime.now().replace(microsecond=0)
    message = parse_log_line("[00:00:01] [Server thread/INFO]: Preparing spawn area: 42%")

    assert message.type == MessageType.INFO
    assert message.message == "Preparing spawn area: 42%"
    assert message.timestamp >= before


def test_unmarked_line_is_raw():
    message = parse_log_line("\tat net.minecraft.server.Main.main(Main.java:42)")

    assert message.type == MessageType.RAW
    assert "Main.java:42" in message.message


def test_noise_and_blank_lines_are_dropped():
    assert parse_log_line("[12:00:00] [RCON Listener #1/INFO]: Thread RCON Client /127.0.0.1 started") is None
    assert parse_log_line("[12:00:00] [Server thread/INFO]: RCON running on 0.0.0.0:25575") is None
    assert parse_log_line("   ") is None


def test_color_codes_are_stripped():
    message = parse_log_line("[12:00:00] [Server thread/INFO]: §aHello §lworld")

    assert message.message == "Hello world"


# ==========================================
# History + tailing
# ==========================================

def test_noise_line_leaves_history_unchanged(tmp_path):
    monitor = _monitor(tmp_path)
    monitor.process_line(1, "[12:00:00] [Server thread/INFO]: Done (3.2s)! For help, type \"help\"")
    size = monitor.history.size(1)

    assert monitor.process_line(1, "[12:00:01] [RCON Listener #2/INFO]: Thread RCON Client /127.0.0.1 shutting down") is None
    assert monitor.history.size(1) == size


def test_history_evicts_oldest_first():
    history = ConsoleHistory(capacity=3)
    for i in range(4):
        history.append(1, ConsoleMessage.info(f"line {i}"))

    assert [m.message for m in history.all(1)] == ["line 1", "line 2", "line 3"]


def test_messages_only_broadcast_when_someone_listens(tmp_path):
    quiet = _monitor(tmp_path, subscribers=False)
    quiet.process_line(1, "[12:00:00] [Server thread/WARN]: Can't keep up!")
    assert quiet.hub.published == []

    busy = _monitor(tmp_path, subscribers=True)
    busy.process_line(1, "[12:00:00] [Server thread/WARN]: Can't keep up!")
    assert [channel for channel, _ in busy.hub.published] == [1]


def _write(path: Path, text: str, mode="a"):
    with open(path, mode, encoding="utf-8") as f:
        f.write(text)


def test_reads_only_complete_appended_lines(tmp_path):
    log = tmp_path / "latest.log"
    _write(log, "[12:00:00] [Server thread/INFO]: old line\n", mode="w")
    monitor = _monitor(tmp_path)
    stat = log.stat()
    watch = _LogWatch(instance_id=1, path=log, offset=stat.st_size, inode=stat.st_ino)

    _write(log, "[12:00:01] [Server thread/WARN]: first\n[12:00:02] [Server thread/WARN]: partial")
    messages = monitor._read_new_lines(watch)
    assert [m.message for m in messages] == ["first"]

    _write(log, " line\n")
    messages = monitor._read_new_lines(watch)
    assert [m.message for m in messages] == ["partial line"]
    assert watch.offset == log.stat().st_size


def test_truncated_log_is_read_from_start(tmp_path):
    log = tmp_path / "latest.log"
    _write(log, "[12:00:00] [Server thread/INFO]: " + "x" * 200 + "\n", mode="w")
    monitor = _monitor(tmp_path)
    stat = log.stat()
    watch = _LogWatch(instance_id=1, path=log, offset=stat.st_size, inode=stat.st_ino)

    _write(log, "[12:00:05] [Server thread/WARN]: fresh log\n", mode="w")
    messages = monitor._read_new_lines(watch)

    assert [m.message for m in messages] == ["fresh log"]


def test_start_monitoring_missing_log_is_noop(tmp_path):
    monitor = _monitor(tmp_path)

    assert monitor.start_monitoring(1) is False
    assert monitor.is_monitoring(1) is False
    assert not (tmp_path / "logs" / "latest.log").exists()


def test_start_monitoring_seeds_history_and_stops(tmp_path):
    logs = tmp_path / "logs"
    logs.mkdir()
    _write(logs / "latest.log", "[12:00:00] [Server thread/WARN]: seeded\n", mode="w")
    monitor = _monitor(tmp_path)
    monitor.poll_interval = 0.05
    monitor.join_timeout = 2.0

    try:
        assert monitor.start_monitoring(1) is True
        assert monitor.is_monitoring(1) is True
        assert [m.message for m in monitor.get_console_history(1)] == ["seeded"]
    finally:
        monitor.stop_all()

    assert monitor.is_monitoring(1) is False
