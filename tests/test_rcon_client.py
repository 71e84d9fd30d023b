import asyncio
import socket
import struct
import threading
import time
from contextlib import contextmanager

import pytest

from mcfleet.core.errors import ProtocolFailure
from mcfleet.services import rcon
from mcfleet.services.instance_store import Instance
from mcfleet.services.rcon import RconClient, parse_player_list, parse_seed, parse_tps, parse_version


class _FakeStore:
    def __init__(self, instance):
        self.instance = instance

    def find(self, instance_id):
        return self.instance if self.instance and self.instance.id == instance_id else None

    def get(self, instance_id):
        return self.instance


class _FakeConnection:
    """Connection whose behaviour is scripted per attempt."""

    def __init__(self, script, calls):
        self.script = script
        self.calls = calls

    def __enter__(self):
        outcome = self.script.pop(0)
        self.calls.append(outcome)
        if isinstance(outcome, Exception):
            raise outcome
        self.response = outcome
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def send_command(self, command):
        return self.response


def _configured_instance():
    return Instance(id=1, name="alpha", rcon_enabled=True, rcon_port=25700, rcon_password="secret")


def _client(instance, script, calls, sleeps, monkeypatch, **kwargs):
    monkeypatch.setattr(rcon.time, "sleep", lambda seconds: sleeps.append(seconds))
    return RconClient(
        store=_FakeStore(instance),
        connection_factory=lambda host, port, password, timeout: _FakeConnection(script, calls),
        retry_delay=1.0,
        **kwargs,
    )


def test_success_on_first_attempt(monkeypatch):
    calls, sleeps = [], []
    client = _client(_configured_instance(), ["There are 0 of a max of 20 players online:"], calls, sleeps, monkeypatch)

    assert client.execute(1, "list").startswith("There are 0")
    assert len(calls) == 1
    assert sleeps == []


def test_retries_then_succeeds(monkeypatch):
    calls, sleeps = [], []
    script = [ConnectionRefusedError("down"), ProtocolFailure("bad auth"), "ok"]
    client = _client(_configured_instance(), script, calls, sleeps, monkeypatch)

    assert client.execute(1, "list") == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 1.0]


def test_all_attempts_fail_returns_none(monkeypatch):
    calls, sleeps = [], []
    script = [OSError("x"), OSError("y"), OSError("z")]
    client = _client(_configured_instance(), script, calls, sleeps, monkeypatch)

    assert client.execute(1, "list") is None
    assert len(calls) == 3
    # No delay after the final attempt
    assert sleeps == [1.0, 1.0]


def test_unconfigured_instance_fails_fast(monkeypatch):
    calls, sleeps = [], []
    instance = Instance(id=1, name="alpha", rcon_enabled=True, rcon_port=25700, rcon_password="")
    client = _client(instance, ["never"], calls, sleeps, monkeypatch)

    assert client.execute(1, "list") is None
    assert calls == []
    assert client.is_configured(1) is False


def test_async_execute_uses_same_retry_path(monkeypatch):
    calls, sleeps = [], []
    client = _client(_configured_instance(), [OSError("x"), "pong"], calls, sleeps, monkeypatch)

    assert asyncio.run(client.execute_async(1, "list")) == "pong"
    assert len(calls) == 2


def test_parse_player_list():
    online, max_players, names = parse_player_list(
        "There are 2 of a max of 20 players online: Steve, Alex"
    )
    assert (online, max_players, names) == (2, 20, ["Steve", "Alex"])


def test_parse_player_list_empty():
    assert parse_player_list("There are 0 of a max of 10 players online:") == (0, 10, [])


@pytest.mark.parametrize("text,expected", [
    ("TPS from last 1m, 5m, 15m: 19.98, 20.0, *20.0", 19.98),
    ("Stopped tick profiling after 3.00 seconds and 60 ticks (20.00 tick(s) per second)", 20.0),
    ("Unknown command", None),
])
def test_parse_tps(text, expected):
    assert parse_tps(text) == expected


def test_parse_seed_and_version():
    assert parse_seed("Seed: [-123456789]") == "-123456789"
    assert parse_version("This server is running Paper version 1.21.1-119 (MC: 1.21.1)") == "Paper 1.21.1"


def _recv_exact(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            raise ConnectionError("client went away")
        data += chunk
    return data


def _read_frame(conn):
    length = struct.unpack("<i", _recv_exact(conn, 4))[0]
    data = _recv_exact(conn, length)
    request_id, packet_type = struct.unpack("<ii", data[:8])
    return request_id, packet_type, data[8:-2].decode("utf-8")


def _frame(request_id, packet_type, payload=""):
    body = struct.pack("<ii", request_id, packet_type) + payload.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(body)) + body


@contextmanager
def _rcon_server(handler):
    """Local listener that hands the first accepted socket to `handler`."""
    received = []
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)

    def _serve():
        conn, _ = listener.accept()
        with conn:
            try:
                handler(conn, received)
            except ConnectionError:
                pass

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    try:
        yield listener.getsockname()[1], received
    finally:
        thread.join(timeout=2)
        listener.close()


def _accept_auth(conn, received):
    request_id, packet_type, payload = _read_frame(conn)
    received.append((request_id, packet_type, payload))
    conn.sendall(_frame(request_id, 0))
    conn.sendall(_frame(request_id, 2))


def test_connection_authenticates_and_reads_split_reply():
    def _handler(conn, received):
        _accept_auth(conn, received)
        received.append(_read_frame(conn))
        reply = _frame(received[-1][0], 0, "There are 0 of a max of 20 players online:")
        conn.sendall(reply[:6])
        time.sleep(0.05)
        conn.sendall(reply[6:])

    with _rcon_server(_handler) as (port, received):
        with rcon.RCONConnection("127.0.0.1", port, "secret", timeout=2.0) as conn:
            response = conn.send_command("list")

    assert response == "There are 0 of a max of 20 players online:"
    assert received == [(1, 3, "secret"), (2, 2, "list")]


def test_connection_rejects_bad_password():
    def _handler(conn, received):
        received.append(_read_frame(conn))
        conn.sendall(_frame(-1, 2))

    with _rcon_server(_handler) as (port, received):
        with pytest.raises(ProtocolFailure, match="authentication failed"):
            with rcon.RCONConnection("127.0.0.1", port, "wrong", timeout=2.0):
                pass

    assert received == [(1, 3, "wrong")]


def test_connection_accepts_full_size_fragment():
    payload = "a" * rcon.RCONConnection.MAX_PAYLOAD_SIZE

    def _handler(conn, received):
        _accept_auth(conn, received)
        request_id, _, _ = _read_frame(conn)
        conn.sendall(_frame(request_id, 0, payload))

    with _rcon_server(_handler) as (port, _):
        with rcon.RCONConnection("127.0.0.1", port, "secret", timeout=2.0) as conn:
            assert conn.send_command("help") == payload


def test_connection_rejects_out_of_bounds_length():
    def _handler(conn, received):
        _read_frame(conn)
        conn.sendall(struct.pack("<i", 5))

    with _rcon_server(_handler) as (port, _):
        with pytest.raises(ProtocolFailure, match="out of bounds"):
            with rcon.RCONConnection("127.0.0.1", port, "secret", timeout=2.0):
                pass
