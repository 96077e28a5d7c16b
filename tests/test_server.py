import io
import socket
import threading
import time

import pytest

from osprey.client import Client
from osprey.config import default_config
from osprey.protocol import Parser
from osprey.server import Server


def _config(data_dir):
    cfg = default_config()
    cfg.data_dir = str(data_dir)
    cfg.listen_addr = "127.0.0.1:0"
    cfg.sweep_interval_ms = 50
    return cfg


def _wait_for_address(server, configured):
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        address = server.get_address()
        if address != configured:
            return address
        time.sleep(0.01)
    raise AssertionError("server did not start listening")


def _launch(cfg):
    server = Server(cfg)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    return server, thread, _wait_for_address(server, cfg.listen_addr)


@pytest.fixture
def running(tmp_path):
    server, thread, address = _launch(_config(tmp_path / "data"))
    yield server, address
    server.shutdown()
    thread.join(5)


@pytest.fixture
def idle_server(tmp_path):
    server = Server(_config(tmp_path / "idle"))
    yield server
    server.shutdown()


def _run(server, raw):
    command = Parser(io.BytesIO(raw)).parse_command()
    out = io.BytesIO()
    server.process_command(command, out)
    return out.getvalue()


def _raw_exchange(address, data, expected_lines):
    host, _, port = address.rpartition(":")
    with socket.create_connection((host, int(port)), timeout=5) as sock:
        sock.sendall(data)
        reader = sock.makefile("rb")
        return [reader.readline() for _ in range(expected_lines)]


def test_basic_operations(running):
    _, address = running
    with Client(address) as client:
        client.ping()

        response = client.set("test_key", b"test_value")
        assert response.success
        assert response.version == 1

        response = client.get("test_key")
        assert response.success
        assert response.value == b"test_value"
        assert response.version == 1

        assert client.delete("test_key").success
        assert not client.get("test_key").success


def test_set_options(running):
    _, address = running
    with Client(address) as client:
        assert client.set("nx_key", b"value1", "NX").success
        assert not client.set("nx_key", b"value2", "NX").success
        assert client.set("nx_key", b"value3", "XX").success
        assert not client.set("nonexistent", b"value", "XX").success

        current = client.get("nx_key").version
        assert client.set("nx_key", b"value4", "VER", str(current)).success
        response = client.set("nx_key", b"value5", "VER", "999")
        assert not response.success
        assert response.error == "VER version mismatch"


def test_ttl(running):
    _, address = running
    with Client(address) as client:
        assert client.set("ttl_key", b"ttl_value", "EX", "1000").success

        ttl = client.ttl("ttl_key").ttl
        assert 0 < ttl <= 1000

        assert client.expire("ttl_key", 2000).success
        assert client.ttl("ttl_key").ttl > 1000

        assert client.ttl("nonexistent").ttl == -2


def test_incr_decr(running):
    _, address = running
    with Client(address) as client:
        response = client.incr("counter")
        assert response.success
        assert response.integer == 1

        response = client.incr("counter", 5)
        assert response.success
        assert response.integer == 6

        response = client.decr("counter", 2)
        assert response.success
        assert response.integer == 4

        client.set("text", b"hello")
        response = client.incr("text")
        assert not response.success
        assert response.error == "TYPE value is not an integer"


def test_multi_key(running):
    _, address = running
    with Client(address) as client:
        client.set("key1", b"value1")
        client.set("key2", b"value2")

        responses = client.mget("key1", "key2", "nonexistent")
        assert len(responses) == 3
        assert responses[0].success
        assert responses[0].value == b"value1"
        assert responses[1].success
        assert responses[1].value == b"value2"
        assert not responses[2].success


def test_stats(running):
    _, address = running
    with Client(address) as client:
        client.set("key1", b"value1")
        client.set("key2", b"value2")
        client.get("key1")
        client.delete("key2")
        client.incr("counter")

        stats = client.stats()

    for name in ("uptime_ms", "keys", "cmd_get", "cmd_set", "cmd_del", "clients"):
        assert name in stats
    assert stats["cmd_set"] != "0"
    assert stats["cmd_get"] != "0"
    assert stats["clients"] == "1"
    assert stats["wal_current"].startswith("wal-")


def test_persistence(tmp_path):
    cfg = _config(tmp_path / "persist")

    server, thread, address = _launch(cfg)
    with Client(address) as client:
        client.set("persistent_key1", b"persistent_value1")
        client.set("persistent_key2", b"persistent_value2")
        client.set("persistent_key3", b"persistent_value3")
    server.shutdown()
    thread.join(5)

    server2, thread2, address2 = _launch(cfg)
    try:
        with Client(address2) as client:
            response = client.get("persistent_key1")
            assert response.success
            assert response.value == b"persistent_value1"

            response = client.get("persistent_key2")
            assert response.success
            assert response.value == b"persistent_value2"
    finally:
        server2.shutdown()
        thread2.join(5)


def test_expiry_lazy(running):
    _, address = running
    with Client(address) as client:
        assert client.set("expiring_key", b"expiring_value", "EX", "50").success
        assert client.exists("expiring_key").success

        time.sleep(0.1)

        assert not client.get("expiring_key").success
        assert not client.exists("expiring_key").success


def test_bad_request_keeps_connection_open(running):
    _, address = running
    lines = _raw_exchange(address, b"SET k abc\r\nPING\r\n", 2)
    assert lines[0].startswith(b"ERR BADREQ")
    assert lines[1] == b"PONG\r\n"


def test_invalid_key_over_the_wire(running):
    _, address = running
    lines = _raw_exchange(address, b"GET a\x01b\r\n", 1)
    assert lines[0] == b"ERR BADREQ key contains invalid characters\r\n"


def test_unknown_command(idle_server):
    assert _run(idle_server, b"FLY away\r\n") == b"ERR BADREQ unknown command\r\n"


def test_set_conflicting_expiry(idle_server):
    reply = _run(idle_server, b"SET k 1 EX 100 PXAT 99999999999999\r\nx\r\n")
    assert reply == b"ERR BADREQ EX and PXAT are mutually exclusive\r\n"


def test_set_unknown_option(idle_server):
    reply = _run(idle_server, b"SET k 1 foo\r\nx\r\n")
    assert reply == b"ERR BADREQ unknown option: FOO\r\n"


def test_set_option_missing_value(idle_server):
    assert _run(idle_server, b"SET k 1 EX\r\nx\r\n") == b"ERR BADREQ EX requires value\r\n"


def test_set_then_get_reply_format(idle_server):
    assert _run(idle_server, b"SET k 5\r\nhello\r\n") == b"OK 1\r\n"
    assert _run(idle_server, b"GET k\r\n") == b"VALUE 5 1 -1\r\nhello\r\n"


def test_get_wrong_arity(idle_server):
    assert _run(idle_server, b"GET\r\n") == b"ERR BADREQ GET requires 1 argument\r\n"


def test_mset_then_mget(idle_server):
    assert _run(idle_server, b"MSET a 5 b 3\r\nhellobar\r\n") == b"OK 2\r\n"
    reply = _run(idle_server, b"MGET a b c\r\n")
    assert reply == (
        b"VALUE a 5 1 -1\r\nhello\r\n"
        b"VALUE b 3 1 -1\r\nbar\r\n"
        b"NOT_FOUND c\r\n"
    )


def test_del_and_exists_replies(idle_server):
    _run(idle_server, b"SET k 1\r\nv\r\n")
    assert _run(idle_server, b"EXISTS k\r\n") == b"EXISTS 1\r\n"
    assert _run(idle_server, b"DEL k\r\n") == b"DELETED 1\r\n"
    assert _run(idle_server, b"DEL k\r\n") == b"DELETED 0\r\n"
    assert _run(idle_server, b"EXISTS k\r\n") == b"EXISTS 0\r\n"


def test_expire_missing_key(idle_server):
    assert _run(idle_server, b"EXPIRE nope 100\r\n") == b"NOT_FOUND\r\n"
    assert _run(idle_server, b"EXPIRE nope abc\r\n") == b"ERR BADREQ invalid TTL\r\n"


def test_decr_reply(idle_server):
    assert _run(idle_server, b"DECR n 3\r\n") == b"-3\r\n"
    assert _run(idle_server, b"INCR n x\r\n") == b"ERR BADREQ invalid delta\r\n"


def test_stats_reply_ends_with_end(idle_server):
    reply = _run(idle_server, b"STATS\r\n")
    lines = reply.split(b"\r\n")
    assert lines[-2] == b"END"
    assert b"clients=0" in lines
    assert b"keys=0" in lines


def test_get_address_before_start(idle_server):
    assert idle_server.get_address() == "127.0.0.1:0"