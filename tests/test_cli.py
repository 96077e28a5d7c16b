import socket
import threading

from osprey.cli import main


class FakeServer:
    """Accepts one connection, sends a canned reply and records what arrives."""

    def __init__(self, reply: bytes = b""):
        self._reply = reply
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(5)
        self.address = f"127.0.0.1:{self._listener.getsockname()[1]}"
        self.received = b""
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        finally:
            self._listener.close()
        with conn:
            conn.settimeout(5)
            conn.sendall(self._reply)
            conn.shutdown(socket.SHUT_WR)
            chunks = []
            try:
                while chunk := conn.recv(4096):
                    chunks.append(chunk)
            except OSError:
                pass
        self.received = b"".join(chunks)

    def wait(self) -> bytes:
        self._thread.join(5)
        return self.received


def test_no_command_prints_usage(capsys):
    assert main([]) == 1
    assert "Usage: osprey-cli [options] <command> [args...]" in capsys.readouterr().out


def test_connect_failure(capsys):
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    assert main(["-addr", f"127.0.0.1:{port}", "ping"]) == 1
    assert "Failed to connect" in capsys.readouterr().err


def test_ping(capsys):
    server = FakeServer(b"PONG\r\n")
    assert main(["-addr", server.address, "ping"]) == 0
    assert capsys.readouterr().out == "PONG\n"
    assert server.wait() == b"PING\r\n"


def test_get_prints_value(capsys):
    server = FakeServer(b"VALUE 5 2 -1\r\nhello\r\n")
    assert main(["-addr", server.address, "GET", "user:1"]) == 0
    assert capsys.readouterr().out == "VALUE 5 2 -1\nhello\n"
    assert server.wait() == b"GET user:1\r\n"


def test_get_writes_output_file(tmp_path, capsys):
    target = tmp_path / "value.bin"
    value = bytes([0, 1, 2, 255])
    server = FakeServer(b"VALUE 4 1 -1\r\n" + value + b"\r\n")
    assert main(["-addr", server.address, "-out", str(target), "get", "bin"]) == 0
    assert target.read_bytes() == value
    assert f"Value written to {target}" in capsys.readouterr().out


def test_get_not_found(capsys):
    server = FakeServer(b"NOT_FOUND\r\n")
    assert main(["-addr", server.address, "get", "missing"]) == 0
    assert capsys.readouterr().out == "NOT_FOUND\n"


def test_get_wrong_arity(capsys):
    server = FakeServer()
    assert main(["-addr", server.address, "get"]) == 1
    assert "Usage: get <key>" in capsys.readouterr().err


def test_set_with_options(capsys):
    server = FakeServer(b"OK 1\r\n")
    assert main(["-addr", server.address, "set", "k", "abc", "EX", "100"]) == 0
    assert capsys.readouterr().out == "OK 1\n"
    assert server.wait() == b"SET k 3 EX 100\r\nabc\r\n"


def test_set_failure_reports_error(capsys):
    server = FakeServer(b"ERR EXISTS key already exists\r\n")
    assert main(["-addr", server.address, "set", "k", "v", "NX"]) == 1
    assert capsys.readouterr().out == "ERR EXISTS key already exists\n"


def test_set_reads_input_file(tmp_path, capsys):
    source = tmp_path / "in.bin"
    source.write_bytes(b"\x00\x01")
    server = FakeServer(b"OK 1\r\n")
    assert main(["-addr", server.address, "-in", str(source), "set", "k", "NX"]) == 0
    assert server.wait() == b"SET k 2 NX\r\n\x00\x01\r\n"


def test_del_and_exists(capsys):
    server = FakeServer(b"DELETED 0\r\n")
    assert main(["-addr", server.address, "del", "k"]) == 0
    assert capsys.readouterr().out == "DELETED 0\n"
    server = FakeServer(b"EXISTS 1\r\n")
    assert main(["-addr", server.address, "exists", "k"]) == 0
    assert capsys.readouterr().out == "EXISTS 1\n"


def test_expire_invalid_ttl(capsys):
    server = FakeServer()
    assert main(["-addr", server.address, "expire", "k", "soon"]) == 1
    assert "Invalid TTL" in capsys.readouterr().err


def test_expire_and_ttl(capsys):
    server = FakeServer(b"NOT_FOUND\r\n")
    assert main(["-addr", server.address, "expire", "k", "2000"]) == 0
    assert capsys.readouterr().out == "NOT_FOUND\n"
    assert server.wait() == b"EXPIRE k 2000\r\n"
    server = FakeServer(b"-2\r\n")
    assert main(["-addr", server.address, "ttl", "k"]) == 0
    assert capsys.readouterr().out == "-2\n"


def test_decr_with_delta(capsys):
    server = FakeServer(b"4\r\n")
    assert main(["-addr", server.address, "decr", "counter", "2"]) == 0
    assert capsys.readouterr().out == "4\n"
    assert server.wait() == b"DECR counter 2\r\n"


def test_incr_type_error(capsys):
    server = FakeServer(b"ERR TYPE value is not an integer\r\n")
    assert main(["-addr", server.address, "incr", "text"]) == 1
    assert capsys.readouterr().out == "ERR TYPE value is not an integer\n"


def test_incr_invalid_delta(capsys):
    server = FakeServer()
    assert main(["-addr", server.address, "incr", "counter", "many"]) == 1
    assert "Invalid delta" in capsys.readouterr().err


def test_mget(capsys):
    server = FakeServer(b"VALUE key1 6 1 -1\r\nvalue1\r\nNOT_FOUND nonexistent\r\n")
    assert main(["-addr", server.address, "mget", "key1", "nonexistent"]) == 0
    assert capsys.readouterr().out == "VALUE key1 6 1 -1\nvalue1\nNOT_FOUND nonexistent\n"


def test_stats(capsys):
    server = FakeServer(b"keys=3\r\nclients=1\r\nEND\r\n")
    assert main(["-addr", server.address, "stats"]) == 0
    assert capsys.readouterr().out == "keys=3\nclients=1\nEND\n"


def test_unknown_command(capsys):
    server = FakeServer()
    assert main(["-addr", server.address, "flush"]) == 1
    assert "Unknown command: flush" in capsys.readouterr().err


def test_server_hangup_is_reported(capsys):
    server = FakeServer(b"")
    assert main(["-addr", server.address, "ping"]) == 1
    assert "Error: connection closed" in capsys.readouterr().err