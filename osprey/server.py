"""TCP server that speaks the text protocol on top of a persistent store."""

import argparse
import io
import logging
import os
import re
import signal
import socket
import sys
import threading
import time

from osprey.config import load_config
from osprey.logger import close_logger, init_logger
from osprey.persistent_store import PersistentStore
from osprey.protocol import (
    Parser,
    ProtocolError,
    write_deleted,
    write_error,
    write_exists,
    write_integer,
    write_not_found,
    write_ok,
    write_ok_with_version,
    write_pong,
    write_ttl,
    write_value,
)
from osprey.store import (
    KeyExistsError,
    KeyInvalidError,
    KeyNotFoundError,
    KeyTooLargeError,
    NotIntegerError,
    SetOptions,
    StoreError,
    ValueTooLargeError,
    VersionMismatchError,
)

log = logging.getLogger("osprey")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_UINT64_MAX = 2**64 - 1
_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_UINT_PATTERN = re.compile(r"[0-9]+")
_ACCEPT_POLL_SECONDS = 0.2
_MUTATING = frozenset({"SET", "DEL", "EXPIRE", "INCR", "DECR", "MSET"})
_INVALID_KEY = "key contains invalid characters"

_SET_ERRORS = (
    (KeyExistsError, "EXISTS", "key already exists"),
    (KeyNotFoundError, "NEXISTS", "key does not exist"),
    (VersionMismatchError, "VER", "version mismatch"),
    (KeyTooLargeError, "TOOLARGE", "key too large"),
    (ValueTooLargeError, "TOOLARGE", "value too large"),
    (KeyInvalidError, "BADREQ", _INVALID_KEY),
)


def _parse_int64(text: str) -> int:
    if not _INT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def _parse_uint64(text: str) -> int:
    if not _UINT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value > _UINT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def _wrap_int64(value: int) -> int:
    return (value - _INT64_MIN) % 2**64 + _INT64_MIN


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _split_listen_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {address!r}")
    return host.strip("[]"), int(port)


class _SocketStream(io.RawIOBase):
    """Raw readable view of a socket that remembers when the peer has closed."""

    def __init__(self, sock: socket.socket):
        super().__init__()
        self._sock = sock
        self.eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        count = self._sock.recv_into(buffer)
        if count == 0:
            self.eof = True
        return count


class Server:
    """Accepts client connections and executes their commands against the store."""

    def __init__(self, config):
        self.config = config
        self.store = PersistentStore(config)
        self._listener: socket.socket | None = None
        self._lock = threading.Lock()
        self._connections: set[socket.socket] = set()
        self._threads: list[threading.Thread] = []
        self._client_count = 0
        self._shutdown = threading.Event()
        self._closed = False
        self._handlers = {
            "PING": lambda command, w: write_pong(w),
            "GET": self._handle_get,
            "SET": self._handle_set,
            "DEL": self._handle_del,
            "EXISTS": self._handle_exists,
            "EXPIRE": self._handle_expire,
            "TTL": self._handle_ttl,
            "INCR": lambda command, w: self._handle_incr(command, w, 1),
            "DECR": lambda command, w: self._handle_incr(command, w, -1),
            "STATS": self._handle_stats,
            "MGET": self._handle_mget,
            "MSET": self._handle_mset,
        }

    # Lifecycle

    def start(self) -> None:
        """Listen on the configured address and serve until shutdown."""
        host, port = _split_listen_address(self.config.listen_addr)
        listener = socket.create_server((host, port))
        listener.settimeout(_ACCEPT_POLL_SECONDS)
        self._listener = listener

        while not self._shutdown.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._shutdown.is_set():
                    return
                log.error("Accept error: %s", exc)
                continue

            conn.settimeout(None)
            with self._lock:
                if self._shutdown.is_set() or self._client_count >= self.config.max_clients:
                    conn.close()
                    continue
                self._connections.add(conn)
                self._client_count += 1
                worker = threading.Thread(
                    target=self._serve, args=(conn,), name="osprey-conn", daemon=True
                )
                self._threads.append(worker)
            worker.start()

    def shutdown(self) -> None:
        """Stop accepting, close every connection, wait for them and close the store."""
        if self._closed:
            return
        self._closed = True
        self._shutdown.set()

        if self._listener is not None:
            self._listener.close()

        with self._lock:
            connections = list(self._connections)
            threads = list(self._threads)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        for worker in threads:
            worker.join()

        self.store.close()

    def get_address(self) -> str:
        """The address actually listened on, or the configured one before start."""
        if self._listener is not None:
            try:
                host, port = self._listener.getsockname()[:2]
            except OSError:
                return self.config.listen_addr
            return f"{host}:{port}"
        return self.config.listen_addr

    # Connections

    def _serve(self, conn: socket.socket) -> None:
        stream = _SocketStream(conn)
        reader = io.BufferedReader(stream)
        parser = Parser(reader)
        try:
            while not self._shutdown.is_set():
                try:
                    command = parser.parse_command()
                except EOFError:
                    return
                except (ProtocolError, ValueError) as exc:
                    buffer = io.BytesIO()
                    write_error(buffer, "BADREQ", str(exc))
                    conn.sendall(buffer.getvalue())
                    if stream.eof:
                        return
                    continue
                if command is None:
                    return

                started = time.monotonic()
                buffer = io.BytesIO()
                self.process_command(command, buffer)
                conn.sendall(buffer.getvalue())

                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > self.config.slowlog_threshold_ms:
                    log.warning(
                        "Slow command: %s %s took %.3fms",
                        command.name,
                        command.args,
                        elapsed_ms,
                    )
        except OSError:
            return
        finally:
            with self._lock:
                self._connections.discard(conn)
                self._client_count -= 1
            conn.close()

    def process_command(self, command, w) -> None:
        """Execute one parsed command and write its reply to w."""
        if command.name in _MUTATING and self.store.is_snapshot_paused():
            write_error(w, "BUSY", "server is busy")
            return
        handler = self._handlers.get(command.name)
        if handler is None:
            write_error(w, "BADREQ", "unknown command")
            return
        handler(command, w)

    # Handlers

    def _handle_get(self, command, w) -> None:
        if len(command.args) != 1:
            write_error(w, "BADREQ", "GET requires 1 argument")
            return
        try:
            entry = self.store.get(command.args[0])
        except KeyNotFoundError:
            write_not_found(w)
        except KeyInvalidError:
            write_error(w, "BADREQ", _INVALID_KEY)
        except StoreError as exc:
            write_error(w, "INTERNAL", str(exc))
        else:
            write_value(w, len(entry.value), entry.version, entry.expiry_ms, entry.value)

    def _parse_set_options(self, args: list[str], w) -> SetOptions | None:
        opts = SetOptions()
        i = 2
        while i < len(args):
            option = args[i].upper()
            if option in ("EX", "PXAT", "VER"):
                if i + 1 >= len(args):
                    write_error(w, "BADREQ", f"{option} requires value")
                    return None
                text = args[i + 1]
                try:
                    if option == "EX":
                        opts.expiry_ms = _parse_int64(text)
                    elif option == "PXAT":
                        opts.absolute_expiry_ms = _parse_int64(text)
                    else:
                        opts.version = _parse_uint64(text)
                        opts.check_version = True
                except ValueError:
                    message = {
                        "EX": "invalid TTL",
                        "PXAT": "invalid absolute expiry",
                        "VER": "invalid version",
                    }[option]
                    write_error(w, "BADREQ", message)
                    return None
                i += 2
            elif option == "NX":
                opts.nx = True
                i += 1
            elif option == "XX":
                opts.xx = True
                i += 1
            else:
                write_error(w, "BADREQ", f"unknown option: {option}")
                return None
        return opts

    def _handle_set(self, command, w) -> None:
        args = command.args
        if len(args) < 2:
            write_error(w, "BADREQ", "SET requires at least 2 arguments")
            return
        opts = self._parse_set_options(args, w)
        if opts is None:
            return
        if opts.expiry_ms > 0 and opts.absolute_expiry_ms > 0:
            write_error(w, "BADREQ", "EX and PXAT are mutually exclusive")
            return

        try:
            version = self.store.set(args[0], command.payload or b"", opts)
        except StoreError as exc:
            for error_type, code, message in _SET_ERRORS:
                if isinstance(exc, error_type):
                    write_error(w, code, message)
                    return
            write_error(w, "INTERNAL", str(exc))
            return
        write_ok_with_version(w, version)

    def _handle_del(self, command, w) -> None:
        if len(command.args) != 1:
            write_error(w, "BADREQ", "DEL requires 1 argument")
            return
        write_deleted(w, self.store.delete(command.args[0]))

    def _handle_exists(self, command, w) -> None:
        if len(command.args) != 1:
            write_error(w, "BADREQ", "EXISTS requires 1 argument")
            return
        write_exists(w, self.store.exists(command.args[0]))

    def _handle_expire(self, command, w) -> None:
        if len(command.args) != 2:
            write_error(w, "BADREQ", "EXPIRE requires 2 arguments")
            return
        try:
            ttl_ms = _parse_int64(command.args[1])
        except ValueError:
            write_error(w, "BADREQ", "invalid TTL")
            return
        try:
            self.store.expire(command.args[0], ttl_ms)
        except KeyNotFoundError:
            write_not_found(w)
        except KeyInvalidError:
            write_error(w, "BADREQ", _INVALID_KEY)
        except StoreError as exc:
            write_error(w, "INTERNAL", str(exc))
        else:
            write_ok(w)

    def _handle_ttl(self, command, w) -> None:
        if len(command.args) != 1:
            write_error(w, "BADREQ", "TTL requires 1 argument")
            return
        write_ttl(w, self.store.ttl(command.args[0]))

    def _handle_incr(self, command, w, sign: int) -> None:
        args = command.args
        if not 1 <= len(args) <= 2:
            write_error(w, "BADREQ", f"{command.name} requires 1 or 2 arguments")
            return
        delta = 1
        if len(args) == 2:
            try:
                delta = _parse_int64(args[1])
            except ValueError:
                write_error(w, "BADREQ", "invalid delta")
                return
        try:
            new_value = self.store.incr(args[0], _wrap_int64(delta * sign))
        except NotIntegerError:
            write_error(w, "TYPE", "value is not an integer")
        except KeyInvalidError:
            write_error(w, "BADREQ", _INVALID_KEY)
        except StoreError as exc:
            write_error(w, "INTERNAL", str(exc))
        else:
            write_integer(w, new_value)

    def _handle_stats(self, command, w) -> None:
        stats = self.store.get_stats()
        with self._lock:
            stats["clients"] = str(self._client_count)
        stats.update(self.store.get_wal_stats())
        for name, value in stats.items():
            w.write(_encode(f"{name}={value}\r\n"))
        w.write(b"END\r\n")

    def _handle_mget(self, command, w) -> None:
        if not command.args:
            write_error(w, "BADREQ", "MGET requires at least 1 argument")
            return
        for key in command.args:
            try:
                entry = self.store.get(key)
            except KeyNotFoundError:
                w.write(_encode(f"NOT_FOUND {key}\r\n"))
                continue
            except KeyInvalidError:
                write_error(w, "BADREQ", _INVALID_KEY)
                return
            except StoreError as exc:
                write_error(w, "INTERNAL", str(exc))
                return
            header = f"VALUE {key} {len(entry.value)} {entry.version} {entry.expiry_ms}\r\n"
            w.write(_encode(header))
            w.write(entry.value)
            w.write(b"\r\n")

    def _handle_mset(self, command, w) -> None:
        args = command.args
        if not args or len(args) % 2:
            write_error(w, "BADREQ", "MSET requires even number of arguments")
            return

        pairs: list[tuple[str, int]] = []
        for key, length_text in zip(args[::2], args[1::2]):
            try:
                length = _parse_int64(length_text)
            except ValueError:
                length = -1
            if length < 0:
                write_error(w, "BADREQ", "invalid length")
                return
            pairs.append((key, length))

        payload = command.payload or b""
        offset = 0
        count = 0
        for key, length in pairs:
            value = payload[offset : offset + length]
            offset += length
            try:
                self.store.set(key, value, SetOptions())
            except (KeyTooLargeError, ValueTooLargeError) as exc:
                write_error(w, "TOOLARGE", str(exc))
                return
            except KeyInvalidError:
                write_error(w, "BADREQ", _INVALID_KEY)
                return
            except StoreError as exc:
                write_error(w, "INTERNAL", str(exc))
                return
            count += 1
        w.write(_encode(f"OK {count}\r\n"))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="osprey")
    parser.add_argument(
        "-config", "--config", default="osprey.toml", help="Path to configuration file"
    )
    return parser


def main(argv=None) -> int:
    """Run the server until SIGINT or SIGTERM; returns the process exit status."""
    options = _build_parser().parse_args(argv)

    try:
        config = load_config(options.config)
    except (OSError, ValueError, TypeError) as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        return 1

    log_path = config.log_file or os.path.join(config.data_dir, "logs", "osprey.log")
    try:
        init_logger(log_path, config.log_level)
    except OSError as exc:
        print(f"Failed to initialize logging: {exc}", file=sys.stderr)
        return 1

    try:
        log.info("Starting Osprey server with config: %s", options.config)
        log.info("Log file: %s", log_path)

        try:
            server = Server(config)
        except (OSError, StoreError, ValueError) as exc:
            log.error("Failed to create server: %s", exc)
            return 1

        stop = threading.Event()
        failure: list[BaseException] = []

        def run() -> None:
            try:
                server.start()
            except (OSError, ValueError) as exc:
                failure.append(exc)
                stop.set()

        runner = threading.Thread(target=run, name="osprey-accept", daemon=True)
        runner.start()
        print(f"Osprey server started on {config.listen_addr}", flush=True)

        previous = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, lambda *_: stop.set())
        try:
            while not stop.wait(0.5):
                pass
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        if failure:
            log.error("Server error: %s", failure[0])
            server.shutdown()
            return 1

        print("\nShutting down...", flush=True)
        try:
            server.shutdown()
        except (OSError, StoreError) as exc:
            log.error("Error during shutdown: %s", exc)
        runner.join(5)
        return 0
    finally:
        close_logger()


if __name__ == "__main__":
    sys.exit(main())