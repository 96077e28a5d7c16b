"""Text protocol: command parsing and response writers."""

import re
from dataclasses import dataclass, field

_PAYLOAD_COMMANDS = frozenset({"SET", "MSET"})
_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT_MAX = 2**63 - 1
_CRLF = b"\r\n"


class ProtocolError(Exception):
    """A request that does not follow the protocol."""

    default_message = "protocol error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class InvalidCommandError(ProtocolError):
    default_message = "invalid command"


class InvalidArgsError(ProtocolError):
    default_message = "invalid arguments"


class InvalidPayloadError(ProtocolError):
    default_message = "invalid payload"


@dataclass
class Command:
    """A parsed request: upper-cased name, arguments and optional payload."""

    name: str
    args: list[str] = field(default_factory=list)
    payload: bytes | None = None

    def requires_payload(self) -> bool:
        return self.name in _PAYLOAD_COMMANDS


def _parse_length(text: str) -> int:
    if not _INT_PATTERN.fullmatch(text):
        raise InvalidArgsError()
    length = int(text)
    if length < 0 or length > _INT_MAX:
        raise InvalidArgsError()
    return length


class Parser:
    """Reads commands from a binary stream offering readline() and read()."""

    def __init__(self, stream):
        self._stream = stream

    def parse_command(self) -> Command:
        """Read one command; raises EOFError once the stream is exhausted."""
        raw = self._stream.readline()
        if not raw.endswith(b"\n"):
            raise EOFError("end of stream")

        line = raw.decode("utf-8", "surrogateescape")
        line = line.removesuffix("\n").removesuffix("\r")
        if not line:
            raise InvalidCommandError()

        parts = line.split()
        if not parts:
            raise InvalidCommandError()

        command = Command(name=parts[0].upper(), args=parts[1:])
        if command.name == "SET":
            command.payload = self._read_single_payload(command)
        elif command.name == "MSET":
            command.payload = self._read_multi_payload(command)
        return command

    def _read_exact(self, size: int) -> bytes:
        data = self._stream.read(size) if size else b""
        if len(data) < size:
            raise EOFError("unexpected EOF")
        return data

    def _read_terminated(self, size: int) -> bytes:
        payload = self._read_exact(size)
        if self._read_exact(2) != _CRLF:
            raise InvalidPayloadError()
        return payload

    def _read_single_payload(self, command: Command) -> bytes:
        if len(command.args) < 2:
            raise InvalidArgsError()
        return self._read_terminated(_parse_length(command.args[1]))

    def _read_multi_payload(self, command: Command) -> bytes:
        if len(command.args) % 2 != 0:
            raise InvalidArgsError()
        total = sum(_parse_length(text) for text in command.args[1::2])
        return self._read_terminated(total)


def write_error(w, code: str, message: str) -> None:
    w.write(f"ERR {code} {message}\r\n".encode("utf-8", "surrogateescape"))


def write_ok(w) -> None:
    w.write(b"OK\r\n")


def write_ok_with_version(w, version: int) -> None:
    w.write(f"OK {version}\r\n".encode())


def write_pong(w) -> None:
    w.write(b"PONG\r\n")


def write_not_found(w) -> None:
    w.write(b"NOT_FOUND\r\n")


def write_value(w, length: int, version: int, expiry_ms: int, value: bytes) -> None:
    w.write(f"VALUE {length} {version} {expiry_ms}\r\n".encode())
    w.write(value)
    w.write(_CRLF)


def write_deleted(w, deleted: bool) -> None:
    w.write(f"DELETED {int(bool(deleted))}\r\n".encode())


def write_exists(w, exists: bool) -> None:
    w.write(f"EXISTS {int(bool(exists))}\r\n".encode())


def write_ttl(w, ttl: int) -> None:
    w.write(f"{ttl}\r\n".encode())


def write_integer(w, value: int) -> None:
    w.write(f"{value}\r\n".encode())