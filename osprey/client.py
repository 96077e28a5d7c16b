"""Client for the server's line-oriented text protocol."""

import re
import socket
from dataclasses import dataclass

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_UINT_PATTERN = re.compile(r"[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_UINT64_MAX = 2**64 - 1


class ClientError(Exception):
    """A reply that cannot be understood, or a connection that ended early."""


@dataclass
class Response:
    """One parsed server reply."""

    type: str
    value: bytes | None = None
    version: int = 0
    expiry_ms: int = 0
    ttl: int = 0
    integer: int = 0
    error: str = ""
    success: bool = False


def _parse_int(text: str) -> int | None:
    if not _INT_PATTERN.fullmatch(text):
        return None
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else None


def _parse_uint(text: str) -> int:
    if not _UINT_PATTERN.fullmatch(text):
        return 0
    value = int(text)
    return value if value <= _UINT64_MAX else 0


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address: {address!r}")
    return host.strip("[]") or "localhost", int(port)


class Client:
    """A single connection to the server."""

    def __init__(self, address, timeout=5.0):
        host, port = _split_address(address)
        self._sock = socket.create_connection((host, port), timeout=timeout)
        self._sock.settimeout(None)
        self._reader = self._sock.makefile("rb")

    def close(self) -> None:
        self._reader.close()
        self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def ping(self) -> None:
        """Send PING; raise ClientError unless the reply is PONG."""
        self._send("PING")
        response = self._read_response()
        if response.type != "PONG":
            raise ClientError(f"unexpected response: {response.type}")

    def get(self, key: str) -> Response:
        self._send("GET", key)
        return self._read_response()

    def set(self, key: str, value, *args: str) -> Response:
        """Store value under key; args are extra options such as EX 1000 or NX."""
        payload = value.encode() if isinstance(value, str) else bytes(value)
        self._send("SET", key, str(len(payload)), *args, payload=payload)
        return self._read_response()

    def delete(self, key: str) -> Response:
        self._send("DEL", key)
        return self._read_response()

    def exists(self, key: str) -> Response:
        self._send("EXISTS", key)
        return self._read_response()

    def expire(self, key: str, ttl_ms: int) -> Response:
        self._send("EXPIRE", key, str(ttl_ms))
        return self._read_response()

    def ttl(self, key: str) -> Response:
        self._send("TTL", key)
        return self._read_response()

    def incr(self, key: str, delta: int | None = None) -> Response:
        return self._counter("INCR", key, delta)

    def decr(self, key: str, delta: int | None = None) -> Response:
        return self._counter("DECR", key, delta)

    def mget(self, *args: str) -> list[Response]:
        """Fetch several keys; one response per key, in order."""
        self._send("MGET", *args)
        return [self._read_mget_response() for _ in args]

    def stats(self) -> dict[str, str]:
        self._send("STATS")
        stats: dict[str, str] = {}
        while (line := self._read_line()) != "END":
            name, sep, value = line.partition("=")
            if sep:
                stats[name] = value
        return stats

    def _counter(self, name: str, key: str, delta: int | None) -> Response:
        words = [name, key] if delta is None else [name, key, str(delta)]
        self._send(*words)
        return self._read_response()

    def _send(self, *words: str, payload: bytes | None = None) -> None:
        data = (" ".join(words) + "\r\n").encode("utf-8", "surrogateescape")
        if payload is not None:
            data += payload + b"\r\n"
        self._sock.sendall(data)

    def _read_line(self) -> str:
        raw = self._reader.readline()
        if not raw.endswith(b"\n"):
            raise ClientError("connection closed")
        line = raw.decode("utf-8", "surrogateescape")
        return line.removesuffix("\n").removesuffix("\r")

    def _read_parts(self) -> list[str]:
        parts = self._read_line().split()
        if not parts:
            raise ClientError("empty response")
        return parts

    def _read_payload(self, length_text: str) -> bytes:
        length = _parse_int(length_text)
        if length is None or length < 0:
            raise ClientError("invalid length in VALUE response")
        value = self._reader.read(length) if length else b""
        if len(value) < length:
            raise ClientError("unexpected EOF")
        self._reader.readline()
        return value

    def _read_response(self) -> Response:
        parts = self._read_parts()
        kind = parts[0]
        response = Response(type=kind)

        if kind == "OK":
            response.success = True
            if len(parts) > 1:
                response.version = _parse_uint(parts[1])
        elif kind == "PONG":
            response.success = True
        elif kind == "NOT_FOUND":
            response.success = False
        elif kind == "VALUE":
            if len(parts) < 4:
                raise ClientError("invalid VALUE response")
            self._fill_value(response, parts[1], parts[2], parts[3])
        elif kind in ("DELETED", "EXISTS"):
            if len(parts) > 1:
                response.success = _parse_int(parts[1]) == 1
        elif kind == "ERR":
            self._fill_error(response, parts)
        else:
            number = _parse_int(kind)
            if number is None:
                response.error = "unknown response type"
            else:
                response.integer = number
                response.ttl = number
                response.success = True
        return response

    def _read_mget_response(self) -> Response:
        parts = self._read_parts()
        kind = parts[0]
        response = Response(type=kind)

        if kind == "NOT_FOUND":
            response.success = False
        elif kind == "VALUE":
            if len(parts) < 5:
                raise ClientError("invalid VALUE response")
            self._fill_value(response, parts[2], parts[3], parts[4])
        elif kind == "ERR":
            self._fill_error(response, parts)
        else:
            response.error = "unknown response type"
        return response

    def _fill_value(self, response: Response, length: str, version: str, expiry: str) -> None:
        if _parse_int(length) is None:
            raise ClientError("invalid length in VALUE response")
        response.version = _parse_uint(version)
        response.expiry_ms = _parse_int(expiry) or 0
        response.value = self._read_payload(length)
        response.success = True

    @staticmethod
    def _fill_error(response: Response, parts: list[str]) -> None:
        response.success = False
        if len(parts) > 1:
            response.error = " ".join(parts[1:])