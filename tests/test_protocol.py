import io

import pytest

from osprey.protocol import (
    InvalidArgsError,
    InvalidCommandError,
    InvalidPayloadError,
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


def _parse(data: bytes):
    return Parser(io.BytesIO(data)).parse_command()


@pytest.mark.parametrize(
    "data, name, args",
    [
        (b"PING\r\n", "PING", []),
        (b"GET key1\r\n", "GET", ["key1"]),
        (b"DEL key1\r\n", "DEL", ["key1"]),
        (b"EXISTS key1\r\n", "EXISTS", ["key1"]),
        (b"EXPIRE key1 1000\r\n", "EXPIRE", ["key1", "1000"]),
        (b"TTL key1\r\n", "TTL", ["key1"]),
        (b"INCR counter 5\r\n", "INCR", ["counter", "5"]),
        (b"MGET key1 key2 key3\r\n", "MGET", ["key1", "key2", "key3"]),
    ],
)
def test_parse_simple_commands(data, name, args):
    command = _parse(data)
    assert command.name == name
    assert command.args == args
    assert command.payload is None


@pytest.mark.parametrize(
    "data, args, payload",
    [
        (b"SET key1 5\r\nhello\r\n", ["key1", "5"], b"hello"),
        (
            b"SET key1 5 EX 1000 NX\r\nhello\r\n",
            ["key1", "5", "EX", "1000", "NX"],
            b"hello",
        ),
        (b"SET key1 0\r\n\r\n", ["key1", "0"], b""),
        (b"SET key1 4\r\n\x00\x01\x02\x03\r\n", ["key1", "4"], b"\x00\x01\x02\x03"),
    ],
)
def test_parse_set(data, args, payload):
    command = _parse(data)
    assert command.name == "SET"
    assert command.args == args
    assert command.payload == payload


def test_parse_mset():
    command = _parse(b"MSET key1 5 key2 3\r\nhellobar\r\n")
    assert command.name == "MSET"
    assert command.args == ["key1", "5", "key2", "3"]
    assert command.payload == b"hellobar"


def test_empty_line_is_invalid_command():
    with pytest.raises(InvalidCommandError):
        _parse(b"\r\n")


def test_blank_line_is_invalid_command():
    with pytest.raises(InvalidCommandError):
        _parse(b"   \r\n")


@pytest.mark.parametrize(
    "data",
    [
        b"SET key1 abc\r\nhello\r\n",
        b"SET key1 -1\r\nhello\r\n",
        b"MSET key1 5 key2\r\nhello\r\n",
        b"SET key1\r\nhello\r\n",
    ],
)
def test_bad_arguments(data):
    with pytest.raises(InvalidArgsError):
        _parse(data)


def test_set_missing_payload():
    with pytest.raises(EOFError):
        _parse(b"SET key1 5\r\n")


def test_payload_without_crlf_is_invalid():
    with pytest.raises(InvalidPayloadError):
        _parse(b"SET key1 2\r\nabXY")


def test_errors_share_base_and_messages():
    with pytest.raises(ProtocolError, match="invalid arguments"):
        _parse(b"SET key1 abc\r\nhello\r\n")


def test_end_of_stream_raises_eof():
    with pytest.raises(EOFError):
        _parse(b"")


def test_partial_line_raises_eof():
    with pytest.raises(EOFError):
        _parse(b"PING")


@pytest.mark.parametrize("data", [b"ping\r\n", b"PING\r\n", b"Ping\r\n", b"pInG\r\n"])
def test_case_insensitive(data):
    assert _parse(data).name == "PING"


def test_line_feed_only_terminator():
    command = _parse(b"GET key1\n")
    assert (command.name, command.args) == ("GET", ["key1"])


def test_consecutive_commands_from_one_stream():
    parser = Parser(io.BytesIO(b"SET a 1\r\nx\r\nGET a\r\n"))
    first = parser.parse_command()
    second = parser.parse_command()
    assert (first.name, first.payload) == ("SET", b"x")
    assert (second.name, second.args) == ("GET", ["a"])
    with pytest.raises(EOFError):
        parser.parse_command()


def test_requires_payload():
    assert _parse(b"SET k 0\r\n\r\n").requires_payload()
    assert not _parse(b"GET k\r\n").requires_payload()


@pytest.mark.parametrize(
    "writer, args, expected",
    [
        (write_ok, (), b"OK\r\n"),
        (write_ok_with_version, (42,), b"OK 42\r\n"),
        (write_pong, (), b"PONG\r\n"),
        (write_not_found, (), b"NOT_FOUND\r\n"),
        (write_error, ("BADREQ", "invalid command"), b"ERR BADREQ invalid command\r\n"),
        (write_deleted, (True,), b"DELETED 1\r\n"),
        (write_deleted, (False,), b"DELETED 0\r\n"),
        (write_exists, (True,), b"EXISTS 1\r\n"),
        (write_ttl, (1234,), b"1234\r\n"),
        (write_integer, (-42,), b"-42\r\n"),
    ],
)
def test_response_writers(writer, args, expected):
    buffer = io.BytesIO()
    writer(buffer, *args)
    assert buffer.getvalue() == expected


def test_write_value():
    value = b"hello world"
    buffer = io.BytesIO()
    write_value(buffer, len(value), 42, 1234567890, value)
    assert buffer.getvalue() == b"VALUE 11 42 1234567890\r\nhello world\r\n"