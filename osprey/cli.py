"""Command-line client for the key-value server."""

import argparse
import sys

from osprey.client import Client, ClientError

USAGE = """Usage: osprey-cli [options] <command> [args...]

Commands:
  ping
  get <key>
  set <key> <value> [EX <ms>] [PXAT <ms>] [NX|XX] [VER <n>]
  del <key>
  exists <key>
  expire <key> <ttl_ms>
  ttl <key>
  incr <key> [delta]
  decr <key> [delta]
  mget <key1> <key2> ...
  stats

Options:
  -addr string    Server address (default "localhost:7070")
  -in string      Input file for binary values (use '-' for stdin)
  -out string     Output file for binary values"""


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def _emit_bytes(data: bytes) -> None:
    out = sys.stdout
    out.flush()
    buffer = getattr(out, "buffer", None)
    if buffer is None:
        out.write(data.decode("utf-8", "replace"))
    else:
        buffer.write(data)
        buffer.flush()


def _parse_int64(text: str) -> int:
    value = int(text.strip()) if text.strip() == text else int("x")
    if not -(2**63) <= value <= 2**63 - 1:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _ping(client, args, options) -> int:
    client.ping()
    print("PONG")
    return 0


def _get(client, args, options) -> int:
    if len(args) != 1:
        _err("Usage: get <key>")
        return 1
    response = client.get(args[0])
    if not response.success:
        print("NOT_FOUND")
        return 0
    value = response.value or b""
    print(f"VALUE {len(value)} {response.version} {response.expiry_ms}")
    if options.out:
        try:
            with open(options.out, "wb") as handle:
                handle.write(value)
        except OSError as exc:
            _err(f"Failed to write output file: {exc}")
            return 1
        print(f"Value written to {options.out}")
    else:
        _emit_bytes(value)
        print()
    return 0


def _set(client, args, options) -> int:
    if len(args) < 2:
        _err("Usage: set <key> <value> [options...]")
        return 1
    key = args[0]
    if options.input:
        try:
            if options.input == "-":
                value = sys.stdin.buffer.read()
            else:
                with open(options.input, "rb") as handle:
                    value = handle.read()
        except OSError as exc:
            _err(f"Failed to read input: {exc}")
            return 1
        extra = args[1:]
    else:
        value = args[1].encode("utf-8", "surrogateescape")
        extra = args[2:]

    response = client.set(key, value, *extra)
    if response.success:
        print(f"OK {response.version}")
        return 0
    print(f"ERR {response.error}")
    return 1


def _del(client, args, options) -> int:
    if len(args) != 1:
        _err("Usage: del <key>")
        return 1
    response = client.delete(args[0])
    print("DELETED 1" if response.success else "DELETED 0")
    return 0


def _exists(client, args, options) -> int:
    if len(args) != 1:
        _err("Usage: exists <key>")
        return 1
    response = client.exists(args[0])
    print("EXISTS 1" if response.success else "EXISTS 0")
    return 0


def _expire(client, args, options) -> int:
    if len(args) != 2:
        _err("Usage: expire <key> <ttl_ms>")
        return 1
    try:
        ttl = _parse_int64(args[1])
    except ValueError:
        _err(f"Invalid TTL: {args[1]!r} is not an integer")
        return 1
    response = client.expire(args[0], ttl)
    print("OK" if response.success else "NOT_FOUND")
    return 0


def _ttl(client, args, options) -> int:
    if len(args) != 1:
        _err("Usage: ttl <key>")
        return 1
    print(client.ttl(args[0]).ttl)
    return 0


def _counter(name: str):
    def handler(client, args, options) -> int:
        if not 1 <= len(args) <= 2:
            _err(f"Usage: {name} <key> [delta]")
            return 1
        delta = None
        if len(args) == 2:
            try:
                delta = _parse_int64(args[1])
            except ValueError:
                _err(f"Invalid delta: {args[1]!r} is not an integer")
                return 1
        call = client.incr if name == "incr" else client.decr
        response = call(args[0], delta)
        if response.success:
            print(response.integer)
            return 0
        print(f"ERR {response.error}")
        return 1

    return handler


def _mget(client, args, options) -> int:
    if not args:
        _err("Usage: mget <key1> <key2> ...")
        return 1
    for key, response in zip(args, client.mget(*args)):
        if response.success:
            value = response.value or b""
            print(f"VALUE {key} {len(value)} {response.version} {response.expiry_ms}")
            _emit_bytes(value)
            print()
        else:
            print(f"NOT_FOUND {key}")
    return 0


def _stats(client, args, options) -> int:
    for name, value in client.stats().items():
        print(f"{name}={value}")
    print("END")
    return 0


_HANDLERS = {
    "ping": _ping,
    "get": _get,
    "set": _set,
    "del": _del,
    "exists": _exists,
    "expire": _expire,
    "ttl": _ttl,
    "incr": _counter("incr"),
    "decr": _counter("decr"),
    "mget": _mget,
    "stats": _stats,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="osprey-cli")
    parser.add_argument("-addr", "--addr", default="localhost:7070", help="Server address")
    parser.add_argument("-out", "--out", default="", help="Output file for binary values")
    parser.add_argument(
        "-in", "--in", dest="input", default="",
        help="Input file for binary values (use '-' for stdin)",
    )
    parser.add_argument("words", nargs=argparse.REMAINDER)
    return parser


def main(argv=None) -> int:
    """Run one client command; returns the process exit status."""
    options = _build_parser().parse_args(argv)
    if not options.words:
        print(USAGE)
        return 1

    try:
        client = Client(options.addr)
    except (OSError, ValueError) as exc:
        _err(f"Failed to connect: {exc}")
        return 1

    name = options.words[0].lower()
    args = options.words[1:]
    with client:
        handler = _HANDLERS.get(name)
        if handler is None:
            _err(f"Unknown command: {name}")
            return 1
        try:
            return handler(client, args, options)
        except (ClientError, OSError) as exc:
            _err(f"Error: {exc}")
            return 1


if __name__ == "__main__":
    sys.exit(main())