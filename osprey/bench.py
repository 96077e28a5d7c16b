"""Load generator that measures server throughput."""

import argparse
import logging
import math
import os
import re
import sys
import threading
import time

from osprey.client import Client, ClientError

log = logging.getLogger("osprey")

_OPERATIONS = ("set", "get", "mixed")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> float:
    """Parse a duration such as 10s, 1m30s or 500ms into seconds."""
    rest = text
    sign = 1.0
    if rest and rest[0] in "+-":
        sign = -1.0 if rest[0] == "-" else 1.0
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f"invalid duration: {text!r}")
    total = 0.0
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if match is None:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match[1]) * _DURATION_UNITS[match[2]]
        pos = match.end()
    return sign * total


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}s"


def _div(numerator: float, denominator: float) -> float:
    if denominator:
        return numerator / denominator
    if numerator == 0:
        return math.nan
    return math.copysign(math.inf, numerator)


def _fmt(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return f"{value:.2f}"


def generate_keys(count: int, size: int) -> list[bytes]:
    """Keys key_<n>, zero-padded and cut or padded to exactly size bytes."""
    width = max(size - 4, 0)
    keys = []
    for index in range(count):
        key = f"key_{index:0{width}d}"
        key = key[:size] if len(key) > size else key.ljust(size, "x")
        keys.append(key.encode())
    return keys


def generate_value(size: int) -> bytes:
    """A value of size bytes cycling through the lower-case alphabet."""
    return bytes(ord("a") + i % 26 for i in range(size))


def populate_keys(address: str, keys: list[bytes], value: bytes) -> None:
    """Store value under every key over one connection."""
    with Client(address) as client:
        for index, key in enumerate(keys):
            try:
                client.set(key.decode(), value)
            except (ClientError, OSError) as exc:
                log.warning("Failed to populate key %d: %s", index, exc)
            if index % 1000 == 0:
                print(f"Populated {index}/{len(keys)} keys", end="\r", flush=True)
    print(f"Populated {len(keys)}/{len(keys)} keys")


class _Counters:
    def __init__(self):
        self._lock = threading.Lock()
        self.ops = 0
        self.errors = 0

    def record(self, failed: bool) -> None:
        with self._lock:
            self.ops += 1
            if failed:
                self.errors += 1

    def read(self) -> tuple[int, int]:
        with self._lock:
            return self.ops, self.errors


def _run_worker(client_id, address, operation, keys, value, stop, counters) -> None:
    try:
        client = Client(address)
    except (OSError, ValueError) as exc:
        log.warning("Client %d: Failed to connect: %s", client_id, exc)
        return
    with client:
        index = 0
        while not stop.is_set():
            key = keys[index].decode()
            failed = False
            try:
                if operation == "set" or (operation == "mixed" and index % 2 == 0):
                    client.set(key, value)
                else:
                    client.get(key)
            except (ClientError, OSError):
                failed = True
            counters.record(failed)
            index = (index + 1) % len(keys)


def _report(counters: _Counters, interval: float, done: threading.Event) -> None:
    last_ops = last_errors = 0
    last_time = time.monotonic()
    while not done.wait(interval):
        now = time.monotonic()
        ops, errors = counters.read()
        elapsed = now - last_time
        ops_rate = _div(ops - last_ops, elapsed)
        error_rate = _div(errors - last_errors, elapsed)
        ops_text = f"{ops_rate:.0f}" if math.isfinite(ops_rate) else _fmt(ops_rate)
        print(
            f"Ops: {ops - last_ops} ({ops_text}/sec), "
            f"Errors: {errors - last_errors} ({_fmt(error_rate)}/sec), Total: {ops}",
            flush=True,
        )
        last_ops, last_errors, last_time = ops, errors, now


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="osprey-bench")
    parser.add_argument("-addr", "--addr", default="localhost:7070", help="Server address")
    parser.add_argument(
        "-op", "--op", default="set", help="Operation to benchmark (set|get|mixed)"
    )
    parser.add_argument(
        "-duration", "--duration", type=_parse_duration, default=10.0, help="Test duration"
    )
    parser.add_argument(
        "-clients", "--clients", type=int, default=10, help="Number of concurrent clients"
    )
    parser.add_argument(
        "-key-size", "--key-size", dest="key_size", type=int, default=16,
        help="Key size in bytes",
    )
    parser.add_argument(
        "-value-size", "--value-size", dest="value_size", type=int, default=100,
        help="Value size in bytes",
    )
    parser.add_argument(
        "-keyspace", "--keyspace", type=int, default=10000, help="Size of key space"
    )
    parser.add_argument(
        "-report", "--report", type=_parse_duration, default=1.0, help="Reporting interval"
    )
    return parser


def main(argv=None) -> int:
    """Run the benchmark; returns the process exit status."""
    args = _build_parser().parse_args(argv)

    print("Osprey Benchmark Tool")
    print("=====================")
    print(f"Server: {args.addr}")
    print(f"Operation: {args.op}")
    print(f"Duration: {_format_seconds(args.duration)}")
    print(f"Clients: {args.clients}")
    print(f"Key size: {args.key_size} bytes")
    print(f"Value size: {args.value_size} bytes")
    print(f"Key space: {args.keyspace}")
    print(f"CPUs: {os.cpu_count()}")
    print()

    try:
        probe = Client(args.addr)
    except (OSError, ValueError) as exc:
        print(f"Failed to connect to server: {exc}", file=sys.stderr)
        return 1
    with probe:
        try:
            probe.ping()
        except (ClientError, OSError) as exc:
            print(f"Server ping failed: {exc}", file=sys.stderr)
            return 1

    if args.op not in _OPERATIONS:
        print(f"Unknown operation: {args.op}", file=sys.stderr)
        return 1
    if args.keyspace <= 0:
        print("Key space must be positive", file=sys.stderr)
        return 1
    if args.report <= 0:
        print("Reporting interval must be positive", file=sys.stderr)
        return 1

    keys = generate_keys(args.keyspace, args.key_size)
    value = generate_value(args.value_size)

    if args.op in ("get", "mixed"):
        print(f"Pre-populating {args.keyspace} keys...")
        try:
            populate_keys(args.addr, keys, value)
        except (OSError, ValueError) as exc:
            print(f"Failed to connect for population: {exc}", file=sys.stderr)
            return 1
        print("Pre-population complete\n")

    counters = _Counters()
    stop = threading.Event()
    report_done = threading.Event()
    started = time.monotonic()

    reporter = threading.Thread(
        target=_report, args=(counters, args.report, report_done), daemon=True
    )
    reporter.start()

    workers = [
        threading.Thread(
            target=_run_worker,
            args=(i, args.addr, args.op, keys, value, stop, counters),
            daemon=True,
        )
        for i in range(args.clients)
    ]
    for worker in workers:
        worker.start()

    time.sleep(max(args.duration, 0.0))
    stop.set()
    for worker in workers:
        worker.join()
    report_done.set()
    reporter.join()

    ops, errors = counters.read()
    elapsed = time.monotonic() - started

    print("\nBenchmark Results")
    print("=================")
    print(f"Total operations: {ops}")
    print(f"Total errors: {errors}")
    print(f"Success rate: {_fmt(_div((ops - errors) * 100, ops))}%")
    print(f"Duration: {elapsed:.2f} seconds")
    print(f"Throughput: {_fmt(_div(ops, elapsed))} ops/sec")
    print(f"Average latency: {_fmt(_div(elapsed * 1_000_000, ops))} μs/op")
    return 0


if __name__ == "__main__":
    sys.exit(main())