"""In-memory key-value store with versions, conditional writes and expiry."""

import heapq
import itertools
import re
import threading
import time
from dataclasses import dataclass

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INT_PATTERN = re.compile(rb"[+-]?[0-9]+")


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return time.time_ns() // 1_000_000


class StoreError(Exception):
    """A store operation that could not be carried out."""

    default_message = "store error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class KeyNotFoundError(StoreError):
    default_message = "key not found"


class KeyExistsError(StoreError):
    default_message = "key already exists"


class VersionMismatchError(StoreError):
    default_message = "version mismatch"


class NotIntegerError(StoreError):
    default_message = "value is not an integer"


class KeyTooLargeError(StoreError):
    default_message = "key too large"


class ValueTooLargeError(StoreError):
    default_message = "value too large"


class KeyInvalidError(StoreError):
    default_message = "key contains invalid characters"


def validate_key(key: str) -> str:
    """Return key unchanged; raise KeyInvalidError if it holds spaces or control characters."""
    for char in key:
        code = ord(char)
        if code == 0x20 or code <= 0x1F or code == 0x7F:
            raise KeyInvalidError()
    return key


def _key_length(key: str) -> int:
    return len(key.encode("utf-8", "surrogateescape"))


def _wrap_int64(value: int) -> int:
    return (value - _INT64_MIN) % 2**64 + _INT64_MIN


def _parse_int64(raw: bytes) -> int:
    if not _INT_PATTERN.fullmatch(raw):
        raise NotIntegerError()
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise NotIntegerError()
    return value


@dataclass
class Entry:
    """A stored value with its version and absolute expiry (-1 for none)."""

    value: bytes
    version: int
    expiry_ms: int = -1
    size_bytes: int = 0

    def is_expired(self) -> bool:
        if self.expiry_ms < 0:
            return False
        return now_ms() > self.expiry_ms

    def ttl(self) -> int:
        """Milliseconds left; -1 without expiry, -2 once expired."""
        if self.expiry_ms < 0:
            return -1
        remaining = self.expiry_ms - now_ms()
        return -2 if remaining < 0 else remaining


@dataclass
class ExpiryItem:
    """A key scheduled to be checked for expiry at expiry_ms."""

    key: str
    expiry_ms: int


class ExpiryHeap:
    """Min-heap of expiry items ordered by expiry time."""

    def __init__(self):
        self._heap: list[tuple[int, int, ExpiryItem]] = []
        self._counter = itertools.count()

    def push(self, item: ExpiryItem) -> None:
        heapq.heappush(self._heap, (item.expiry_ms, next(self._counter), item))

    def pop(self) -> ExpiryItem:
        if not self._heap:
            raise IndexError("pop from empty expiry heap")
        return heapq.heappop(self._heap)[2]

    def peek(self) -> ExpiryItem | None:
        return self._heap[0][2] if self._heap else None

    def __len__(self) -> int:
        return len(self._heap)


@dataclass
class SetOptions:
    """Options of a SET: relative or absolute expiry, NX/XX and version check."""

    expiry_ms: int = 0
    absolute_expiry_ms: int = 0
    nx: bool = False
    xx: bool = False
    check_version: bool = False
    version: int = 0


@dataclass
class Stats:
    """Runtime counters."""

    cmd_get: int = 0
    cmd_set: int = 0
    cmd_del: int = 0
    cmd_incr: int = 0
    expired_total: int = 0
    evicted_total: int = 0
    start_time_ms: int = 0


class Store:
    """Thread-safe in-memory map from keys to entries."""

    def __init__(self, config):
        self.config = config
        self.data: dict[str, Entry] = {}
        self.expiry_heap = ExpiryHeap()
        self.stats = Stats(start_time_ms=now_ms())
        self.lock = threading.RLock()

    def _live(self, key: str) -> Entry | None:
        entry = self.data.get(key)
        if entry is None or entry.is_expired():
            return None
        return entry

    def get(self, key: str) -> Entry:
        """Return the live entry for key; raise KeyNotFoundError if absent or expired."""
        validate_key(key)
        with self.lock:
            self.stats.cmd_get += 1
            entry = self.data.get(key)
            if entry is None:
                raise KeyNotFoundError()
            if entry.is_expired():
                del self.data[key]
                self.stats.expired_total += 1
                raise KeyNotFoundError()
            return entry

    def set(self, key: str, value, opts: SetOptions | None = None) -> int:
        """Store value under key and return its new version."""
        opts = opts or SetOptions()
        value = bytes(value)
        if _key_length(key) > self.config.max_key_bytes:
            raise KeyTooLargeError()
        validate_key(key)
        if len(value) > self.config.max_value_bytes:
            raise ValueTooLargeError()

        with self.lock:
            self.stats.cmd_set += 1
            live = self._live(key)

            if opts.nx and live is not None:
                raise KeyExistsError()
            if opts.xx and live is None:
                raise KeyNotFoundError()
            if opts.check_version and live is not None and live.version != opts.version:
                raise VersionMismatchError()

            new_version = live.version + 1 if live is not None else 1

            expiry_ms = -1
            if opts.expiry_ms > 0:
                expiry_ms = now_ms() + opts.expiry_ms
            elif opts.absolute_expiry_ms > 0:
                expiry_ms = opts.absolute_expiry_ms

            self.data[key] = Entry(
                value=value,
                version=new_version,
                expiry_ms=expiry_ms,
                size_bytes=len(value),
            )
            if expiry_ms > 0:
                self.expiry_heap.push(ExpiryItem(key=key, expiry_ms=expiry_ms))
            return new_version

    def delete(self, key: str) -> bool:
        """Remove a live key; return whether anything was removed."""
        try:
            validate_key(key)
        except KeyInvalidError:
            return False
        with self.lock:
            self.stats.cmd_del += 1
            if self._live(key) is None:
                return False
            del self.data[key]
            return True

    def exists(self, key: str) -> bool:
        try:
            validate_key(key)
        except KeyInvalidError:
            return False
        with self.lock:
            return self._live(key) is not None

    def expire(self, key: str, ttl_ms: int) -> None:
        """Give a live key an expiry ttl_ms from now."""
        validate_key(key)
        with self.lock:
            entry = self._live(key)
            if entry is None:
                raise KeyNotFoundError()
            entry.expiry_ms = now_ms() + ttl_ms
            self.expiry_heap.push(ExpiryItem(key=key, expiry_ms=entry.expiry_ms))

    def ttl(self, key: str) -> int:
        """Milliseconds left for key; -1 without expiry, -2 if missing or invalid."""
        try:
            validate_key(key)
        except KeyInvalidError:
            return -2
        with self.lock:
            entry = self.data.get(key)
            if entry is None:
                return -2
            return entry.ttl()

    def incr(self, key: str, delta: int) -> int:
        """Add delta to the integer stored at key (0 if absent) and return the result."""
        validate_key(key)
        with self.lock:
            self.stats.cmd_incr += 1
            live = self._live(key)
            current = 0 if live is None else _parse_int64(live.value)
            new_value = _wrap_int64(current + delta)
            encoded = str(new_value).encode()
            self.data[key] = Entry(
                value=encoded,
                version=live.version + 1 if live is not None else 1,
                expiry_ms=-1,
                size_bytes=len(encoded),
            )
            return new_value

    def get_stats(self) -> dict[str, str]:
        with self.lock:
            uptime = now_ms() - self.stats.start_time_ms
            keys = sum(1 for entry in self.data.values() if not entry.is_expired())
            return {
                "uptime_ms": str(uptime),
                "keys": str(keys),
                "expired_total": str(self.stats.expired_total),
                "evicted_total": str(self.stats.evicted_total),
                "cmd_get": str(self.stats.cmd_get),
                "cmd_set": str(self.stats.cmd_set),
                "cmd_del": str(self.stats.cmd_del),
                "cmd_incr": str(self.stats.cmd_incr),
            }