"""Write-ahead log: record encoding, an appending writer and a reader."""

import enum
import os
import struct
import threading
import time
from dataclasses import dataclass

WAL_MAGIC = 0x4F535057  # 'OSPW'
WAL_VERSION = 1

# magic, version, type, key length, value length, expiry, version
_HEADER = struct.Struct("<IHBIIqQ")
_U32 = struct.Struct("<I")
_VERSION_TYPE = struct.Struct("<HB")
_LENGTHS = struct.Struct("<II")
_METADATA = struct.Struct("<qQ")

_BATCH_SYNC_SECONDS = 0.1
_BATCH_SYNC_BYTES = 1024 * 1024


def _make_crc32c_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        crc = n
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC32C_TABLE = _make_crc32c_table()


def crc32c(data: bytes) -> int:
    """CRC-32C (Castagnoli) checksum of data."""
    crc = 0xFFFFFFFF
    table = _CRC32C_TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


class WALError(Exception):
    """A WAL record that cannot be read."""

    default_message = "WAL error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class CorruptedRecordError(WALError):
    default_message = "corrupted WAL record"


class InvalidMagicError(WALError):
    default_message = "invalid WAL magic"


class InvalidVersionError(WALError):
    default_message = "invalid WAL version"


class RecordType(enum.IntEnum):
    SET = 0
    DEL = 1
    EXPIRE = 2


@dataclass
class WALRecord:
    """One logged mutation."""

    type: RecordType
    key: str
    value: bytes | None = None
    expiry_ms: int = -1
    version: int = 0


def _encode_key(key: str) -> bytes:
    return key.encode("utf-8", "surrogateescape")


def _decode_key(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def serialize_record(record: WALRecord) -> bytes:
    """Encode a record in its on-disk form, checksum included."""
    key = _encode_key(record.key)
    value = record.value or b""
    body = (
        _HEADER.pack(
            WAL_MAGIC,
            WAL_VERSION,
            int(record.type),
            len(key),
            len(value),
            record.expiry_ms,
            record.version,
        )
        + key
        + value
    )
    return body + _U32.pack(crc32c(body[6:]))


class WAL:
    """An append-only log file named wal-<index>.oswal."""

    def __init__(self, directory, index, max_size, sync_policy):
        self.path = os.path.join(os.fspath(directory), f"wal-{index:08d}.oswal")
        self.max_size = max_size
        self.sync_policy = sync_policy
        self._lock = threading.Lock()
        self._file = open(self.path, "ab", buffering=0)
        try:
            self._size = os.fstat(self._file.fileno()).st_size
        except OSError:
            self._file.close()
            raise
        self._last_sync = time.monotonic()
        self._unsynced_bytes = 0

    def append(self, record: WALRecord) -> None:
        data = serialize_record(record)
        with self._lock:
            view = memoryview(data)
            while view:
                written = self._file.write(view)
                view = view[written:]
            self._size += len(data)
            self._unsynced_bytes += len(data)
            self._maybe_sync()

    def _maybe_sync(self) -> None:
        if self.sync_policy == "always":
            os.fsync(self._file.fileno())
        elif self.sync_policy == "batch":
            elapsed = time.monotonic() - self._last_sync
            if elapsed > _BATCH_SYNC_SECONDS or self._unsynced_bytes > _BATCH_SYNC_BYTES:
                try:
                    os.fsync(self._file.fileno())
                finally:
                    self._last_sync = time.monotonic()
                    self._unsynced_bytes = 0

    def size(self) -> int:
        with self._lock:
            return self._size

    def is_full(self) -> bool:
        return self.size() >= self.max_size

    def close(self) -> None:
        with self._lock:
            if self._file.closed:
                return
            if self.sync_policy != "os":
                try:
                    os.fsync(self._file.fileno())
                except OSError:
                    pass
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class WALReader:
    """Reads records back from a WAL file."""

    def __init__(self, path):
        self._file = open(path, "rb")

    def _read_exact(self, size: int) -> bytes:
        data = self._file.read(size) if size else b""
        if len(data) < size:
            raise CorruptedRecordError("truncated WAL record")
        return data

    def read_record(self) -> WALRecord | None:
        """Return the next record, or None at the clean end of the file."""
        magic_bytes = self._file.read(4)
        if not magic_bytes:
            return None
        if len(magic_bytes) < 4:
            raise CorruptedRecordError("truncated WAL record")
        (magic,) = _U32.unpack(magic_bytes)
        if magic != WAL_MAGIC:
            raise InvalidMagicError()

        version_type = self._read_exact(_VERSION_TYPE.size)
        version, raw_type = _VERSION_TYPE.unpack(version_type)
        if version != WAL_VERSION:
            raise InvalidVersionError()

        lengths = self._read_exact(_LENGTHS.size)
        key_len, value_len = _LENGTHS.unpack(lengths)
        metadata = self._read_exact(_METADATA.size)
        expiry_ms, record_version = _METADATA.unpack(metadata)
        key = self._read_exact(key_len)
        value = self._read_exact(value_len)
        (expected_crc,) = _U32.unpack(self._read_exact(4))

        checked = version_type[2:] + lengths + metadata + key + value
        if crc32c(checked) != expected_crc:
            raise CorruptedRecordError()

        try:
            record_type = RecordType(raw_type)
        except ValueError:
            record_type = raw_type

        if value_len == 0:
            value = b"" if record_type == RecordType.SET else None

        return WALRecord(
            type=record_type,
            key=_decode_key(key),
            value=value,
            expiry_ms=expiry_ms,
            version=record_version,
        )

    def __iter__(self):
        while (record := self.read_record()) is not None:
            yield record

    def close(self) -> None:
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()