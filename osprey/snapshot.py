"""Snapshot files of the whole store and the manifest that points at them."""

import json
import os
import struct
from dataclasses import asdict, dataclass

from osprey.store import Entry
from osprey.wal import crc32c

SNAP_MAGIC = 0x4F535053  # 'OSPS'
SNAP_VERSION = 1

MANIFEST_NAME = "MANIFEST.json"
MANIFEST_TEMP_NAME = "MANIFEST.tmp"

# magic, version, entry count
_HEADER = struct.Struct("<IHQ")
_COUNT = struct.Struct("<Q")
_COUNT_OFFSET = 6
# key length, value length, expiry, version
_RECORD_HEAD = struct.Struct("<IIqQ")
_U32 = struct.Struct("<I")


class SnapshotError(Exception):
    """A snapshot or manifest that cannot be read or written."""


@dataclass
class Manifest:
    """Names the current snapshot and the first WAL to replay after it."""

    version: int
    snap: str
    next_wal: str
    created_ms: int


def _encode_key(key: str) -> bytes:
    return key.encode("utf-8", "surrogateescape")


def _decode_key(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


class SnapshotWriter:
    """Writes a snapshot file; the entry count is filled in on close."""

    def __init__(self, path):
        self.path = os.fspath(path)
        self.count = 0
        self._file = open(self.path, "wb")
        try:
            self._file.write(_HEADER.pack(SNAP_MAGIC, SNAP_VERSION, 0))
        except OSError:
            self._file.close()
            raise

    def write_entry(self, key: str, entry: Entry) -> None:
        """Append one entry; expired entries are skipped."""
        if entry.is_expired():
            return
        key_bytes = _encode_key(key)
        value = bytes(entry.value)
        body = (
            _RECORD_HEAD.pack(len(key_bytes), len(value), entry.expiry_ms, entry.version)
            + key_bytes
            + value
        )
        self._file.write(body + _U32.pack(crc32c(body)))
        self.count += 1

    def close(self) -> None:
        """Record the entry count in the header, sync and close the file."""
        if self._file.closed:
            return
        try:
            self._file.seek(_COUNT_OFFSET)
            self._file.write(_COUNT.pack(self.count))
            self._file.flush()
            os.fsync(self._file.fileno())
        finally:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class SnapshotReader:
    """Reads the entries of a snapshot file back."""

    def __init__(self, path):
        self.path = os.fspath(path)
        self._file = open(self.path, "rb")
        self._read = 0
        try:
            self.count = self._read_header()
        except BaseException:
            self._file.close()
            raise

    def _read_exact(self, size: int) -> bytes:
        data = self._file.read(size) if size else b""
        if len(data) < size:
            raise SnapshotError("unexpected EOF in snapshot")
        return data

    def _read_header(self) -> int:
        magic, version, count = _HEADER.unpack(self._read_exact(_HEADER.size))
        if magic != SNAP_MAGIC:
            raise SnapshotError(f"invalid snapshot magic: {magic:x}")
        if version != SNAP_VERSION:
            raise SnapshotError(f"unsupported snapshot version: {version}")
        return count

    def read_entry(self) -> tuple[str, Entry] | None:
        """Return the next (key, entry) pair, or None once all are read."""
        if self._read >= self.count:
            return None
        head = self._read_exact(_RECORD_HEAD.size)
        key_len, value_len, expiry_ms, version = _RECORD_HEAD.unpack(head)
        key = self._read_exact(key_len)
        value = self._read_exact(value_len)
        (expected_crc,) = _U32.unpack(self._read_exact(_U32.size))
        if crc32c(head + key + value) != expected_crc:
            raise SnapshotError("CRC mismatch in snapshot record")
        self._read += 1
        return _decode_key(key), Entry(
            value=value,
            version=version,
            expiry_ms=expiry_ms,
            size_bytes=len(value),
        )

    def __iter__(self):
        while (item := self.read_entry()) is not None:
            yield item

    def close(self) -> None:
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _sync_directory(path: str) -> None:
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_manifest(data_dir, manifest: Manifest) -> None:
    """Write the manifest through a temporary file and an atomic rename."""
    data_dir = os.fspath(data_dir)
    temp_path = os.path.join(data_dir, MANIFEST_TEMP_NAME)
    final_path = os.path.join(data_dir, MANIFEST_NAME)
    with open(temp_path, "w", encoding="utf-8") as handle:
        json.dump(asdict(manifest), handle, indent=2)
    _sync_directory(data_dir)
    os.replace(temp_path, final_path)


def read_manifest(data_dir) -> Manifest | None:
    """Return the manifest in data_dir, or None when there is none yet."""
    path = os.path.join(os.fspath(data_dir), MANIFEST_NAME)
    try:
        with open(path, encoding="utf-8") as handle:
            document = json.load(handle)
    except FileNotFoundError:
        return None
    return Manifest(
        version=document.get("version", 0),
        snap=document.get("snap", ""),
        next_wal=document.get("next_wal", ""),
        created_ms=document.get("created_ms", 0),
    )