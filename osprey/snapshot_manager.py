"""Creates, loads and prunes numbered snapshot files."""

import logging
import os
import re
import threading
import time

from osprey.snapshot import (
    Manifest,
    SnapshotError,
    SnapshotReader,
    SnapshotWriter,
    read_manifest,
    write_manifest,
)
from osprey.store import now_ms

log = logging.getLogger("osprey")

_PREFIX = "snap-"
_SUFFIX = ".osnap"
_INDEX_PATTERN = re.compile(r"[+-]?[0-9]+")
_MAX_SNAPSHOT_AGE_MS = 10 * 60 * 1000
_MIN_LIVE_DEAD_RATIO = 0.5


def extract_snap_index(filename: str) -> int:
    """Return the index in a name of the form snap-00000001.osnap."""
    parts = filename.split("-")
    if len(parts) != 2:
        raise ValueError(f"invalid snapshot filename: {filename}")
    text = parts[1].removesuffix(_SUFFIX)
    if not _INDEX_PATTERN.fullmatch(text):
        raise ValueError(f"invalid snapshot filename: {filename}")
    return int(text)


class SnapshotManager:
    """Decides when to snapshot, writes snapshots and loads the latest one."""

    def __init__(self, config):
        self.config = config
        self.data_dir = os.fspath(config.data_dir)
        self.last_snapshot_ms = now_ms()
        self._lock = threading.Lock()
        self._in_progress = threading.Lock()

        files = self.list_snapshot_files()
        self.snap_index = extract_snap_index(files[-1]) + 1 if files else 1

    def needs_snapshot(self, wal_size: int, live_bytes: int, dead_bytes: int) -> bool:
        if wal_size > self.config.wal_max_bytes:
            return True
        if dead_bytes > 0 and live_bytes / dead_bytes < _MIN_LIVE_DEAD_RATIO:
            return True
        return now_ms() - self.last_snapshot_ms > _MAX_SNAPSHOT_AGE_MS

    def create_snapshot(self, store, current_wal: str) -> None:
        """Write every live entry of store to a new snapshot and point the manifest at it."""
        if not self._in_progress.acquire(blocking=False):
            raise SnapshotError("snapshot already in progress")
        try:
            with self._lock:
                self._write_snapshot(store, current_wal)
        finally:
            self._in_progress.release()

    def _write_snapshot(self, store, current_wal: str) -> None:
        started = time.monotonic()
        log.info("Starting snapshot %d", self.snap_index)

        snap_file = f"{_PREFIX}{self.snap_index:08d}{_SUFFIX}"
        snap_path = os.path.join(self.data_dir, snap_file)
        temp_path = snap_path + ".tmp"

        try:
            writer = SnapshotWriter(temp_path)
        except OSError as exc:
            raise SnapshotError(f"failed to create snapshot writer: {exc}") from exc

        count = 0
        try:
            with store.lock:
                for key, entry in store.data.items():
                    if not entry.is_expired():
                        writer.write_entry(key, entry)
                        count += 1
        except OSError as exc:
            _close_quietly(writer)
            _remove_quietly(temp_path)
            raise SnapshotError(f"failed to write entry: {exc}") from exc

        try:
            writer.close()
        except OSError as exc:
            _remove_quietly(temp_path)
            raise SnapshotError(f"failed to close snapshot: {exc}") from exc

        try:
            os.replace(temp_path, snap_path)
        except OSError as exc:
            _remove_quietly(temp_path)
            raise SnapshotError(f"failed to rename snapshot: {exc}") from exc

        manifest = Manifest(
            version=1, snap=snap_file, next_wal=current_wal, created_ms=now_ms()
        )
        try:
            write_manifest(self.data_dir, manifest)
        except OSError as exc:
            raise SnapshotError(f"failed to write manifest: {exc}") from exc

        log.info(
            "Snapshot %d completed: %d entries in %.3fs",
            self.snap_index,
            count,
            time.monotonic() - started,
        )
        self.snap_index += 1
        self.last_snapshot_ms = now_ms()

    def load_snapshot(self, store) -> str:
        """Load the manifest's snapshot into store; return the WAL to replay from."""
        manifest = read_manifest(self.data_dir)
        if manifest is None:
            return ""

        snap_path = os.path.join(self.data_dir, manifest.snap)
        try:
            reader = SnapshotReader(snap_path)
        except (OSError, SnapshotError) as exc:
            raise SnapshotError(f"failed to open snapshot: {exc}") from exc

        log.info("Loading snapshot %s", manifest.snap)
        count = 0
        with reader:
            try:
                for key, entry in reader:
                    if not entry.is_expired():
                        store.data[key] = entry
                        count += 1
            except (OSError, SnapshotError) as exc:
                raise SnapshotError(f"failed to read snapshot entry: {exc}") from exc

        log.info("Loaded %d entries from snapshot", count)
        return manifest.next_wal

    def cleanup_old_files(self, keep_from_wal: str) -> None:
        """Remove every snapshot but the newest."""
        with self._lock:
            for name in self.list_snapshot_files()[:-1]:
                try:
                    os.remove(os.path.join(self.data_dir, name))
                except OSError as exc:
                    log.warning("Failed to remove old snapshot %s: %s", name, exc)
                else:
                    log.info("Removed old snapshot %s", name)

    def list_snapshot_files(self) -> list[str]:
        return sorted(
            name
            for name in os.listdir(self.data_dir)
            if name.startswith(_PREFIX) and name.endswith(_SUFFIX)
        )

    def get_stats(self) -> dict[str, str]:
        try:
            total = len(self.list_snapshot_files())
        except OSError:
            total = 0
        return {
            "snapshots_total": str(total),
            "last_snapshot_ms": str(self.last_snapshot_ms),
        }


def _close_quietly(writer: SnapshotWriter) -> None:
    try:
        writer.close()
    except OSError:
        pass


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass