"""Store whose mutations are logged to a WAL and periodically snapshotted."""

import logging
import threading
import time

from osprey.snapshot import SnapshotError
from osprey.snapshot_manager import SnapshotManager
from osprey.store import (
    Entry,
    ExpiryHeap,
    ExpiryItem,
    KeyInvalidError,
    SetOptions,
    Store,
    StoreError,
    now_ms,
    validate_key,
)
from osprey.wal import RecordType, WALError, WALReader, WALRecord
from osprey.wal_manager import WALManager

log = logging.getLogger("osprey")

_SNAPSHOT_CHECK_SECONDS = 30.0
_SHUTDOWN_TIMEOUT_SECONDS = 5.0
_LIVE_BYTES_PER_KEY = 1000


class PersistentStore(Store):
    """An in-memory store that logs every change and recovers it on start-up."""

    def __init__(self, config):
        self._sweep_seconds = config.sweep_interval().total_seconds()
        if self._sweep_seconds <= 0:
            raise ValueError("sweep interval must be positive")
        super().__init__(config)

        self._write_lock = threading.RLock()
        self._sweeping = threading.Lock()
        self._snapshot_paused = threading.Event()
        self._sweeper_stop = threading.Event()
        self._snapshot_stop = threading.Event()
        self._closed = False

        self.wal_manager = WALManager(config)
        try:
            self.snapshot_manager = SnapshotManager(config)
            self._recover()
        except BaseException:
            self.wal_manager.close()
            raise

        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="osprey-sweeper", daemon=True
        )
        self._snapshotter = threading.Thread(
            target=self._snapshot_loop, name="osprey-snapshot", daemon=True
        )
        self._sweeper.start()
        self._snapshotter.start()

    # Mutations

    def set(self, key: str, value, opts: SetOptions | None = None) -> int:
        """Store value under key, log it, and return the new version."""
        with self._write_lock, self.lock:
            version = super().set(key, value, opts)
            entry = self.data[key]
            record = WALRecord(
                type=RecordType.SET,
                key=key,
                value=entry.value,
                expiry_ms=entry.expiry_ms,
                version=version,
            )
            try:
                self.wal_manager.append_record(record)
            except OSError as exc:
                self.data.pop(key, None)
                raise StoreError(f"WAL write failed: {exc}") from exc
            return version

    def delete(self, key: str) -> bool:
        """Remove a live key and log the deletion; return whether it existed."""
        try:
            validate_key(key)
        except KeyInvalidError:
            return False
        with self._write_lock, self.lock:
            entry = self._live(key)
            if entry is None or not super().delete(key):
                return False
            record = WALRecord(
                type=RecordType.DEL, key=key, version=entry.version, expiry_ms=-1
            )
            try:
                self.wal_manager.append_record(record)
            except OSError as exc:
                log.error("WAL write failed for DELETE: %s", exc)
            return True

    def expire(self, key: str, ttl_ms: int) -> None:
        """Give a live key an expiry ttl_ms from now and log it."""
        with self._write_lock, self.lock:
            super().expire(key, ttl_ms)
            entry = self.data[key]
            record = WALRecord(
                type=RecordType.EXPIRE,
                key=key,
                expiry_ms=entry.expiry_ms,
                version=entry.version,
            )
            try:
                self.wal_manager.append_record(record)
            except OSError as exc:
                entry.expiry_ms = -1
                raise StoreError(f"WAL write failed: {exc}") from exc

    def incr(self, key: str, delta: int) -> int:
        """Add delta to the integer at key, log the new value, and return it."""
        with self._write_lock, self.lock:
            new_value = super().incr(key, delta)
            entry = self.data[key]
            record = WALRecord(
                type=RecordType.SET,
                key=key,
                value=entry.value,
                expiry_ms=entry.expiry_ms,
                version=entry.version,
            )
            try:
                self.wal_manager.append_record(record)
            except OSError as exc:
                self.data.pop(key, None)
                raise StoreError(f"WAL write failed: {exc}") from exc
            return new_value

    # Recovery

    def _recover(self) -> None:
        try:
            next_wal = self.snapshot_manager.load_snapshot(self)
        except (OSError, SnapshotError, ValueError) as exc:
            raise StoreError(f"recovery failed: failed to load snapshot: {exc}") from exc
        try:
            wal_paths = self.wal_manager.get_wals_for_replay(next_wal)
        except OSError as exc:
            raise StoreError(f"recovery failed: {exc}") from exc

        log.info("Recovering from %d WAL files", len(wal_paths))
        for path in wal_paths:
            try:
                self._replay_wal(path)
            except OSError as exc:
                log.warning("Error replaying WAL %s: %s", path, exc)
        self._rebuild_expiry_heap()

    def _replay_wal(self, path: str) -> None:
        count = 0
        with WALReader(path) as reader:
            while True:
                try:
                    record = reader.read_record()
                except WALError as exc:
                    log.warning("Truncating WAL at record %d due to error: %s", count, exc)
                    break
                if record is None:
                    break
                self._apply(record)
                count += 1
        log.info("Replayed %d records from %s", count, path)

    def _apply(self, record: WALRecord) -> None:
        if record.type == RecordType.SET:
            value = record.value or b""
            self.data[record.key] = Entry(
                value=value,
                version=record.version,
                expiry_ms=record.expiry_ms,
                size_bytes=len(value),
            )
        elif record.type == RecordType.DEL:
            self.data.pop(record.key, None)
        elif record.type == RecordType.EXPIRE:
            entry = self.data.get(record.key)
            if entry is not None:
                entry.expiry_ms = record.expiry_ms

    def _rebuild_expiry_heap(self) -> None:
        self.expiry_heap = ExpiryHeap()
        for key, entry in self.data.items():
            if entry.expiry_ms > 0:
                self.expiry_heap.push(ExpiryItem(key=key, expiry_ms=entry.expiry_ms))

    # Background work

    def _sweep_loop(self) -> None:
        while not self._sweeper_stop.wait(self._sweep_seconds):
            try:
                self.sweep_expired()
            except Exception:
                log.exception("Expiry sweep failed")

    def _snapshot_loop(self) -> None:
        while not self._snapshot_stop.wait(_SNAPSHOT_CHECK_SECONDS):
            try:
                self.maybe_snapshot()
            except Exception:
                log.exception("Snapshot check failed")

    def sweep_expired(self) -> int:
        """Delete up to sweep_batch expired keys; return how many were removed."""
        if not self._sweeping.acquire(blocking=False):
            return 0
        try:
            deleted = 0
            with self._write_lock, self.lock:
                now = now_ms()
                for _ in range(self.config.sweep_batch):
                    top = self.expiry_heap.peek()
                    if top is None or top.expiry_ms > now:
                        break
                    self.expiry_heap.pop()
                    entry = self.data.get(top.key)
                    if entry is None:
                        continue
                    if entry.is_expired():
                        del self.data[top.key]
                        self.stats.expired_total += 1
                        deleted += 1
                        record = WALRecord(
                            type=RecordType.DEL,
                            key=top.key,
                            version=entry.version,
                            expiry_ms=-1,
                        )
                        try:
                            self.wal_manager.append_record(record)
                        except OSError as exc:
                            log.error("Failed to log expiry deletion: %s", exc)
                    elif entry.expiry_ms > 0:
                        self.expiry_heap.push(
                            ExpiryItem(key=top.key, expiry_ms=entry.expiry_ms)
                        )
            if deleted:
                log.info("Expiry sweeper deleted %d keys", deleted)
            return deleted
        finally:
            self._sweeping.release()

    def maybe_snapshot(self) -> bool:
        """Take a snapshot if the WAL has grown enough; return whether one was taken."""
        if not self.config.enable_snapshot:
            return False
        wal_size = self.wal_manager.current_wal_size()
        live_bytes = len(self.data) * _LIVE_BYTES_PER_KEY
        dead_bytes = wal_size - live_bytes
        if not self.snapshot_manager.needs_snapshot(wal_size, live_bytes, dead_bytes):
            return False
        try:
            self.create_snapshot()
        except (OSError, SnapshotError, StoreError) as exc:
            log.error("Failed to create snapshot: %s", exc)
            return False
        return True

    def create_snapshot(self) -> None:
        """Snapshot the store, start a new WAL and drop files the snapshot covers."""
        log.info("Starting snapshot...")
        self._snapshot_paused.set()
        try:
            with self._write_lock:
                started = time.monotonic()
                current_wal = self.wal_manager.current_wal_name()
                try:
                    self.snapshot_manager.create_snapshot(self, current_wal)
                finally:
                    pause_ms = (time.monotonic() - started) * 1000
                    if pause_ms > self.config.busy_warn_ms:
                        log.warning(
                            "WARNING: Snapshot pause exceeded threshold: %.1fms", pause_ms
                        )
                try:
                    self.wal_manager.rotate()
                except OSError as exc:
                    raise StoreError(f"failed to rotate WAL: {exc}") from exc
                new_wal = self.wal_manager.current_wal_name()

            try:
                self.snapshot_manager.cleanup_old_files(new_wal)
            except OSError as exc:
                log.warning("Failed to cleanup old files: %s", exc)
            try:
                self.wal_manager.delete_old_wals(current_wal)
            except OSError as exc:
                log.warning("Failed to delete old WALs: %s", exc)
        finally:
            self._snapshot_paused.clear()

    # Introspection and shutdown

    def get_wal_stats(self) -> dict[str, str]:
        stats = {"wal_current": self.wal_manager.current_wal_name()}
        stats.update(self.snapshot_manager.get_stats())
        return stats

    def is_snapshot_paused(self) -> bool:
        return self._snapshot_paused.is_set()

    def close(self) -> None:
        """Stop the background workers and close the WAL."""
        if self._closed:
            return
        self._closed = True
        self._sweeper_stop.set()
        self._snapshot_stop.set()
        deadline = time.monotonic() + _SHUTDOWN_TIMEOUT_SECONDS
        for worker in (self._sweeper, self._snapshotter):
            worker.join(max(0.0, deadline - time.monotonic()))
        if self._sweeper.is_alive() or self._snapshotter.is_alive():
            log.warning(
                "Warning: Background tasks did not finish within timeout during shutdown"
            )
        self.wal_manager.close()