"""Numbered WAL files in the data directory: creation, rotation and cleanup."""

import os
import re
import threading

from osprey.wal import WAL, WALRecord

_PREFIX = "wal-"
_SUFFIX = ".oswal"
_INDEX_PATTERN = re.compile(r"[+-]?[0-9]+")


def extract_wal_index(filename: str) -> int:
    """Return the index in a name of the form wal-00000001.oswal."""
    parts = filename.split("-")
    if len(parts) != 2:
        raise ValueError(f"invalid WAL filename: {filename}")
    text = parts[1].removesuffix(_SUFFIX)
    if not _INDEX_PATTERN.fullmatch(text):
        raise ValueError(f"invalid WAL filename: {filename}")
    return int(text)


class WALManager:
    """Owns the current WAL and rotates to a new file when it fills up."""

    def __init__(self, config):
        self.config = config
        self.data_dir = os.fspath(config.data_dir)
        os.makedirs(self.data_dir, exist_ok=True)
        self._lock = threading.RLock()

        files = self.list_wal_files()
        self.wal_index = extract_wal_index(files[-1]) + 1 if files else 1
        self._current: WAL | None = self._open(self.wal_index)

    def _open(self, index: int) -> WAL:
        return WAL(self.data_dir, index, self.config.wal_max_bytes, self.config.sync_policy)

    def append_record(self, record: WALRecord) -> None:
        with self._lock:
            if self._current.is_full():
                self.rotate()
            self._current.append(record)

    def rotate(self) -> None:
        """Close the current WAL and start the next numbered one."""
        with self._lock:
            self._current.close()
            self.wal_index += 1
            self._current = self._open(self.wal_index)

    def list_wal_files(self) -> list[str]:
        return sorted(
            name
            for name in os.listdir(self.data_dir)
            if name.startswith(_PREFIX) and name.endswith(_SUFFIX)
        )

    def get_wals_for_replay(self, start_wal) -> list[str]:
        """Paths of the WALs to replay, from start_wal on (all of them if empty)."""
        files = self.list_wal_files()
        if start_wal:
            try:
                files = files[files.index(start_wal):]
            except ValueError:
                raise FileNotFoundError(f"start WAL not found: {start_wal}") from None
        return [os.path.join(self.data_dir, name) for name in files]

    def delete_old_wals(self, keep_from_wal: str) -> None:
        """Remove every WAL whose name sorts before keep_from_wal."""
        for name in self.list_wal_files():
            if name < keep_from_wal:
                os.remove(os.path.join(self.data_dir, name))

    def current_wal_name(self) -> str:
        with self._lock:
            if self._current is None:
                return ""
            return os.path.basename(self._current.path)

    def current_wal_size(self) -> int:
        with self._lock:
            return self._current.size()

    def close(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.close()