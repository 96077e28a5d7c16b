import dataclasses
import os

import pytest

from osprey.config import default_config
from osprey.wal import RecordType, WALReader, WALRecord, serialize_record
from osprey.wal_manager import WALManager, extract_wal_index


@pytest.fixture
def make_manager(tmp_path):
    managers = []

    def factory(**overrides):
        cfg = dataclasses.replace(
            default_config(), data_dir=str(tmp_path), sync_policy="os", **overrides
        )
        manager = WALManager(cfg)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.close()


def _record(key, version=1):
    return WALRecord(type=RecordType.SET, key=key, value=b"value-" + key.encode(), version=version)


def test_first_wal_name(make_manager):
    manager = make_manager()
    assert manager.current_wal_name() == "wal-00000001.oswal"
    assert manager.list_wal_files() == ["wal-00000001.oswal"]


def test_reopen_uses_next_index(make_manager):
    first = make_manager()
    first.close()
    second = make_manager()
    assert second.current_wal_name() == "wal-00000002.oswal"
    assert len(second.list_wal_files()) == 2


def test_append_round_trip(make_manager):
    manager = make_manager()
    records = [_record("a"), _record("b", 2)]
    for record in records:
        manager.append_record(record)
    assert manager.current_wal_size() == sum(len(serialize_record(r)) for r in records)
    manager.close()

    (path,) = manager.get_wals_for_replay("")
    with WALReader(path) as reader:
        assert list(reader) == records


def test_rotation_when_full(make_manager):
    manager = make_manager(wal_max_bytes=1)
    manager.append_record(_record("a"))
    manager.append_record(_record("b"))
    assert manager.current_wal_name() == "wal-00000002.oswal"
    assert manager.list_wal_files() == ["wal-00000001.oswal", "wal-00000002.oswal"]

    manager.close()
    replayed = []
    for path in manager.get_wals_for_replay(""):
        with WALReader(path) as reader:
            replayed.extend(record.key for record in reader)
    assert replayed == ["a", "b"]


def test_replay_from_start(make_manager):
    manager = make_manager()
    manager.rotate()
    manager.rotate()
    files = manager.list_wal_files()
    paths = manager.get_wals_for_replay(files[1])
    assert [os.path.basename(p) for p in paths] == files[1:]
    assert paths[0] == os.path.join(manager.data_dir, files[1])


def test_replay_unknown_start(make_manager):
    manager = make_manager()
    with pytest.raises(FileNotFoundError):
        manager.get_wals_for_replay("wal-99999999.oswal")


def test_delete_old_wals(make_manager):
    manager = make_manager()
    manager.rotate()
    manager.rotate()
    current = manager.current_wal_name()
    manager.delete_old_wals(current)
    assert manager.list_wal_files() == [current]


def test_list_ignores_other_files(make_manager, tmp_path):
    (tmp_path / "snap-00000001.osnap").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("x")
    manager = make_manager()
    assert all(name.startswith("wal-") for name in manager.list_wal_files())
    assert len(manager.list_wal_files()) == 1


def test_extract_wal_index():
    assert extract_wal_index("wal-00000001.oswal") == 1
    assert extract_wal_index("wal-00000002.oswal") == 2


@pytest.mark.parametrize("name", ["wal.oswal", "wal-a-b.oswal", "wal-abc.oswal"])
def test_extract_wal_index_invalid(name):
    with pytest.raises(ValueError):
        extract_wal_index(name)