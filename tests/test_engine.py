import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ibackup.config import BackupConf
from ibackup.engine import SyncEngine
from ibackup.exception import ConfigurationError
from ibackup.localfs import LocalFileSystem

OLD = datetime(2020, 1, 1, tzinfo=timezone.utc)


def _set_mtime(path, timestamp):
    os.utime(path, (timestamp, timestamp))


def test_backup_create_then_skip(store, source):
    engine = SyncEngine(store, bounded_capacity=2, max_parallelism=2)
    summary = engine.backup(source)
    assert (summary.created, summary.overwritten, summary.skipped, summary.failed) == (2, 0, 0, 0)
    assert sorted(store.objects) == ["photos/2020/b.txt", "photos/a.txt"]
    assert store.objects["photos/a.txt"][0] == b"first file"
    assert summary.run_id
    assert not summary.cancelled

    summary = engine.backup(source)
    assert (summary.created, summary.overwritten, summary.skipped, summary.failed) == (0, 0, 2, 0)
    assert len(store.uploads) == 2


def test_backup_overwrite_modified(store, source):
    engine = SyncEngine(store)
    engine.backup(source)
    (source / "a.txt").write_bytes(b"changed")
    _set_mtime(source / "a.txt", time.time() + 3600)
    summary = engine.backup(source)
    assert (summary.created, summary.overwritten, summary.skipped) == (0, 1, 1)
    assert store.objects["photos/a.txt"][0] == b"changed"


def test_backup_isolates_failures(make_store, tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    for i_file in range(10):
        (root / f"f{i_file}.txt").write_text(f"file {i_file}")
    store = make_store(fail_keys=["src/f3.txt"])
    summary = SyncEngine(store, bounded_capacity=3, max_parallelism=4).backup(root)
    assert summary.succeeded == 9
    assert summary.failed == 1
    assert summary.failures[0][0] == str(root.resolve() / "f3.txt")
    assert "connection reset" in summary.failures[0][1]
    assert "src/f3.txt" not in store.objects


class LockedFileSystem(LocalFileSystem):
    def describe(self, path):
        if Path(path).name == "locked.txt":
            raise PermissionError(13, "Permission denied", str(path))
        return super().describe(path)


class BrokenWalkFileSystem(LocalFileSystem):
    def enumerate_files(self, root, on_error=None):
        yield from list(super().enumerate_files(root, on_error))[:1]
        raise RuntimeError("disk gone")


def test_backup_unreadable_file(store, tmp_path):
    one = tmp_path / "one"
    one.mkdir()
    (one / "a.txt").write_bytes(b"readable")
    (one / "locked.txt").write_bytes(b"not readable")
    two = tmp_path / "two"
    two.mkdir()
    (two / "c.txt").write_bytes(b"other root")

    engine = SyncEngine(store, filesystem=LockedFileSystem())
    summaries = engine.backup_all([one, two])
    first = summaries[str(one.resolve())]
    assert (first.created, first.failed) == (1, 1)
    assert first.failures[0][0] == str(one.resolve() / "locked.txt")
    assert not first.cancelled
    assert summaries[str(two.resolve())].created == 1
    assert sorted(store.objects) == ["one/a.txt", "two/c.txt"]

    summary = engine.backup(two)
    assert summary.skipped == 1
    assert not summary.cancelled


def test_backup_enumeration_error(store, source):
    engine = SyncEngine(store, filesystem=BrokenWalkFileSystem())
    summary = engine.backup(source)
    assert (summary.created, summary.failed) == (1, 1)
    assert summary.failures == [(str(source.resolve()), "RuntimeError('disk gone')")]
    assert not summary.cancelled
    assert not engine.cancel_event.is_set()

    engine.filesystem = LocalFileSystem()
    summary = engine.backup(source)
    assert (summary.created, summary.skipped) == (1, 1)


def test_backup_interrupted(store, source):
    uploaded = threading.Event()
    upload = store.upload

    def _upload(*args, **kwargs):
        upload(*args, **kwargs)
        uploaded.set()

    class InterruptedFileSystem(LocalFileSystem):
        def enumerate_files(self, root, on_error=None):
            files = list(super().enumerate_files(root, on_error))
            yield files[0]
            uploaded.wait(5)
            raise KeyboardInterrupt

    store.upload = _upload
    engine = SyncEngine(store, filesystem=InterruptedFileSystem(), max_parallelism=1)
    summary = engine.backup(source)
    assert summary.cancelled
    assert summary.created == 1
    assert summary.total == 1
    assert engine.cancel_event.is_set()


def test_restore_failed_download_is_retried(store, tmp_path):
    store.put("photos/a.txt", b"first file", OLD)
    store.break_keys.add("photos/a.txt")
    target = tmp_path / "restore"
    target.mkdir()
    engine = SyncEngine(store)

    summary = engine.restore(target)
    assert summary.failed == 1
    assert "ConnectionResetError" in summary.failures[0][1]
    assert list((target / "photos").iterdir()) == []

    store.break_keys.clear()
    summary = engine.restore(target)
    assert (summary.created, summary.skipped, summary.failed) == (1, 0, 0)
    assert (target / "photos" / "a.txt").read_bytes() == b"first file"


def test_restore_failed_overwrite_keeps_local(store, tmp_path):
    store.put("photos/a.txt", b"remote", OLD)
    store.break_keys.add("photos/a.txt")
    local = tmp_path / "photos" / "a.txt"
    local.parent.mkdir()
    local.write_bytes(b"local")
    _set_mtime(local, OLD.timestamp() - 3600)

    summary = SyncEngine(store).restore(tmp_path)
    assert summary.failed == 1
    assert local.read_bytes() == b"local"
    assert list(local.parent.iterdir()) == [local]


def test_backup_integrity_alarm(store, source):
    store.fingerprint_override["photos/a.txt"] = "sha2:not-the-right-hash"
    summary = SyncEngine(store).backup(source)
    assert summary.created == 2
    assert summary.integrity_alarms == [str(source.resolve() / "a.txt")]


def test_backup_missing_source(store, tmp_path):
    with pytest.raises(ConfigurationError):
        SyncEngine(store).backup(tmp_path / "does_not_exist")
    with pytest.raises(ConfigurationError):
        SyncEngine(store).backup("")


def test_backup_all(store, source, tmp_path):
    other = tmp_path / "documents"
    other.mkdir()
    (other / "c.txt").write_bytes(b"third file")
    summaries = SyncEngine(store).backup_all([source, other])
    assert [s.created for s in summaries.values()] == [2, 1]
    assert "documents/c.txt" in store.objects


def test_backup_all_checks_first(store, source, tmp_path):
    with pytest.raises(ConfigurationError):
        SyncEngine(store).backup_all([source, tmp_path / "does_not_exist"])
    assert store.uploads == []
    with pytest.raises(ConfigurationError):
        SyncEngine(store).backup_all([])


def test_backup_cancel(make_store, tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    for i_file in range(5):
        (root / f"f{i_file}.txt").write_text(f"file {i_file}")
    store = make_store()
    engine = SyncEngine(store, bounded_capacity=1, max_parallelism=1)
    upload = store.upload

    def _upload_and_cancel(*args, **kwargs):
        upload(*args, **kwargs)
        engine.cancel()

    store.upload = _upload_and_cancel
    summary = engine.backup(root)
    assert summary.cancelled
    assert summary.created == 1
    assert summary.total == 1
    assert len(store.uploads) == 1


def test_restore(store, tmp_path):
    store.put("photos/a.txt", b"first file", OLD)
    store.put("photos/2020/b.txt", b"second file", OLD)
    target = tmp_path / "restore"
    target.mkdir()
    engine = SyncEngine(store, bounded_capacity=2, max_parallelism=2)
    summary = engine.restore(target)
    assert (summary.created, summary.skipped, summary.failed) == (2, 0, 0)
    assert (target / "photos" / "a.txt").read_bytes() == b"first file"
    assert (target / "photos" / "2020" / "b.txt").read_bytes() == b"second file"

    summary = engine.restore(target)
    assert (summary.created, summary.skipped, summary.failed) == (0, 2, 0)


def test_restore_into_root_name(store, tmp_path):
    store.put("photos/a.txt", b"first file", OLD)
    target = tmp_path / "photos"
    target.mkdir()
    SyncEngine(store).restore(target)
    assert (target / "a.txt").read_bytes() == b"first file"
    assert not (target / "photos").exists()


def test_restore_stale_local(store, tmp_path):
    store.put("photos/same.txt", b"same", OLD)
    store.put("photos/differs.txt", b"remote", OLD)
    local = tmp_path / "photos"
    local.mkdir()
    (local / "same.txt").write_bytes(b"same")
    (local / "differs.txt").write_bytes(b"local")
    for fname in ["same.txt", "differs.txt"]:
        _set_mtime(local / fname, OLD.timestamp() - 3600)

    summary = SyncEngine(store).restore(tmp_path)
    assert (summary.created, summary.overwritten, summary.skipped) == (0, 1, 1)
    assert (local / "differs.txt").read_bytes() == b"remote"
    assert store.downloads == ["photos/differs.txt"]


def test_restore_integrity_alarm(store, tmp_path):
    store.put("photos/a.txt", b"first file", OLD)
    store.fingerprint_override["photos/a.txt"] = "sha2:not-the-right-hash"
    summary = SyncEngine(store).restore(tmp_path)
    assert summary.created == 1
    assert summary.integrity_alarms == ["photos/a.txt"]


def test_restore_listing_failure(make_store, tmp_path):
    store = make_store(fail_prefixes=["photos/2020/"])
    store.put("photos/a.txt", b"first file", OLD)
    store.put("photos/2020/b.txt", b"second file", OLD)
    summary = SyncEngine(store).restore(tmp_path)
    assert summary.created == 1
    assert summary.failed == 1
    assert summary.failures[0][0] == "photos/2020/"


def test_restore_rejects_traversal(store, tmp_path):
    store.put("photos/../evil.txt", b"evil", OLD)
    target = tmp_path / "restore"
    target.mkdir()
    summary = SyncEngine(store).restore(target)
    assert summary.failed == 1
    assert not (tmp_path / "evil.txt").exists()
    assert not (target / "evil.txt").exists()


def test_restore_missing_target(store, tmp_path):
    with pytest.raises(ConfigurationError):
        SyncEngine(store).restore(tmp_path / "does_not_exist")


@pytest.mark.parametrize("capacity,parallelism", [(0, 1), (1, 0), (-5, 4), (True, 4)])
def test_invalid_pipeline_settings(store, capacity, parallelism):
    with pytest.raises(ConfigurationError):
        SyncEngine(store, bounded_capacity=capacity, max_parallelism=parallelism)


def test_from_config(store, tmp_path):
    conf = BackupConf(tmp_path / "ibackup.json")
    conf.data["pipeline"]["max_parallelism"] = 7
    conf.data["upload"]["parallel_threads"] = 2
    engine = SyncEngine.from_config(store, conf)
    assert engine.max_parallelism == 7
    assert engine.bounded_capacity == 100
    assert engine.options.parallel_threads == 2


def test_backup_scenario_unchanged_content(store, tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "a.txt").write_bytes(b"hi")
    engine = SyncEngine(store)

    summary = engine.backup(root)
    assert summary.created == 1
    assert summary.integrity_alarms == []
    assert store.get_metadata("root/a.txt").fingerprint == \
        "sha2:j0NDRmSPa5bfid2pAcUXaxCm2Dlh3TwayItZstwyeqQ="

    assert engine.backup(root).skipped == 1

    _set_mtime(root / "a.txt", time.time() + 3600)
    summary = engine.backup(root)
    assert summary.overwritten == 1
    assert summary.integrity_alarms == []
    assert store.objects["root/a.txt"][0] == b"hi"
