import os
import queue
from dataclasses import dataclass

import pytest

from fdinput.filecfg import FileConfig
from fdinput.offsets import OffsetDB
from fdinput.provider import (
    Job,
    JobProvider,
    MaintenanceResult,
    get_inode,
    source_id_by_stat,
)


@dataclass
class _Event:
    source_id: int
    offset: int
    seq_id: int = 1
    stream_name: str = "not_set"
    regular: bool = True

    def is_regular_kind(self):
        return self.regular


@pytest.fixture
def dirs(tmp_path):
    watch = tmp_path / "watch"
    offsets = tmp_path / "offsets"
    watch.mkdir()
    offsets.mkdir()
    return watch, offsets


def make_provider(dirs, **kwargs):
    watch, offsets = dirs
    params = dict(
        watching_dir=str(watch),
        offsets_file=str(offsets / "offsets.yaml"),
        workers_count=1,
        async_interval="1h",
        report_interval="1h",
        maintenance_interval="1h",
    )
    params.update(kwargs)
    return JobProvider(FileConfig(**params), controller=None)


def write(path, data):
    with open(path, "ab") as f:
        f.write(data)
    return str(path)


def add(provider, path):
    provider.process_notification(str(path), os.lstat(path))
    return provider.jobs[source_id_by_stat(os.stat(path), "")]


def test_source_id_is_stable_and_depends_on_symlink(tmp_path):
    path = write(tmp_path / "a.log", b"x\n")
    info = os.stat(path)
    plain = source_id_by_stat(info, "")
    assert plain == source_id_by_stat(info, "")
    assert source_id_by_stat(info, "/some/link") != plain
    assert 0 <= plain - get_inode(info) <= 0xFFFFFFFF
    assert get_inode(info) == info.st_ino


def test_new_file_becomes_queued_job(dirs):
    provider = make_provider(dirs)
    path = write(dirs[0] / "a.log", b"line\n")
    job = add(provider, path)
    assert job.is_done is False
    assert job.is_virgin is True
    assert provider.jobs_done == 0
    assert provider.jobs_log == [path]
    assert provider.next_job() is job


def test_offsets_file_is_ignored(dirs):
    provider = make_provider(dirs)
    path = write(dirs[1] / "offsets.yaml", b"")
    provider.process_notification(path, os.lstat(path))
    assert provider.jobs == {}


def test_known_file_is_resumed_only_when_done(dirs):
    provider = make_provider(dirs)
    path = write(dirs[0] / "a.log", b"line\n")
    job = add(provider, path)
    provider.next_job()
    provider.process_notification(path, os.lstat(path))
    assert provider.jobs_queue.empty()
    provider.done_job(job)
    assert provider.jobs_done == 1
    provider.process_notification(path, os.lstat(path))
    assert provider.next_job() is job
    assert provider.jobs_done == 0


def test_done_job_twice_raises(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"line\n"))
    provider.done_job(job)
    assert job.is_virgin is False
    with pytest.raises(RuntimeError):
        provider.done_job(job)


def test_commit_records_offsets_and_detects_corruption(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"line\nline\n"))
    provider.commit(_Event(job.source_id, 5, stream_name="stdout"))
    assert job.offsets.get("stdout") == 5
    assert provider.offsets_committed == 1
    with pytest.raises(RuntimeError):
        provider.commit(_Event(job.source_id, 5, stream_name="stdout"))


def test_commit_skips_ignored_and_unknown_events(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"line\n"))
    job.ignore_events_le = 3
    provider.commit(_Event(job.source_id, 5, seq_id=3))
    provider.commit(_Event(job.source_id, 5, seq_id=4, regular=False))
    provider.commit(_Event(job.source_id + 1, 5, seq_id=9))
    assert len(job.offsets) == 0
    assert provider.offsets_committed == 0


def test_sync_mode_saves_on_commit(dirs):
    provider = make_provider(dirs, persistence_mode="sync")
    path = write(dirs[0] / "a.log", b"abc\n")
    job = add(provider, path)
    provider.commit(_Event(job.source_id, 4, stream_name="stdout"))
    with open(provider.config.offsets_file) as f:
        parsed = OffsetDB("", "").parse(f.read())
    assert parsed[job.source_id].streams == {"stdout": 4}
    assert parsed[job.source_id].filename == path


def test_truncate_job_starts_over(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"line\nline\n"))
    job.file.read()
    job.last_event_seq = 7
    provider.commit(_Event(job.source_id, 10, stream_name="stdout"))
    provider.truncate_job(job)
    assert job.ignore_events_le == 7
    assert job.file.tell() == 0
    assert job.offsets.get("stdout") == 0


def test_tail_seeks_before_last_byte(dirs):
    provider = make_provider(dirs, offsets_op="tail")
    data = b"abc\ndef\n"
    job = add(provider, write(dirs[0] / "a.log", data))
    assert job.file.tell() == len(data) - 1
    assert job.should_skip is True


def test_tail_of_empty_file(dirs):
    provider = make_provider(dirs, offsets_op="tail")
    job = add(provider, write(dirs[0] / "a.log", b""))
    assert job.file.tell() == 0
    assert job.should_skip is False


def test_reset_is_used_after_start(dirs):
    provider = make_provider(dirs, offsets_op="tail")
    provider.is_started = True
    job = add(provider, write(dirs[0] / "a.log", b"abc\n"))
    assert job.file.tell() == 0


def test_continue_uses_loaded_offsets_and_saves_on_stop(dirs):
    watch, _ = dirs
    line1 = b"line1\n"
    path = write(watch / "a.log", line1 + b"line2\n")
    info = os.stat(path)
    sid = source_id_by_stat(info, "")
    provider = make_provider(dirs)
    with open(provider.config.offsets_file, "w") as f:
        f.write(
            f"- file: {path}\n  inode: {info.st_ino}\n  source_id: {sid}\n"
            f"  streams:\n    not_set: {len(line1)}\n"
        )

    provider.start()
    try:
        job = provider.jobs[sid]
        assert job.file.tell() == len(line1)
        assert job.offsets.get("not_set") == len(line1)
    finally:
        provider.stop()

    with open(provider.config.offsets_file) as f:
        parsed = OffsetDB("", "").parse(f.read())
    assert parsed[sid].streams == {"not_set": len(line1)}


def test_continue_without_streams_raises(dirs):
    provider = make_provider(dirs)
    path = write(dirs[0] / "a.log", b"abc\n")
    info = os.stat(path)
    sid = source_id_by_stat(info, "")
    provider.loaded_offsets = OffsetDB("", "").parse(
        f"- file: {path}\n  inode: {info.st_ino}\n  source_id: {sid}\n  streams:\n"
    )
    with pytest.raises(RuntimeError):
        provider.process_notification(path, os.lstat(path))


def test_max_files_exceeded(dirs):
    provider = make_provider(dirs, max_files=1)
    add(provider, write(dirs[0] / "a.log", b"a\n"))
    path = write(dirs[0] / "b.log", b"b\n")
    with pytest.raises(RuntimeError):
        provider.process_notification(path, os.lstat(path))


def test_maintenance_of_active_job(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"a\n"))
    assert provider.maintenance_job(job) is MaintenanceResult.NOT_DONE


def test_maintenance_resumes_job_with_new_data(dirs):
    provider = make_provider(dirs)
    job = add(provider, write(dirs[0] / "a.log", b"a\n"))
    provider.next_job()
    provider.done_job(job)
    assert provider.maintenance_job(job) is MaintenanceResult.RESUMED
    assert job.is_done is False
    assert provider.jobs_queue.get_nowait() is job


def test_maintenance_reopens_read_file(dirs):
    provider = make_provider(dirs)
    data = b"abc\n"
    job = add(provider, write(dirs[0] / "a.log", data))
    provider.next_job()
    old_file = job.file
    job.file.read()
    provider.done_job(job)
    assert provider.maintenance_job(job) is MaintenanceResult.NOOP
    assert old_file.closed
    assert job.file is not old_file
    assert job.file.tell() == len(data)


def test_maintenance_releases_deleted_file(dirs):
    provider = make_provider(dirs)
    path = write(dirs[0] / "a.log", b"abc\n")
    job = add(provider, path)
    provider.next_job()
    job.file.read()
    provider.done_job(job)
    os.remove(path)
    results = provider.maintenance_jobs()
    assert results[MaintenanceResult.DELETED] == 1
    assert provider.jobs == {}
    assert provider.jobs_done == 0


def test_maintenance_drops_replaced_file(dirs):
    provider = make_provider(dirs)
    path = write(dirs[0] / "a.log", b"abc\n")
    job = add(provider, path)
    provider.next_job()
    job.file.read()
    provider.done_job(job)
    os.rename(path, path + ".old")
    write(path, b"other\n")
    assert provider.maintenance_job(job) is MaintenanceResult.DELETED
    assert job.source_id not in provider.jobs


def test_symlink_creates_job_and_is_forgotten_when_broken(dirs, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    target = write(outside / "target.log", b"abc\n")
    link = str(dirs[0] / "link.log")
    os.symlink(target, link)

    provider = make_provider(dirs)
    provider.process_notification(link, os.lstat(link))
    sid = source_id_by_stat(os.stat(target), link)
    job = provider.jobs[sid]
    assert job.symlink == link
    assert job.filename == os.path.realpath(target)
    assert list(provider.symlinks.values()) == [link]

    os.remove(target)
    provider.maintenance_symlinks()
    assert provider.symlinks == {}


def test_next_job_returns_none_sentinel(dirs):
    provider = make_provider(dirs)
    provider.jobs_queue.put(None)
    assert provider.next_job() is None
    with pytest.raises(queue.Empty):
        provider.jobs_queue.get_nowait()


def test_job_defaults_are_done_and_virgin(tmp_path):
    path = write(tmp_path / "a.log", b"")
    with open(path, "rb") as f:
        job = Job(file=f, inode=1, source_id=2, filename=path)
        assert (job.is_done, job.is_virgin, job.should_skip) == (True, True, False)
        assert len(job.offsets) == 0