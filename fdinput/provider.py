"""Job provider of the file input: tracks files, their offsets and hands jobs to workers."""

from __future__ import annotations

import logging
import os
import queue
import stat as stat_mod
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, BinaryIO, Protocol

from .filecfg import FileConfig, OffsetsOp, PersistenceMode
from .offsets import InodeOffsets, OffsetDB, StreamOffsets, stream_offsets_from_map
from .watcher import Watcher

logger = logging.getLogger(__name__)

_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1
_SUSPICIOUS_OFFSET = 16 * 1024 * 1024


def _wrap_int64(value: int) -> int:
    return ((value + (1 << 63)) & _UINT64_MASK) - (1 << 63)


class MaintenanceResult(IntEnum):
    """Outcome of maintaining one job."""

    ERROR = 0
    NOT_DONE = 1
    RESUMED = 2
    DELETED = 3
    NOOP = 4


class _Event(Protocol):
    source_id: int
    seq_id: int
    offset: int
    stream_name: str

    def is_regular_kind(self) -> bool: ...


@dataclass(eq=False)
class Job:
    """A tracked file and the reading state of it."""

    file: BinaryIO
    inode: int
    source_id: int
    filename: str
    symlink: str = ""
    ignore_events_le: int = 0  # events with seq id up to this one aren't committed
    last_event_seq: int = 0
    is_virgin: bool = True  # cleared once the job is done for the first time
    is_done: bool = True
    should_skip: bool = False
    offsets: StreamOffsets = field(default_factory=StreamOffsets)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


def get_inode(stat: os.stat_result) -> int:
    """Inode number of a stat result."""
    return stat.st_ino


def source_id_by_stat(stat: os.stat_result, symlink: str) -> int:
    """Source id of a file: its inode mixed with a hash of the symlink it was reached by."""
    inode = _wrap_int64(stat.st_ino)
    sym_hash = _wrap_int64(inode * 8922886018542929)
    for char in symlink:
        sym_hash = _wrap_int64(sym_hash << 2)
        sym_hash = _wrap_int64(sym_hash - 1)
        sym_hash = _wrap_int64(sym_hash + ord(char) * 8460724049)
    # inode numbers mostly fit in 32 bits, the upper bits carry the symlink hash
    return (inode + (sym_hash & _UINT32_MASK)) & _UINT64_MASK


def _open_file(filename: str) -> BinaryIO:
    return open(filename, "rb", buffering=0)


class JobProvider:
    """Creates jobs for found files, resumes them and persists their offsets."""

    def __init__(self, config: FileConfig, controller: Any) -> None:
        self.config = config
        self.controller = controller
        self.offset_db = OffsetDB(config.offsets_file, config.offsets_file_tmp)

        self.is_started = False

        self.jobs: dict[int, Job] = {}
        self.jobs_lock = threading.Lock()
        self.jobs_queue: queue.Queue[Job | None] = queue.Queue(maxsize=config.max_files)
        self.jobs_log: list[str] = []

        self.symlinks: dict[int, str] = {}
        self._symlinks_lock = threading.Lock()

        self._counter_lock = threading.Lock()
        self._jobs_done = 0
        self._offsets_committed = 0

        self.loaded_offsets: dict[int, InodeOffsets] = {}

        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

        self.watcher = Watcher(
            config.watching_dir, config.filename_pattern, config.dir_pattern, self.process_notification
        )

    @property
    def jobs_done(self) -> int:
        """Number of jobs waiting for new data."""
        with self._counter_lock:
            return self._jobs_done

    @property
    def offsets_committed(self) -> int:
        """Number of committed offsets so far."""
        with self._counter_lock:
            return self._offsets_committed

    def _add_done(self, delta: int) -> int:
        with self._counter_lock:
            self._jobs_done += delta
            return self._jobs_done

    def _spawn(self, target, name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> None:
        """Load offsets, scan the watched directory and start background tasks."""
        logger.info("starting job provider persistence mode=%s", self.config.persistence_mode.value)
        if self.config.offsets_op is OffsetsOp.CONTINUE:
            self.loaded_offsets = self.offset_db.load()

        self.watcher.start()

        self._stopping.clear()
        if self.config.persistence_mode is PersistenceMode.ASYNC:
            self._spawn(self._save_offsets_cyclic, "file-offsets-saver")

        self.is_started = True

        self._spawn(self._report_stats, "file-report")
        self._spawn(self._maintenance, "file-maintenance")

    def stop(self) -> None:
        """Stop background tasks and the watcher, then save the last known offsets."""
        self._stopping.set()
        self.watcher.stop()

        logger.info("saving last known offsets...")
        self._save()

    def _save(self) -> None:
        with self.jobs_lock:
            snapshot = dict(self.jobs)
        self.offset_db.save(snapshot)

    def commit(self, event: _Event) -> None:
        """Remember the offset of a processed event."""
        with self.jobs_lock:
            job = self.jobs.get(event.source_id)
        if job is None:
            return

        stream = event.stream_name
        with job.lock:
            if not event.is_regular_kind() or event.seq_id <= job.ignore_events_le:
                return

            current = job.offsets.get(stream) or 0
            if current >= event.offset:
                raise RuntimeError(
                    f"offset corruption: committing={event.offset}, current={current}, "
                    f"event id={event.seq_id}, source={event.source_id}:{job.filename}"
                )
            if current == 0 and event.offset >= _SUSPICIOUS_OFFSET:
                logger.error(
                    "it maybe an offset corruption: committing=%d, current=%d, event id=%d, source=%d:%s",
                    event.offset, current, event.seq_id, event.source_id, job.filename,
                )
            job.offsets.set(stream, event.offset)

        with self._counter_lock:
            self._offsets_committed += 1

        if self.config.persistence_mode is PersistenceMode.SYNC:
            self._save()

    def process_notification(self, filename: str, stat: os.stat_result) -> None:
        """Handle a found file or symlink."""
        if filename in (self.config.offsets_file, self.config.offsets_file_tmp):
            return

        if stat_mod.S_ISLNK(stat.st_mode):
            inode = get_inode(stat)
            with self._symlinks_lock:
                self.symlinks[inode] = filename
            self._refresh_symlink(filename, inode)
            return

        self.refresh_file(stat, filename, "")

    def _refresh_symlink(self, symlink: str, inode: int) -> None:
        try:
            target = os.path.realpath(symlink, strict=True)
        except OSError:
            logger.warning("symlink have been removed %s", symlink)
            with self._symlinks_lock:
                self.symlinks.pop(inode, None)
            return

        target = os.path.abspath(target)
        try:
            info = os.stat(target)
        except OSError as e:
            logger.warning("can't follow symlink to %s: %s", target, e)
            return

        self.refresh_file(info, target, symlink)

    def refresh_file(self, stat: os.stat_result, filename: str, symlink: str) -> None:
        """Resume the job of a file or create one if the file is new."""
        source_id = source_id_by_stat(stat, symlink)
        with self.jobs_lock:
            job = self.jobs.get(source_id)

        if job is not None:
            self._try_resume(job, filename)
            return

        try:
            file = _open_file(filename)
        except OSError as e:
            logger.warning("file was already moved from creation place %s: %s", filename, e)
            return

        self._add_job(file, stat, filename, symlink)

    def _add_job(self, file: BinaryIO, stat: os.stat_result, filename: str, symlink: str) -> None:
        source_id = source_id_by_stat(stat, symlink)
        job = Job(
            file=file,
            inode=get_inode(stat),
            source_id=source_id,
            filename=filename,
            symlink=symlink,
        )

        # saved offsets are used only on the start phase
        operation = OffsetsOp.RESET if self.is_started else self.config.offsets_op
        self._init_job_offset(operation, job)

        with self.jobs_lock:
            self.jobs[source_id] = job
            too_many = len(self.jobs) > self.config.max_files
            self.jobs_log.append(filename)
            self._add_done(1)
        if too_many:
            raise RuntimeError("max_files reached for input plugin, consider increase this parameter")

        if symlink:
            logger.info("job added for a file %d:%s, symlink=%s", source_id, filename, symlink)
        else:
            logger.info("job added for a file %d:%s", source_id, filename)

        self._try_resume(job, filename)

    def _init_job_offset(self, operation: OffsetsOp, job: Job) -> None:
        if operation is OffsetsOp.TAIL:
            end = job.file.seek(0, os.SEEK_END)
            if end == 0:
                return
            # the end may be in the middle of an event, so the worker skips to the next line;
            # stepping one byte back keeps a complete last line from being skipped
            job.file.seek(-1, os.SEEK_END)
            job.should_skip = True
        elif operation is OffsetsOp.RESET:
            job.file.seek(0, os.SEEK_SET)
        elif operation is OffsetsOp.CONTINUE:
            saved = self.loaded_offsets.get(job.source_id)
            if saved is None:
                job.file.seek(0, os.SEEK_SET)
                return
            if not saved.streams:
                raise RuntimeError(
                    f"can't instantiate job, no streams in source {job.source_id}:{job.filename!r}"
                )
            job.offsets = stream_offsets_from_map(saved.streams)
            # all streams hold the same offset at start time
            job.file.seek(next(iter(saved.streams.values())), os.SEEK_SET)
        else:
            raise ValueError(f"unknown offsets op: {operation!r}")

    def _resume_locked(self, job: Job, filename: str) -> bool:
        """Mark a done job as active; the job lock must be held."""
        logger.debug("job for %d:%s resumed", job.source_id, job.filename)
        if not job.is_done:
            return False
        job.filename = filename
        job.is_done = False
        if self._add_done(-1) < 0:
            raise RuntimeError("done jobs counter is less than zero")
        return True

    def _try_resume(self, job: Job, filename: str) -> bool:
        with job.lock:
            resumed = self._resume_locked(job, filename)
        if resumed:
            self.jobs_queue.put(job)
        return resumed

    def next_job(self) -> Job | None:
        """Wait for the next job to work on; ``None`` tells a worker to quit."""
        return self.jobs_queue.get()

    def continue_job(self, job: Job) -> None:
        """Put a job back to be read further."""
        self.jobs_queue.put(job)

    def done_job(self, job: Job) -> None:
        """Mark a job as fully read."""
        with job.lock:
            if job.is_done:
                raise RuntimeError("job is already done")
            job.is_done = True
            job.is_virgin = False

        with self.jobs_lock:
            done = self._add_done(1)
            total = len(self.jobs)
        if done > total:
            raise RuntimeError("done jobs counter is more than job count")

    def truncate_job(self, job: Job) -> None:
        """Restart reading of a truncated file from its beginning."""
        with job.lock:
            job.ignore_events_le = job.last_event_seq
            job.file.seek(0, os.SEEK_SET)
            for stream in list(job.offsets):
                job.offsets.set(stream, 0)
            logger.info(
                "job %d:%s was truncated, reading will start over, events with id less than %d will be ignored",
                job.source_id, job.filename, job.ignore_events_le,
            )

    def _save_offsets_cyclic(self) -> None:
        last_committed = 0
        while not self._stopping.is_set():
            committed = self.offsets_committed
            if committed != last_committed:
                last_committed = committed
                self._save()
            self._stopping.wait(self.config.async_interval)

    def _report_stats(self) -> None:
        interval = self.config.report_interval
        if self._stopping.wait(interval):
            return
        last_saves = self.offset_db.saves_total
        while not self._stopping.is_set():
            with self.jobs_lock:
                total = len(self.jobs)
                self.jobs_log.clear()
            saves_total = self.offset_db.saves_total
            logger.info(
                "file plugin stats for last %d seconds: offsets saves=%d, jobs done=%d, jobs total=%d",
                int(interval), saves_total - last_saves, self.jobs_done, total,
            )
            last_saves = saves_total
            self._stopping.wait(interval)

    def _maintenance(self) -> None:
        """Periodically check symlink targets and reopen descriptors of done jobs."""
        interval = self.config.maintenance_interval
        if self._stopping.wait(interval):
            return
        while not self._stopping.is_set():
            self.maintenance_jobs()
            self.maintenance_symlinks()
            self._stopping.wait(interval)

    def maintenance_symlinks(self) -> None:
        """Follow every known symlink again to catch a changed target."""
        with self._symlinks_lock:
            symlinks = list(self.symlinks.items())
        for inode, filename in symlinks:
            self._refresh_symlink(filename, inode)

    def maintenance_jobs(self) -> Counter:
        """Maintain every job; return how many ended with each result."""
        with self.jobs_lock:
            jobs = list(self.jobs.values())

        results = Counter(self.maintenance_job(job) for job in jobs)
        logger.info(
            "file plugin maintenance stats: not done=%d, resumed=%d, reopened=%d, deleted=%d, errors=%d",
            results[MaintenanceResult.NOT_DONE], results[MaintenanceResult.RESUMED],
            results[MaintenanceResult.NOOP], results[MaintenanceResult.DELETED],
            results[MaintenanceResult.ERROR],
        )
        return results

    def maintenance_job(self, job: Job) -> MaintenanceResult:
        """Resume a done job with new data, or reopen its file to release a deleted one."""
        with job.lock:
            if not job.is_done:
                return MaintenanceResult.NOT_DONE

            filename = job.filename
            try:
                info = os.fstat(job.file.fileno())
            except (OSError, ValueError):
                logger.warning("can't stat file %s", filename)
                return MaintenanceResult.ERROR

            offset = job.file.seek(0, os.SEEK_CUR)
            if info.st_size != offset:
                self._resume_locked(job, filename)
                resumed = True
            else:
                resumed = False
                opened_name = os.path.basename(str(job.file.name))
                if os.path.basename(job.filename) != opened_name:
                    job.filename = os.path.join(os.path.dirname(job.filename), opened_name)
                    return MaintenanceResult.NOOP

                # release the descriptor in case the file has been deleted
                job.file.close()
                try:
                    new_file = _open_file(filename)
                except OSError:
                    new_file = None
                if new_file is not None:
                    if get_inode(os.fstat(new_file.fileno())) == job.inode:
                        new_file.seek(offset, os.SEEK_SET)
                        job.file = new_file
                        return MaintenanceResult.NOOP
                    # another file took the name, it isn't the file of this job
                    new_file.close()

        if resumed:
            self.jobs_queue.put(job)
            return MaintenanceResult.RESUMED

        self._delete_job(job)
        logger.info("job for a file %d:%s have been released", job.inode, filename)
        return MaintenanceResult.DELETED

    def _delete_job(self, job: Job) -> None:
        with job.lock:
            if not job.is_done:
                raise RuntimeError(f"can't delete job, it isn't done: {job.source_id}:{job.filename}")
            source_id = job.source_id
            filename = job.filename

        with self.jobs_lock:
            self.jobs.pop(source_id, None)
            done = self._add_done(-1)

        logger.info("job %d:%s deleted", source_id, filename)
        if done < 0:
            raise RuntimeError("done jobs counter less than zero")