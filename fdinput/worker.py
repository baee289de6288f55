"""Worker of the file input: reads jobs line by line and feeds the lines to the pipeline."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

from .provider import Job, JobProvider

logger = logging.getLogger(__name__)


class Worker:
    """Takes jobs from the provider and sends every complete line of a file as an event."""

    def __init__(self, controller: Any, job_provider: JobProvider, read_buffer_size: int) -> None:
        if read_buffer_size <= 0:
            raise ValueError(f"read buffer size must be positive, got {read_buffer_size}")
        self.controller = controller
        self.job_provider = job_provider
        self.read_buffer_size = read_buffer_size
        self.thread: threading.Thread | None = None

    def start(self) -> None:
        """Run the worker in a background thread."""
        self.thread = threading.Thread(target=self.work, name="file-worker", daemon=True)
        self.thread.start()

    def work(self) -> None:
        """Process jobs until the provider hands out ``None``."""
        while (job := self.job_provider.next_job()) is not None:
            self._read_job(job)

    def _read_job(self, job: Job) -> None:
        with job.lock:
            file = job.file
            is_done = job.is_done
            is_virgin = job.is_virgin
            source_id = job.source_id
            source_name = job.symlink or job.filename
            skip_line = job.should_skip

        if is_done:
            raise RuntimeError("job is done, why worker should work?")

        last_offset = file.seek(0, os.SEEK_CUR)

        is_eof = False
        was_put = False
        read_total = 0
        accumulated = 0
        processed = 0
        accum = bytearray()

        while True:
            chunk = file.read(self.read_buffer_size)
            if not chunk:
                is_eof = True
                break
            read = len(chunk)

            processed = 0
            while processed < read:
                pos = chunk.find(b"\n", processed)
                if pos < 0:
                    break
                # the first line may be incomplete if the file was opened in the middle of it
                if skip_line:
                    with job.lock:
                        job.should_skip = False
                    skip_line = False
                else:
                    offset = last_offset + accumulated + pos + 1
                    if accum:
                        accum += chunk[processed:pos + 1]
                        line = bytes(accum)
                    else:
                        line = chunk[processed:pos + 1]
                    job.last_event_seq = self.controller.in_(source_id, source_name, offset, line, is_virgin)
                accum.clear()
                processed = pos + 1

            read_total += read
            was_put = processed != 0
            if was_put:
                break
            accum += chunk
            accumulated += read

        # nothing was sent, so the accumulated data will be read again
        if not was_put:
            accumulated = 0

        backward = accumulated + processed - read_total
        if backward:
            file.seek(backward, os.SEEK_CUR)

        if is_eof:
            size = os.fstat(file.fileno()).st_size
            if last_offset + read_total > size:
                self.job_provider.truncate_job(job)
            self.job_provider.done_job(job)
        else:
            self.job_provider.continue_job(job)