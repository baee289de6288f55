"""File input: watches a directory and reads its files line by line."""

from __future__ import annotations

import logging
from typing import Any

from .filecfg import FileConfig
from .provider import JobProvider
from .resetter import default_registry
from .worker import Worker

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT = 5.0


class FileInput:
    """Reads every line of the watched files as an event and tracks committed offsets."""

    def __init__(self) -> None:
        self.config: FileConfig | None = None
        self.job_provider: JobProvider | None = None
        self.workers: list[Worker] = []

    def start(self, config: FileConfig, controller: Any, pipeline_name: str) -> None:
        """Start workers, then scan the directory and begin tracking files."""
        self.config = config
        self.job_provider = JobProvider(config, controller)
        default_registry.add_resetter(pipeline_name, self)

        self.workers = [
            Worker(controller, self.job_provider, config.read_buffer_size)
            for _ in range(config.workers_count)
        ]
        for worker in self.workers:
            worker.start()
        logger.info("workers created, count=%d", len(self.workers))

        self.job_provider.start()

    def commit(self, event: Any) -> None:
        """Remember the offset of a processed event."""
        if self.job_provider is None:
            raise RuntimeError("file input isn't started")
        self.job_provider.commit(event)

    def stop(self) -> None:
        """Stop workers and the job provider; the last offsets are saved."""
        if self.job_provider is None:
            return
        logger.info("stopping %d workers", len(self.workers))
        for _ in self.workers:
            self.job_provider.jobs_queue.put(None)
        for worker in self.workers:
            if worker.thread is not None:
                worker.thread.join(_JOIN_TIMEOUT)

        logger.info("stopping job provider")
        self.job_provider.stop()