"""Journalctl input: reads the JSON output of ``journalctl`` and remembers the last committed cursor."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, BinaryIO

import yaml

logger = logging.getLogger(__name__)


def read_lines(stream: BinaryIO, output: Any, cursor: str = "", max_lines: int = 0) -> None:
    """Write every complete line of ``stream`` to ``output``.

    With a cursor the first line is skipped: it is the entry that was
    already sent. Reading stops after ``max_lines`` lines if it is positive.
    """
    if cursor and not stream.readline():
        raise EOFError("can't skip the entry of the cursor: no output")

    total = 0
    while True:
        line = stream.readline()
        if not line.endswith(b"\n"):
            break
        try:
            output.write(line)
        except (OSError, ValueError) as e:
            logger.error("%s", e)
        total += 1
        if max_lines > 0 and total >= max_lines:
            break


class JournalReader:
    """Runs ``journalctl`` and passes its lines to an output."""

    def __init__(self, output: Any, cursor: str = "", max_lines: int = 0) -> None:
        self.output = output
        self.cursor = cursor
        self.max_lines = max_lines
        self.args = ["-o", "json"]
        self.args += ["-c", cursor] if cursor else ["-n", "all"]
        self.process: subprocess.Popen | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the command and read its output in the background."""
        logger.info('running "journalctl %s"', " ".join(self.args))
        self.process = subprocess.Popen(["journalctl", *self.args], stdout=subprocess.PIPE)
        self.thread = threading.Thread(
            target=read_lines,
            args=(self.process.stdout, self.output, self.cursor, self.max_lines),
            name="journalctl-reader",
            daemon=True,
        )
        self.thread.start()

    def stop(self) -> None:
        """Kill the command."""
        if self.process is None:
            raise RuntimeError("journalctl isn't started")
        self.process.kill()
        self.process.wait()


@dataclass
class OffsetInfo:
    """Number of committed entries and the cursor of the last one."""

    offset: int = 0
    cursor: str = ""
    current: int = 0

    def set(self, cursor: str) -> None:
        """Record a committed entry."""
        self.cursor = cursor
        self.offset += 1


@dataclass
class JournalctlConfig:
    """Offsets file, extra ``journalctl`` arguments and an optional line limit."""

    offsets_file: str
    journal_args: list[str] | str = field(default_factory=lambda: ["-f", "-a"])
    max_lines: int = 0

    def __post_init__(self) -> None:
        if not self.offsets_file:
            raise ValueError("offsets_file is required")
        if isinstance(self.journal_args, str):
            self.journal_args = self.journal_args.split()


def _load_offset_info(path: str) -> OffsetInfo:
    info = OffsetInfo()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error("can't load offset file: %s", e)
        return info
    if not isinstance(data, Mapping):
        logger.error("can't load offset file: %s isn't a mapping", path)
        return info
    offset = data.get("offset", 0)
    cursor = data.get("cursor", "")
    info.offset = offset if isinstance(offset, int) and not isinstance(offset, bool) else 0
    info.cursor = cursor if isinstance(cursor, str) else ""
    return info


def _save_offset_info(path: str, info: OffsetInfo) -> None:
    tmp = path + ".atomic"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump({"offset": info.offset, "cursor": info.cursor}, f)
        os.replace(tmp, path)
    except OSError as e:
        logger.error("can't save offset file: %s", e)


def _cursor_of(event: Any) -> str:
    root = getattr(event, "root", None)
    value = root.get("__CURSOR") if isinstance(root, Mapping) else None
    return value if isinstance(value, str) else ""


class JournalctlInput:
    """Feeds journal entries into the pipeline, one event per line."""

    def __init__(self) -> None:
        self.config: JournalctlConfig | None = None
        self.controller: Any = None
        self.reader: JournalReader | None = None
        self.offset_info = OffsetInfo()
        self._lock = threading.Lock()

    def start(self, config: JournalctlConfig, controller: Any) -> None:
        """Load the saved cursor and start reading after it."""
        self.config = config
        self.controller = controller
        self.offset_info = _load_offset_info(config.offsets_file)

        self.reader = JournalReader(self, self.offset_info.cursor, config.max_lines)
        self.reader.args.extend(config.journal_args)
        self.reader.start()

    def write(self, data: bytes) -> int:
        """Send one journal line as an event."""
        self.controller.in_(0, "journalctl", self.offset_info.current, data, False)
        self.offset_info.current += 1
        return len(data)

    def stop(self) -> None:
        """Kill ``journalctl`` and save the offsets."""
        try:
            self.reader.stop()
        except OSError as e:
            logger.error("can't stop journalctl cmd: %s", e)
        with self._lock:
            _save_offset_info(self.config.offsets_file, self.offset_info)

    def commit(self, event: Any) -> None:
        """Remember the cursor of a processed entry."""
        with self._lock:
            self.offset_info.set(_cursor_of(event))
            _save_offset_info(self.config.offsets_file, self.offset_info)