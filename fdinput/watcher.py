"""Watching a directory for created files and directories."""

from __future__ import annotations

import logging
import os
import re
import stat
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

NotifyFn = Callable[[str, os.stat_result], None]


def _class_char(pattern: str, i: int) -> tuple[str, int]:
    if i >= len(pattern) or pattern[i] in "-]":
        raise ValueError("syntax error in pattern")
    if pattern[i] == "\\":
        i += 1
        if i >= len(pattern):
            raise ValueError("syntax error in pattern")
    return pattern[i], i + 1


def _compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a shell-style pattern where '*' and '?' don't cross '/'."""
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "\\":
            if i + 1 >= n:
                raise ValueError("syntax error in pattern")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif c == "[":
            i += 1
            negate = i < n and pattern[i] == "^"
            if negate:
                i += 1
            items: list[str] = []
            while not (i < n and pattern[i] == "]" and items):
                lo, i = _class_char(pattern, i)
                if i < n and pattern[i] == "-":
                    hi, i = _class_char(pattern, i + 1)
                    if lo > hi:
                        raise ValueError("syntax error in pattern")
                    items.append(f"{re.escape(lo)}-{re.escape(hi)}")
                else:
                    items.append(re.escape(lo))
            i += 1
            out.append(f"[{'^' if negate else ''}{''.join(items)}]")
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out), re.DOTALL)


class _CreationHandler(FileSystemEventHandler):
    def __init__(self, watcher: Watcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._watcher._notify(os.fsdecode(event.src_path))


class Watcher:
    """Reports files created in ``path`` whose names match ``filename_pattern``.

    Existing entries are reported on start; subdirectories matching
    ``dir_pattern`` are scanned as well.
    """

    def __init__(self, path: str, filename_pattern: str, dir_pattern: str, notify_fn: NotifyFn) -> None:
        self.path = path
        self.filename_pattern = filename_pattern
        self.dir_pattern = dir_pattern
        self.notify_fn = notify_fn
        self._filename_re: re.Pattern[str] | None = None
        self._dir_re: re.Pattern[str] | None = None
        self._observer = None

    def start(self) -> None:
        """Validate patterns, start watching and scan existing entries."""
        logger.info("starting watcher path=%s, pattern=%s", self.path, self.filename_pattern)
        try:
            self._filename_re = _compile_glob(self.filename_pattern)
        except ValueError as e:
            raise ValueError(f"wrong file name pattern {self.filename_pattern!r}: {e}") from None
        try:
            self._dir_re = _compile_glob(self.dir_pattern)
        except ValueError as e:
            raise ValueError(f"wrong dir name pattern {self.dir_pattern!r}: {e}") from None

        observer = Observer()
        try:
            observer.schedule(_CreationHandler(self), self.path, recursive=False)
            observer.start()
        except OSError as e:
            logger.warning("can't create fs watcher: %s", e)
            return
        self._observer = observer

        self._try_add_path(self.path)

    def stop(self) -> None:
        """Stop watching."""
        logger.info("stopping watcher")
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()

    def _try_add_path(self, path: str) -> None:
        try:
            names = sorted(entry.name for entry in os.scandir(path))
        except OSError:
            return
        logger.info("starting path watch: %s", path)
        for name in names:
            self._notify(os.path.join(path, name))

    def _notify(self, path: str) -> None:
        if path in ("", ".", ".."):
            return
        filename = os.path.abspath(path)
        try:
            info = os.lstat(filename)
        except OSError:
            return

        base = os.path.basename(filename)
        if self._filename_re is not None and self._filename_re.fullmatch(base):
            self.notify_fn(filename, info)

        if stat.S_ISDIR(info.st_mode) and self._dir_re is not None and self._dir_re.fullmatch(base):
            self._try_add_path(filename)