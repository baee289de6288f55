"""Offsets of processed files: in-memory stream offsets and the on-disk offsets database."""

from __future__ import annotations

import logging
import os
import random
import stat
import threading
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Protocol

logger = logging.getLogger(__name__)

_UINT64_MASK = (1 << 64) - 1
_INT64_MAX = (1 << 63) - 1
_INT64_MIN = -(1 << 63)


class StreamOffsets:
    """Ordered mapping of stream name to committed offset."""

    __slots__ = ("_offsets",)

    def __init__(self, pairs: Mapping[str, int] | None = None) -> None:
        self._offsets: dict[str, int] = dict(pairs or {})

    def get(self, stream: str) -> int | None:
        """Return the offset of ``stream`` or ``None`` if it is unknown."""
        return self._offsets.get(stream)

    def set(self, stream: str, offset: int) -> None:
        """Set the offset of ``stream``, adding the stream if needed."""
        self._offsets[stream] = offset

    def items(self):
        return self._offsets.items()

    def __iter__(self) -> Iterator[str]:
        return iter(self._offsets)

    def __len__(self) -> int:
        return len(self._offsets)

    def __contains__(self, stream: object) -> bool:
        return stream in self._offsets

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StreamOffsets):
            return self._offsets == other._offsets
        return NotImplemented

    def __repr__(self) -> str:
        return f"StreamOffsets({self._offsets!r})"


def stream_offsets_from_map(streams: Mapping[str, int]) -> StreamOffsets:
    """Build stream offsets from a plain mapping."""
    return StreamOffsets(streams)


@dataclass
class InodeOffsets:
    """Offsets of all streams of one source as stored in the offsets file."""

    filename: str
    source_id: int
    streams: dict[str, int] = field(default_factory=dict)


class OffsetsFormatError(ValueError):
    """The offsets file content is malformed."""


class _SavableJob(Protocol):
    filename: str
    inode: int
    source_id: int
    offsets: StreamOffsets
    lock: threading.Lock


def _parse_uint(text: str, what: str) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise OffsetsFormatError(f"wrong offsets format, can't parse {what}: {text}")
    value = int(text)
    if value > _UINT64_MASK:
        raise OffsetsFormatError(f"wrong offsets format, {what} out of range: {text}")
    return value


def _parse_int(text: str) -> int:
    digits = text[1:] if text[:1] in ("+", "-") else text
    if not digits or not digits.isascii() or not digits.isdigit():
        raise OffsetsFormatError(f"wrong offsets format, can't parse offset: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise OffsetsFormatError(f"wrong offsets format, offset out of range: {text!r}")
    return value


class OffsetDB:
    """Loads and atomically saves the offsets file."""

    def __init__(self, cur_offsets_file: str, tmp_offsets_file: str) -> None:
        self.cur_offsets_file = cur_offsets_file
        self.tmp_offsets_file = tmp_offsets_file
        self.lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._saves_total = 0

    @property
    def saves_total(self) -> int:
        """Number of save attempts so far."""
        with self._counter_lock:
            return self._saves_total

    def load(self) -> dict[int, InodeOffsets]:
        """Read the offsets file; a missing file gives no offsets."""
        logger.info("loading offsets: %s", self.cur_offsets_file)
        try:
            info = os.stat(self.cur_offsets_file)
        except FileNotFoundError:
            return {}
        if stat.S_ISDIR(info.st_mode):
            raise IsADirectoryError(f"can't load offsets, file {self.cur_offsets_file} is dir")

        with open(self.cur_offsets_file, encoding="utf-8", errors="surrogateescape", newline="") as f:
            content = f.read()

        try:
            offsets = self.parse(content)
        except OffsetsFormatError as e:
            raise OffsetsFormatError(f"can't load offsets file: {e}") from e
        return self.collapse(offsets)

    def collapse(self, offsets: dict[int, InodeOffsets]) -> dict[int, InodeOffsets]:
        """Set every stream of a source to the minimal offset among them."""
        for item in offsets.values():
            if not item.streams:
                continue
            lowest = min(item.streams.values())
            for stream in item.streams:
                item.streams[stream] = lowest
        return offsets

    def parse(self, content: str) -> dict[int, InodeOffsets]:
        """Parse the offsets file content."""
        offsets: dict[int, InodeOffsets] = {}
        while content:
            try:
                content = self._parse_one(content, offsets)
            except OffsetsFormatError as e:
                raise OffsetsFormatError(f"can't parse one: {e}") from e
        return offsets

    def _parse_one(self, content: str, offsets: dict[int, InodeOffsets]) -> str:
        filename, content = self._parse_line(content, "- file: ", "file")
        inode_str, content = self._parse_line(content, "  inode: ", "inode")
        source_id_str, content = self._parse_line(content, "  source_id: ", "source_id")

        inode = _parse_uint(inode_str, "inode")
        source_id = _parse_uint(source_id_str, "source id")
        if source_id in offsets:
            raise OffsetsFormatError(f"wrong offsets format, duplicate inode {inode}")

        item = InodeOffsets(filename=filename, source_id=source_id)
        offsets[source_id] = item
        return self._parse_streams(content, item.streams)

    def _parse_streams(self, content: str, streams: dict[str, int]) -> str:
        _, content = self._parse_line(content, "  streams:", "streams")

        while content and content[0] != "-":
            line_end = content.find("\n")
            if line_end < 0:
                raise OffsetsFormatError(f"wrong offsets format, no new line {content}")
            line = content[:line_end]
            if line_end < 5 or line[:4] != "    ":
                raise OffsetsFormatError(f"wrong offsets format, no leading whitespaces {line!r}")
            content = content[line_end + 1:]

            sep = line.find(":")
            if sep < 0:
                raise OffsetsFormatError(f"wrong offsets format, no separator {line!r}")
            stream = line[4:sep]
            if not stream:
                raise OffsetsFormatError(f"wrong offsets format, empty stream, {content}")
            if stream in streams:
                raise OffsetsFormatError(f"wrong offsets format, duplicate stream {stream!r}")

            streams[stream] = _parse_int(line[sep + 2:])

        return content

    @staticmethod
    def _parse_line(content: str, start: str, what: str) -> tuple[str, str]:
        line_end = content.find("\n")
        if line_end < 0:
            raise OffsetsFormatError(f"can't parse {what}: wrong offsets format, no nl: {content!r}")
        line = content[:line_end]
        if not line.startswith(start):
            raise OffsetsFormatError(
                f"can't parse {what}: wrong offsets file format expected={start!r}, got={line[:len(start)]!r}"
            )
        return line[len(start):], content[line_end + 1:]

    def save(self, jobs: Mapping[int, _SavableJob]) -> None:
        """Write offsets of all jobs to a temporary file and move it over the offsets file."""
        with self._counter_lock:
            self._saves_total += 1

        with self.lock:
            snapshot = list(jobs.values())

            parts: list[str] = []
            for job in snapshot:
                with job.lock:
                    if not job.offsets:
                        continue
                    parts.append(f"- file: {job.filename}\n")
                    parts.append(f"  inode: {job.inode & _UINT64_MASK}\n")
                    parts.append(f"  source_id: {job.source_id & _UINT64_MASK}\n")
                    parts.append("  streams:\n")
                    for stream, offset in job.offsets.items():
                        parts.append(f"    {stream}: {offset & _UINT64_MASK}\n")
            data = "".join(parts).encode("utf-8", "surrogateescape")

            tmp_name = f"{self.tmp_offsets_file}.{random.getrandbits(64):o}"
            try:
                f = open(tmp_name, "wb", opener=lambda p, flags: os.open(p, flags, 0o600))
            except OSError as e:
                logger.error("can't open temp offsets file %s, %s", self.tmp_offsets_file, e)
                return

            with f:
                try:
                    f.write(data)
                    f.flush()
                except OSError as e:
                    logger.error("can't write offsets file %s, %s", self.tmp_offsets_file, e)
                try:
                    os.fsync(f.fileno())
                except OSError as e:
                    logger.error("can't sync offsets file %s, %s", self.tmp_offsets_file, e)

            try:
                os.replace(tmp_name, self.cur_offsets_file)
            except OSError as e:
                logger.error("failed renaming temporary offsets file to current: %s", e)