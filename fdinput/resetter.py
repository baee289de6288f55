"""Resetting offsets of file inputs by pipeline name."""

from __future__ import annotations

import json
import os
import threading
from typing import Any

import yaml

from .offsets import OffsetDB


def _request_field(request: dict, name: str) -> int:
    value = request.get(name)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"can't decode req body: {name} must be an unsigned integer, got {value!r}")
    return value


class _Resetter:
    """Truncates jobs of a started plugin or edits its offsets file otherwise."""

    def __init__(self, plugin: Any) -> None:
        self.plugin = plugin
        self._offsets_lock = threading.Lock()

    def reset(self, body: str | bytes) -> None:
        try:
            request = json.loads(body)
        except ValueError as e:
            raise ValueError(f"can't decode req body: {body!r}") from e
        if not isinstance(request, dict):
            raise ValueError(f"can't decode req body: {body!r}")
        inode = _request_field(request, "inode")
        source_id = _request_field(request, "source_id")

        if self.plugin is None:
            raise RuntimeError("can't reset because plug has not been set")
        provider = getattr(self.plugin, "job_provider", None)
        if provider is None:
            raise RuntimeError("can't reset because file input plugin has not been started yet")

        truncate_all = inode == 0 and source_id == 0

        if provider.is_started:
            with provider.jobs_lock:
                jobs = list(provider.jobs.values())
            for job in jobs:
                if truncate_all or job.inode == inode or job.source_id == source_id:
                    provider.truncate_job(job)
            return

        with self._offsets_lock:
            if truncate_all:
                delete_offset_file(provider.offset_db.cur_offsets_file)
            elif inode > 0:
                delete_one_offset_by_field(provider.offset_db, "inode", inode)
            elif source_id > 0:
                delete_one_offset_by_field(provider.offset_db, "source_id", source_id)

            provider.loaded_offsets = provider.offset_db.load()


class ResetterRegistry:
    """Maps pipeline names to file inputs whose offsets can be reset."""

    def __init__(self) -> None:
        self._resetters: dict[str, _Resetter] = {}

    def add_resetter(self, pipeline_name: str, plugin: Any) -> None:
        """Register the file input of a pipeline."""
        self._resetters[pipeline_name] = _Resetter(plugin)

    def reset(self, path: str, body: str | bytes) -> None:
        """Handle a reset request; the pipeline name is the second segment of ``path``.

        With an empty body object every job is truncated, or the whole offsets
        file is removed if the plugin hasn't started; ``inode`` or ``source_id``
        narrows it down to one entry.
        """
        parts = path.split("/")
        if len(parts) < 3:
            raise ValueError(f"wrong reset path {path!r}")
        name = parts[2]
        resetter = self._resetters.get(name)
        if resetter is None:
            raise KeyError(f"pipeline {name!r} is not registered")
        resetter.reset(body)


default_registry = ResetterRegistry()


def delete_offset_file(path: str) -> None:
    """Remove the offsets file."""
    os.remove(path)


def delete_one_offset_by_field(db: OffsetDB, field_name: str, field_value: int) -> None:
    """Remove the first entry of the offsets file whose ``field_name`` equals ``field_value``."""
    with db.lock:
        with open(db.cur_offsets_file, encoding="utf-8") as f:
            content = f.read()
        try:
            entries = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValueError(f"can't unmarshal file, try to reset all file. err: {e} file:\n{content}") from e
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ValueError(f"can't unmarshal file, try to reset all file. file:\n{content}")

        for i, entry in enumerate(entries):
            value = entry.get(field_name) if isinstance(entry, dict) else None
            if isinstance(value, bool) or not isinstance(value, int) or value == 0 or value != field_value:
                continue

            entries[i] = entries[-1]
            entries.pop()
            out = yaml.safe_dump(entries, default_flow_style=False, sort_keys=True, allow_unicode=True)
            with open(db.cur_offsets_file, "w", encoding="utf-8") as f:
                f.write(out)
            return