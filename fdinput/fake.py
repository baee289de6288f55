"""Fake input for testing pipelines and other plugins."""

from __future__ import annotations

from typing import Any, Callable


class FakeInput:
    """Sends events handed to it into the pipeline and reports commits through hooks."""

    def __init__(self) -> None:
        self.controller: Any = None
        self.running = False
        self._commit_fn: Callable[[Any], None] | None = None
        self._in_fn: Callable[[], None] | None = None

    def start(self, config: Any, controller: Any) -> None:
        self.controller = controller
        self.running = True

    def stop(self) -> None:
        """Mark the input as stopped."""
        self.running = False

    def commit(self, event: Any) -> None:
        if self._commit_fn is not None:
            self._commit_fn(event)

    def in_(self, source_id: int, source_name: str, offset: int, data: bytes) -> None:
        """Send a test event into the pipeline."""
        if self._in_fn is not None:
            self._in_fn()
        self.controller.in_(source_id, source_name, offset, data, False)

    def set_commit_fn(self, fn: Callable[[Any], None]) -> None:
        """Hook called with every committed event."""
        self._commit_fn = fn

    def set_in_fn(self, fn: Callable[[], None]) -> None:
        """Hook called before an event is passed to the pipeline."""
        self._in_fn = fn