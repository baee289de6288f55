"""Configuration of the file input."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum


class PersistenceMode(Enum):
    """How offsets are persisted."""

    ASYNC = "async"  # saved periodically when changed
    SYNC = "sync"  # saved on every commit


class OffsetsOp(Enum):
    """What to do with offsets of a file found on the initial scan."""

    CONTINUE = "continue"
    TAIL = "tail"
    RESET = "reset"


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_EXPR_PIECE = re.compile(r"\s*(?:(\d+)|([A-Za-z_]\w*)|([-+*/()]))")


def _parse_duration(text: str) -> float:
    body = text
    sign = 1.0
    if body[:1] in ("+", "-"):
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(body):
        m = _DURATION_PART.match(body, pos)
        if m is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(m[1]) * _DURATION_UNITS[m[2]]
        pos = m.end()
    return sign * total


def _to_seconds(value: float | int | str, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name}: invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return _parse_duration(value)
    except ValueError as e:
        raise ValueError(f"{name}: {e}") from None


class _Expression:
    """Integer arithmetic over numbers and named variables."""

    def __init__(self, text: str, variables: dict[str, int]) -> None:
        self._text = text
        self._vars = variables
        self._pieces = self._split(text)
        self._pos = 0

    def _split(self, text: str) -> list[tuple[str, str]]:
        pieces = []
        pos = 0
        while pos < len(text):
            if text[pos:].strip() == "":
                break
            m = _EXPR_PIECE.match(text, pos)
            if m is None:
                raise ValueError(f"invalid expression {text!r}")
            if m[1] is not None:
                pieces.append(("num", m[1]))
            elif m[2] is not None:
                pieces.append(("name", m[2]))
            else:
                pieces.append(("op", m[3]))
            pos = m.end()
        return pieces

    def evaluate(self) -> int:
        value = self._expr()
        if self._pos != len(self._pieces):
            raise ValueError(f"invalid expression {self._text!r}")
        return value

    def _peek(self) -> tuple[str, str] | None:
        return self._pieces[self._pos] if self._pos < len(self._pieces) else None

    def _take(self) -> tuple[str, str]:
        piece = self._peek()
        if piece is None:
            raise ValueError(f"invalid expression {self._text!r}")
        self._pos += 1
        return piece

    def _expr(self) -> int:
        value = self._term()
        while (piece := self._peek()) is not None and piece[1] in ("+", "-") and piece[0] == "op":
            self._pos += 1
            rhs = self._term()
            value = value + rhs if piece[1] == "+" else value - rhs
        return value

    def _term(self) -> int:
        value = self._factor()
        while (piece := self._peek()) is not None and piece[1] in ("*", "/") and piece[0] == "op":
            self._pos += 1
            rhs = self._factor()
            if piece[1] == "*":
                value *= rhs
            else:
                if rhs == 0:
                    raise ValueError(f"division by zero in {self._text!r}")
                value //= rhs
        return value

    def _factor(self) -> int:
        kind, text = self._take()
        if kind == "num":
            return int(text)
        if kind == "name":
            if text not in self._vars:
                raise ValueError(f"unknown variable {text!r} in {self._text!r}")
            return self._vars[text]
        if text == "-":
            return -self._factor()
        if text == "(":
            value = self._expr()
            if self._take() != ("op", ")"):
                raise ValueError(f"invalid expression {self._text!r}")
            return value
        raise ValueError(f"invalid expression {self._text!r}")


def _to_count(value: int | str, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name}: invalid value {value!r}")
    if isinstance(value, int):
        return value
    variables = {"gomaxprocs": os.cpu_count() or 1}
    try:
        return _Expression(value, variables).evaluate()
    except ValueError as e:
        raise ValueError(f"{name}: {e}") from None


def _to_enum(enum_cls, value, default, name: str):
    if isinstance(value, enum_cls):
        return value
    if value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        options = "|".join(member.value for member in enum_cls)
        raise ValueError(f"{name}: {value!r} isn't one of {options}") from None


@dataclass
class FileConfig:
    """Settings of the file input; string values are parsed on creation."""

    watching_dir: str
    offsets_file: str
    filename_pattern: str = "*"
    dir_pattern: str = "*"
    persistence_mode: PersistenceMode | str = PersistenceMode.ASYNC
    async_interval: float | str = "1s"
    read_buffer_size: int = 131072
    max_files: int = 16384
    offsets_op: OffsetsOp | str = OffsetsOp.CONTINUE
    workers_count: int | str = "gomaxprocs*8"
    report_interval: float | str = "10s"
    maintenance_interval: float | str = "10s"
    offsets_file_tmp: str = field(init=False)

    def __post_init__(self) -> None:
        if not self.watching_dir:
            raise ValueError("watching_dir is required")
        if not self.offsets_file:
            raise ValueError("offsets_file is required")
        self.offsets_file_tmp = self.offsets_file + ".atomic"
        self.filename_pattern = self.filename_pattern or "*"
        self.dir_pattern = self.dir_pattern or "*"
        self.persistence_mode = _to_enum(
            PersistenceMode, self.persistence_mode, PersistenceMode.ASYNC, "persistence_mode"
        )
        self.offsets_op = _to_enum(OffsetsOp, self.offsets_op, OffsetsOp.CONTINUE, "offsets_op")
        self.async_interval = _to_seconds(self.async_interval, "async_interval")
        self.report_interval = _to_seconds(self.report_interval, "report_interval")
        self.maintenance_interval = _to_seconds(self.maintenance_interval, "maintenance_interval")
        self.workers_count = _to_count(self.workers_count, "workers_count")