"""Levelled log file with size-based rotation and packet hex dumps."""

from __future__ import annotations

import os
import sys
import time
from enum import Enum, IntEnum
from pathlib import Path
from typing import Iterator

DEFAULT_LOG_PATH = "/tmp/scutclient.log"
DEFAULT_MAX_SIZE = 102400
_RULE = "*" * 78


class LogLevel(IntEnum):
    """Severity of a log record; higher values are more verbose."""

    NONE = 0
    ERROR = 1
    INF = 2
    DEBUG = 3
    TRACE = 4


class LogType(Enum):
    """Subsystem a log record belongs to, with its printed label."""

    ALL = "ALL"
    INIT = "INIT"
    DOT1X = "8021X"
    DRCOM = "DRCOM"


def hex_column(chunk: bytes) -> str:
    """Hex digits of up to 16 bytes, with an extra gap after the eighth."""
    chunk = bytes(chunk[:16])
    text = "".join(f"{b:02x} " for b in chunk[:8])
    if len(chunk) >= 8:
        text += " " + "".join(f"{b:02x} " for b in chunk[8:])
    return text


def char_column(chunk: bytes) -> str:
    """Printable rendering of up to 16 bytes, '.' for anything else."""
    return "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in bytes(chunk[:16]))


def hexdump_lines(data: bytes) -> Iterator[str]:
    """Yield one formatted dump line per 16-byte row of ``data``."""
    data = bytes(data)
    for offset in range(0, len(data), 16):
        row = data[offset:offset + 16]
        yield f"{offset:08x} {hex_column(row):<49}  |{char_column(row):<16}|"


class TraceLog:
    """Writes records both to stdout and to an append-only log file."""

    def __init__(
        self,
        path: str | os.PathLike = DEFAULT_LOG_PATH,
        level: LogLevel = LogLevel.INF,
        max_size: int = DEFAULT_MAX_SIZE,
    ) -> None:
        self.path = Path(path)
        self.level = LogLevel(level)
        self.max_size = max_size

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".backup.log")

    def _rotate(self) -> None:
        try:
            size = self.path.stat().st_size
        except OSError:
            return
        if size > self.max_size:
            os.replace(self.path, self.backup_path)

    def write(self, logtype: LogType, level: LogLevel, message: str) -> str | None:
        """Record ``message`` if ``level`` passes the filter; return the line written."""
        if level > self.level:
            return None
        stamp = time.strftime("%Y-%m-%d %H:%M:%S")
        self._rotate()
        line = (
            f"[{stamp}][{logtype.value:<5}][{LogLevel(level).name:<3}]:[{message}]"
        )
        try:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            print(f"Unable to open log file: {exc}", file=sys.stderr)
            return None
        print(line, flush=True)
        return line

    def hexdump(self, logtype: LogType, description: str, data: bytes) -> None:
        """Log a packet's length at DEBUG and its full dump at TRACE."""
        if self.level < LogLevel.DEBUG:
            return
        self.write(
            logtype,
            LogLevel.DEBUG,
            f"{description}: Packet length: {len(data)} bytes.",
        )
        if self.level < LogLevel.TRACE:
            return
        self.write(logtype, LogLevel.TRACE, _RULE)
        for line in hexdump_lines(data):
            self.write(logtype, LogLevel.TRACE, line)
        self.write(logtype, LogLevel.TRACE, _RULE)