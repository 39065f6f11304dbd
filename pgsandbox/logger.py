"""Levelled logging with a process-wide default logger."""

from __future__ import annotations

import sys
import threading
import time
from enum import IntEnum
from typing import Any, Optional, TextIO


class LogLevel(IntEnum):
    """Log levels, ordered from most to least verbose."""

    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3

    def __str__(self) -> str:
        return self.name


def parse_log_level(level: str) -> LogLevel:
    """Convert a level name to a LogLevel; unknown names give INFO."""
    name = level.strip().upper()
    if name == "WARNING":
        return LogLevel.WARN
    try:
        return LogLevel[name]
    except KeyError:
        return LogLevel.INFO


class Logger:
    """Writes ``[LEVEL] message`` lines for messages at or above its level."""

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        prefix: str = "",
        stream: Optional[TextIO] = None,
        timestamps: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._level = LogLevel(level)
        self._prefix = prefix
        self._stream = stream
        self._timestamps = timestamps

    @property
    def level(self) -> LogLevel:
        with self._lock:
            return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        with self._lock:
            self._level = LogLevel(value)

    @property
    def stream(self) -> TextIO:
        """The stream messages go to (standard error unless set)."""
        with self._lock:
            return self._stream if self._stream is not None else sys.stderr

    def set_output(self, stream: TextIO) -> None:
        """Send further messages to ``stream``."""
        with self._lock:
            self._stream = stream

    def would_log(self, level: LogLevel) -> bool:
        """True if a message at ``level`` would be written."""
        return level >= self.level

    def _log(self, level: LogLevel, fmt: str, args: tuple[Any, ...]) -> None:
        if not self.would_log(level):
            return
        message = fmt % args if args else fmt
        stamp = time.strftime("%Y/%m/%d %H:%M:%S ") if self._timestamps else ""
        text = f"{self._prefix}{stamp}[{level.name}] {message}"
        if not text.endswith("\n"):
            text += "\n"
        with self._lock:
            stream = self.stream
            stream.write(text)
            stream.flush()

    def debug(self, fmt: str, *args: Any) -> None:
        self._log(LogLevel.DEBUG, fmt, args)

    def info(self, fmt: str, *args: Any) -> None:
        self._log(LogLevel.INFO, fmt, args)

    def warn(self, fmt: str, *args: Any) -> None:
        self._log(LogLevel.WARN, fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        self._log(LogLevel.ERROR, fmt, args)


_default_lock = threading.Lock()
_default_logger = Logger()


def get_default_logger() -> Logger:
    """Return the process-wide default logger."""
    with _default_lock:
        return _default_logger


def set_default_logger(logger: Optional[Logger]) -> None:
    """Replace the default logger; ``None`` is ignored."""
    global _default_logger
    if logger is None:
        return
    with _default_lock:
        _default_logger = logger


def set_default_level(level: LogLevel) -> None:
    get_default_logger().level = level


def set_default_level_from_string(level: str) -> None:
    set_default_level(parse_log_level(level))


def debug(fmt: str, *args: Any) -> None:
    get_default_logger().debug(fmt, *args)


def info(fmt: str, *args: Any) -> None:
    get_default_logger().info(fmt, *args)


def warn(fmt: str, *args: Any) -> None:
    get_default_logger().warn(fmt, *args)


def error(fmt: str, *args: Any) -> None:
    get_default_logger().error(fmt, *args)


def would_log(level: LogLevel) -> bool:
    """True if the default logger would write a message at ``level``."""
    return get_default_logger().would_log(level)


def init_from_config(level: Optional[str] = None, file: Optional[str] = None) -> Logger:
    """Install a default logger from a level name and optional log file path.

    Raises OSError if the log file cannot be opened for appending.
    """
    log_level = parse_log_level(level) if level else LogLevel.INFO
    logger = Logger(log_level)
    if file:
        logger.set_output(open(file, "a", encoding="utf-8"))
    set_default_logger(logger)
    return logger