"""Structured logging facade backed by loguru.

Application code depends on the ``Logger`` interface only::

    log = new_logger("info", "json", "stdout")
    request_log = log.with_fields({"request_id": rid})
    request_log.infof("handled in %dms", elapsed)
    log.close()

Every handle returned by ``new_logger`` owns a dedicated loguru sink. Records
are routed to it through a bound ``_pm_sink`` id, so handles never see each
other's output even though loguru keeps a single global core.
"""

from __future__ import annotations

import json
import os
import sys
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, TextIO

from loguru import logger as _loguru

SINK_KEY = "_pm_sink"
DEFAULT_LEVEL = "INFO"
FILE_MODE = 0o666

# Accepted level names and their loguru equivalents
LEVELS: Dict[str, str] = {
    "trace": "TRACE",
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "fatal": "CRITICAL",
    "panic": "CRITICAL",
}

_JSON_LEVEL_NAMES = {
    "TRACE": "trace",
    "DEBUG": "debug",
    "INFO": "info",
    "WARNING": "warning",
    "ERROR": "error",
    "CRITICAL": "fatal",
}

_RESERVED_JSON_KEYS = ("time", "level", "msg")


class LoggerIOError(OSError):
    """The log output file could not be opened."""


def parse_level(level: str) -> str:
    """Return the loguru level name for *level*, falling back to ``INFO``."""
    return LEVELS.get(level, DEFAULT_LEVEL)


def sprint(*args: object) -> str:
    """Concatenate values, adding a space between adjacent non-strings."""
    parts = []
    previous_is_str = True
    for i, arg in enumerate(args):
        is_str = isinstance(arg, str)
        if i > 0 and not is_str and not previous_is_str:
            parts.append(" ")
        parts.append(str(arg))
        previous_is_str = is_str
    return "".join(parts)


def _user_fields(extra: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in extra.items() if not k.startswith("_pm_")}


def _field_name(key: Any) -> str:
    name = str(key)
    if name.startswith("_pm_"):
        return f"fields.{name}"
    return name


def _quote(value: Any) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="\t\n'):
        return json.dumps(text, ensure_ascii=False)
    return text


def _text_formatter(record) -> str:
    fields = _user_fields(record["extra"])
    record["extra"]["_pm_fields"] = "".join(
        f" {key}={_quote(fields[key])}" for key in sorted(fields)
    )
    return "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}{extra[_pm_fields]}\n"


def _json_formatter(record) -> str:
    entry: Dict[str, Any] = {
        "time": record["time"].isoformat(),
        "level": _JSON_LEVEL_NAMES.get(record["level"].name, record["level"].name.lower()),
        "msg": record["message"],
    }
    for key, value in _user_fields(record["extra"]).items():
        if key in _RESERVED_JSON_KEYS:
            key = f"fields.{key}"
        entry[key] = value
    record["extra"]["_pm_json"] = json.dumps(entry, default=str, ensure_ascii=False)
    return "{extra[_pm_json]}\n"


def _open_output(path: str) -> TextIO:
    try:
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, FILE_MODE)
    except OSError as e:
        raise LoggerIOError(e.errno, e.strerror, path) from e
    return os.fdopen(fd, "a", encoding="utf-8")


class _Sink:
    """A loguru handler shared by a root handle and its derived handles."""

    def __init__(self, stream: TextIO, owns_stream: bool, level: str, format: str) -> None:
        self.id = uuid.uuid4().hex
        self.stream = stream
        self.owns_stream = owns_stream
        self.level = level
        self.closed = False
        self._lock = threading.Lock()
        self.handler_id = _loguru.add(
            stream,
            level=level,
            format=_json_formatter if format == "json" else _text_formatter,
            filter=self._accepts,
            colorize=False,
            backtrace=False,
            diagnose=False,
        )

    def _accepts(self, record) -> bool:
        return record["extra"].get(SINK_KEY) == self.id

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            _loguru.remove(self.handler_id)
            if self.owns_stream:
                self.stream.close()


class Logger(ABC):
    """Leveled, field-aware logging interface used across the service."""

    @abstractmethod
    def log(self, level: str, message: str) -> None:
        """Write *message* at *level* (a name from ``LEVELS``)."""

    @abstractmethod
    def with_fields(self, fields: Mapping[str, Any]) -> "Logger":
        """Return a handle that adds *fields* to every entry it writes."""

    @abstractmethod
    def sync(self) -> None:
        """Flush buffered entries."""

    @abstractmethod
    def close(self) -> None:
        """Release the output sink."""

    # -- Leveled helpers ----------------------------------------------------

    def trace(self, *args: object) -> None:
        self.log("trace", sprint(*args))

    def tracef(self, template: str, *args: object) -> None:
        self.log("trace", template % args if args else template)

    def debug(self, *args: object) -> None:
        self.log("debug", sprint(*args))

    def debugf(self, template: str, *args: object) -> None:
        self.log("debug", template % args if args else template)

    def info(self, *args: object) -> None:
        self.log("info", sprint(*args))

    def infof(self, template: str, *args: object) -> None:
        self.log("info", template % args if args else template)

    def warn(self, *args: object) -> None:
        self.log("warn", sprint(*args))

    def warnf(self, template: str, *args: object) -> None:
        self.log("warn", template % args if args else template)

    def error(self, *args: object) -> None:
        self.log("error", sprint(*args))

    def errorf(self, template: str, *args: object) -> None:
        self.log("error", template % args if args else template)

    def fatal(self, *args: object) -> None:
        """Write at fatal level, then exit the process with status 1.

        See ``_exit_fatal`` for how the process is terminated.
        """
        self.log("fatal", sprint(*args))
        self._exit_fatal()

    def fatalf(self, template: str, *args: object) -> None:
        """Formatted ``fatal``; exits the process with status 1."""
        self.log("fatal", template % args if args else template)
        self._exit_fatal()

    def _exit_fatal(self) -> None:
        """Terminate the process after a fatal entry.

        On the main thread this raises ``SystemExit(1)`` so ``with`` blocks and
        atexit hooks still run. ``SystemExit`` would only end a worker thread,
        so there the sink is closed, the standard streams are flushed and the
        process ends with ``os._exit(1)``.
        """
        self.sync()
        if threading.current_thread() is threading.main_thread():
            sys.exit(1)
        self.close()
        for stream in (sys.stdout, sys.stderr):
            stream.flush()
        os._exit(1)

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class LoguruLogger(Logger):
    """``Logger`` implementation writing through a dedicated loguru sink."""

    def __init__(self, sink: _Sink, bound=None) -> None:
        self._sink = sink
        self._logger = bound if bound is not None else _loguru.bind(**{SINK_KEY: sink.id})

    @property
    def level(self) -> str:
        return self._sink.level

    def log(self, level: str, message: str) -> None:
        if self._sink.closed:
            return
        # depth=2 attributes the record to the caller of info()/infof()
        self._logger.opt(depth=2).log(LEVELS.get(level, level), message)

    def with_fields(self, fields: Mapping[str, Any]) -> Logger:
        """Bind *fields* to a new handle.

        Keys starting with ``_pm_`` are reserved for routing and are renamed
        to ``fields.<key>``.
        """
        bound = self._logger.bind(**{_field_name(k): v for k, v in fields.items()})
        return LoguruLogger(self._sink, bound)

    def sync(self) -> None:
        # loguru stream sinks flush after every write
        return None

    def close(self) -> None:
        """Remove the sink and close the file it writes to.

        Derived handles share the sink, so closing any of them closes all.
        Safe to call more than once.
        """
        self._sink.close()


def new_logger(level: str, format: str, output: str) -> Logger:
    """Build a logger writing to stdout or an append-only file.

    Args:
        level: Minimum level name (``debug``, ``info``, ``warn``, ...).
            Unknown names fall back to ``info``.
        format: ``"json"`` for one JSON object per line, anything else for
            ``YYYY-MM-DD HH:MM:SS | LEVEL | message key=value`` text lines.
        output: ``"stdout"`` or ``""`` for standard output, otherwise a file
            path opened for append (created if missing).

    Returns:
        A root ``Logger`` handle. Call ``close()`` at shutdown.

    Raises:
        LoggerIOError: If the output file cannot be opened.
    """
    if output in ("stdout", ""):
        stream, owns_stream = sys.stdout, False
    else:
        stream, owns_stream = _open_output(output), True

    sink = _Sink(stream, owns_stream, parse_level(level), format)
    _loguru.debug(
        "Logger ready: level={} format={} output={}",
        sink.level,
        format or "text",
        output or "stdout",
    )
    return LoguruLogger(sink)
