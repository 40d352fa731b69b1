from __future__ import annotations

import contextlib
import logging
import os
import sys
import threading
import time
from typing import Any, Iterable

import orjson

from .util import parse_bool

CONSOLE_FORMAT = "%(asctime)s.%(msecs)03dZ %(levelname)-7s %(name)s: %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# third-party loggers that are chatty at INFO
QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access", "solana", "httpx", "httpcore")

_HANDLER_ATTR = "_raysnipe_console"
_BUILTIN_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are merged in at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        created = time.gmtime(record.created)
        payload: dict[str, Any] = {
            "ts": "%s.%03dZ" % (time.strftime("%Y-%m-%dT%H:%M:%S", created), record.msecs),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "line": record.lineno,
        }
        extras = {k: v for k, v in vars(record).items() if k not in _BUILTIN_ATTRS and not k.startswith("_")}
        for key, value in extras.items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode()


def _is_console_stream(stream: Any) -> bool:
    return stream in (sys.stdout, sys.stderr, sys.__stdout__, sys.__stderr__)


def setup_stdout_logging(
    *,
    level: int = logging.INFO,
    fmt: str | None = None,
    datefmt: str | None = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> logging.StreamHandler:
    """Install exactly one console handler writing to ``sys.stdout``.

    Calling it again reuses the handler it installed before.  Other handlers
    bound to stdout or stderr, typically left by ``logging.basicConfig``, are
    removed so records are not printed twice.  File handlers are untouched.
    """
    root = logging.getLogger()
    ours = getattr(root, _HANDLER_ATTR, None)
    if ours not in root.handlers:
        ours = None

    for handler in list(root.handlers):
        if handler is ours or type(handler) is not logging.StreamHandler:
            continue
        if _is_console_stream(handler.stream):
            root.removeHandler(handler)
            with contextlib.suppress(Exception):
                handler.close()

    if ours is None:
        ours = logging.StreamHandler(sys.stdout)
        root.addHandler(ours)
        setattr(root, _HANDLER_ATTR, ours)
    elif ours.stream is not sys.stdout:
        ours.setStream(sys.stdout)

    root.setLevel(level)
    ours.setLevel(level)
    ours.setFormatter(UTCFormatter(fmt or CONSOLE_FORMAT, datefmt=datefmt or CONSOLE_DATEFMT))
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return ours


def _level_from(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    text = (value or "").strip()
    if not text:
        return logging.INFO
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    fmt: str | None = None,
    datefmt: str | None = None,
) -> logging.StreamHandler:
    """Console logging driven by arguments, falling back to ``LOG_LEVEL``,
    ``LOG_JSON``, ``LOG_FORMAT`` and ``LOG_DATEFMT``."""
    if level is None:
        level = os.getenv("LOG_LEVEL")
    if json_logs is None:
        json_logs = parse_bool(os.getenv("LOG_JSON"), False)

    handler = setup_stdout_logging(
        level=_level_from(level),
        fmt=fmt or os.getenv("LOG_FORMAT"),
        datefmt=datefmt or os.getenv("LOG_DATEFMT"),
    )
    if json_logs:
        handler.setFormatter(JsonFormatter())
    return handler


class _WarnThrottle:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def allow(self, key: str, interval: float) -> bool:
        now = time.monotonic()
        with self._lock:
            last = self._last.get(key)
            if interval > 0 and last is not None and now - last < interval:
                return False
            self._last[key] = now
            return True

    def clear(self) -> None:
        with self._lock:
            self._last.clear()


_throttle = _WarnThrottle()


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Log a warning under *key* at most once every *minutes*; returns whether it was emitted."""
    if not _throttle.allow(key, max(0.0, minutes) * 60.0):
        return False
    (logger or logging.getLogger()).warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    _throttle.clear()


def _loggable(value: Any, max_string: int) -> Any:
    if value is None or isinstance(value, (bool, float)):
        return value
    if isinstance(value, int):
        # orjson rejects integers wider than 64 bits
        return value if -(2**63) <= value < 2**64 else str(value)
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}...({len(value)} chars)"
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {str(k): _loggable(v, max_string) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_loggable(v, max_string) for v in value]
    return str(value)


def serialize_for_log(value: Any, *, max_string: int = 256) -> str:
    """Compact, key-sorted JSON for log lines, with long strings and raw bytes summarized."""
    return orjson.dumps(_loggable(value, max_string), option=orjson.OPT_SORT_KEYS).decode()


__all__ = [
    "JsonFormatter",
    "UTCFormatter",
    "setup_stdout_logging",
    "configure_logging",
    "warn_once_per",
    "reset_warn_once_cache",
    "serialize_for_log",
]
