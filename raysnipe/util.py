# Environment parsing helpers.

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

N = TypeVar("N", int, float)

TRUE_WORDS = frozenset({"1", "true", "t", "yes", "y", "on", "enable", "enabled"})
FALSE_WORDS = frozenset({"0", "false", "f", "no", "n", "off", "disable", "disabled"})


def parse_bool(value: object, default: bool = False) -> bool:
    """Interpret common yes/no spellings; anything unrecognised gives *default*."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    return default


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    value = parse_bool(raw, default)
    if raw is not None and raw.strip().lower() not in TRUE_WORDS | FALSE_WORDS:
        logger.debug("Unrecognised boolean %s=%r, using %s", name, raw, default)
    return value


def _env_number(name: str, default: N, cast: Callable[[str], N], minimum: N | None) -> N:
    raw = (os.getenv(name) or "").strip()
    value = cast(default)
    if raw:
        try:
            value = cast(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r, not a valid %s; using %s", name, raw, cast.__name__, default)
    if minimum is not None:
        value = max(value, minimum)
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    return _env_number(name, default, float, minimum)


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    return _env_number(name, default, int, minimum)


def env_list(name: str, default: Iterable[str] = ()) -> list[str]:
    """Comma separated values of *name*, or *default* when it is unset."""
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


__all__ = ["parse_bool", "parse_bool_env", "env_float", "env_int", "env_list"]
