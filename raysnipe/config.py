from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .errors import SnipeError
from .pricing import parse_slippage
from .util import env_float, env_int, env_list, parse_bool_env

logger = logging.getLogger(__name__)

_COMMITMENTS = {"processed", "confirmed", "finalized"}


class CoreConfig(BaseModel):
    """Settings handed to the trading core by the external loader."""

    model_config = ConfigDict(extra="ignore")

    rpc_list: List[str]
    poll_commitment: str = "confirmed"
    default_slippage: str = "1.0"
    monitor_interval: float = 1.0
    workers: int = 4
    retries: int = 3
    request_timeout: float = 10.0
    health_check_interval: float = 30.0
    cache_ttl: float = 900.0

    index_base_url: Optional[str] = None
    health_probe_timeout: float = 5.0
    confirmation_timeout: float = 45.0
    simulation_timeout: float = 5.0
    cache_sweep_interval: float = 300.0
    max_impact_pct: float = 10.0
    min_total_liquidity: int = 1_000_000
    min_pool_liquidity: int = 0
    max_reserve_imbalance: Optional[float] = None
    skip_preflight: bool = False
    simulate: bool = False

    @field_validator("rpc_list")
    def _rpc_list_urls(cls, value: List[str]) -> List[str]:
        urls = [str(v).strip() for v in value if str(v).strip()]
        if not urls:
            raise ValueError("rpc_list must contain at least one URL")
        bad = [u for u in urls if not u.startswith(("http://", "https://"))]
        if bad:
            raise ValueError(f"rpc_list entries must be http(s) URLs: {', '.join(bad)}")
        return urls

    @field_validator("poll_commitment")
    def _known_commitment(cls, value: str) -> str:
        norm = value.strip().lower()
        if norm not in _COMMITMENTS:
            raise ValueError(f"unknown commitment {value!r}")
        return norm

    @field_validator("default_slippage")
    def _parseable_slippage(cls, value: str) -> str:
        try:
            parse_slippage(value)
        except SnipeError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("monitor_interval")
    def _monitor_interval_floor(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("monitor_interval must be at least 1 second")
        return value

    @field_validator("workers", "retries")
    def _non_negative_counts(cls, value: int, info) -> int:
        floor = 1 if info.field_name == "workers" else 0
        if value < floor:
            raise ValueError(f"{info.field_name} must be >= {floor}")
        return value

    @field_validator("cache_ttl")
    def _ttl_bounds(cls, value: float) -> float:
        if not 60.0 <= value <= 3600.0:
            raise ValueError("cache_ttl must be within [60, 3600] seconds")
        return value

    @model_validator(mode="after")
    def _timeouts_positive(self) -> "CoreConfig":
        for name in (
            "request_timeout",
            "health_check_interval",
            "health_probe_timeout",
            "confirmation_timeout",
            "simulation_timeout",
            "cache_sweep_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    @classmethod
    def from_env(cls, cfg: Dict[str, Any] | None = None) -> "CoreConfig":
        """Create a config from ``RAYSNIPE_*`` environment variables and *cfg*."""

        cfg = dict(cfg or {})
        env = os.getenv
        rpc_list = env_list("RAYSNIPE_RPC_LIST", cfg.get("rpc_list") or [])
        data: Dict[str, Any] = {
            "rpc_list": rpc_list,
            "poll_commitment": env("RAYSNIPE_POLL_COMMITMENT", cfg.get("poll_commitment", "confirmed")),
            "default_slippage": env("RAYSNIPE_DEFAULT_SLIPPAGE", str(cfg.get("default_slippage", "1.0"))),
            "monitor_interval": env_float("RAYSNIPE_MONITOR_INTERVAL", cfg.get("monitor_interval", 1.0)),
            "workers": env_int("RAYSNIPE_WORKERS", cfg.get("workers", 4)),
            "retries": env_int("RAYSNIPE_RETRIES", cfg.get("retries", 3)),
            "request_timeout": env_float("RAYSNIPE_REQUEST_TIMEOUT", cfg.get("request_timeout", 10.0)),
            "health_check_interval": env_float(
                "RAYSNIPE_HEALTH_CHECK_INTERVAL", cfg.get("health_check_interval", 30.0)
            ),
            "cache_ttl": env_float("RAYSNIPE_CACHE_TTL", cfg.get("cache_ttl", 900.0)),
            "index_base_url": env("RAYSNIPE_INDEX_URL") or cfg.get("index_base_url") or None,
            "skip_preflight": parse_bool_env(
                "RAYSNIPE_SKIP_PREFLIGHT", bool(cfg.get("skip_preflight", False))
            ),
            "simulate": parse_bool_env("RAYSNIPE_SIMULATE", bool(cfg.get("simulate", False))),
        }
        for key, value in cfg.items():
            data.setdefault(key, value)
        config = cls(**data)
        logger.debug(
            "Core config: %d RPC endpoint(s), workers=%d, commitment=%s",
            len(config.rpc_list),
            config.workers,
            config.poll_commitment,
        )
        return config


def validate_config(data: Dict[str, object]) -> Dict[str, object]:
    """Validate ``data`` against :class:`CoreConfig`.

    Returns the validated data with type normalization applied.
    Raises ``ValueError`` on validation errors.
    """
    try:
        return CoreConfig(**data).model_dump()
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


__all__ = ["CoreConfig", "validate_config"]
