"""Round-robin pool of Solana RPC endpoints with health tracking and retries."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Finalized, Processed

from .errors import (
    AllAttemptsExhausted,
    ErrorClass,
    InputError,
    NoHealthyEndpoints,
    RpcTimeout,
    classify_error,
)
from .logging_utils import warn_once_per

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_HEALTH_INTERVAL = 30.0
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_FAILURE_THRESHOLD = 3
RECONNECT_BACKOFF_START = 5.0
RECONNECT_BACKOFF_CAP = 30.0
LATENCY_ALPHA = 0.2

_COMMITMENTS: Dict[str, Commitment] = {
    "processed": Processed,
    "confirmed": Confirmed,
    "finalized": Finalized,
}


def commitment_from_name(name: str | Commitment) -> Commitment:
    try:
        return _COMMITMENTS[str(name).strip().lower()]
    except KeyError as exc:
        raise InputError(f"unknown commitment {name!r}") from exc


@dataclass(slots=True)
class RpcEndpoint:
    url: str
    client: Any
    active: bool = True
    success_count: int = 0
    error_count: int = 0
    avg_latency: float = 0.0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def observe_latency(self, seconds: float) -> None:
        if self.avg_latency <= 0:
            self.avg_latency = seconds
        else:
            self.avg_latency = self.avg_latency * (1 - LATENCY_ALPHA) + seconds * LATENCY_ALPHA

    def snapshot(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "active": self.active,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "avg_latency": self.avg_latency,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


class RpcEndpointPool:
    """Dispatch RPC operations across several upstream endpoints.

    ``execute(op)`` awaits ``op(client)`` on the next active endpoint in
    round-robin order.  Retryable failures back off and rotate to the next
    endpoint, critical failures disable the endpoint, anything else is
    returned to the caller untouched.
    """

    def __init__(
        self,
        urls: Iterable[str],
        *,
        client_factory: Callable[[str], Any] | None = None,
        commitment: str | Commitment = "confirmed",
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        health_check_interval: float = DEFAULT_HEALTH_INTERVAL,
        health_probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        max_attempts: int | None = None,
        backoff_start: float = 0.5,
        backoff_cap: float = 5.0,
    ) -> None:
        url_list = [u.strip() for u in urls if u and u.strip()]
        if not url_list:
            raise InputError("at least one RPC endpoint is required")
        self.commitment = commitment_from_name(commitment)
        self.request_timeout = request_timeout
        self.health_check_interval = health_check_interval
        self.health_probe_timeout = health_probe_timeout
        self.failure_threshold = max(1, failure_threshold)
        self.max_attempts = max_attempts or 2 * len(url_list)
        self.backoff_start = backoff_start
        self.backoff_cap = backoff_cap
        factory = client_factory or self._default_client
        self._endpoints: List[RpcEndpoint] = [RpcEndpoint(url, factory(url)) for url in url_list]
        self._cursor = 0
        self._lock = asyncio.Lock()
        self._health_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closed = False
        self.total_requests = 0
        self.failed_requests = 0
        self.last_success: float | None = None

    def _default_client(self, url: str) -> AsyncClient:
        return AsyncClient(url, commitment=self.commitment, timeout=self.request_timeout)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def endpoints(self) -> List[Dict[str, Any]]:
        return [ep.snapshot() for ep in self._endpoints]

    @property
    def cursor(self) -> int:
        return self._cursor

    def active_count(self) -> int:
        return sum(1 for ep in self._endpoints if ep.active)

    def metrics(self) -> Dict[str, Any]:
        return {
            "endpoints": self.endpoints,
            "active": self.active_count(),
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "last_success": self.last_success,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _next_endpoint(self) -> RpcEndpoint:
        async with self._lock:
            count = len(self._endpoints)
            for offset in range(count):
                idx = (self._cursor + offset) % count
                endpoint = self._endpoints[idx]
                if endpoint.active:
                    self._cursor = (idx + 1) % count
                    return endpoint
        raise NoHealthyEndpoints("no active RPC endpoints available")

    def _deactivate(self, endpoint: RpcEndpoint, reason: str) -> None:
        if not endpoint.active:
            return
        endpoint.active = False
        warn_once_per(
            1.0,
            f"rpc-down:{endpoint.url}",
            "RPC endpoint %s marked inactive: %s",
            endpoint.url,
            reason,
            logger=logger,
        )
        self._maybe_start_reconnect()

    async def execute(
        self,
        op: Callable[[Any], Awaitable[T]],
        *,
        timeout: float | None = None,
        method: str = "",
    ) -> T:
        """Run ``await op(client)`` with failover; see the class docstring."""
        budget = self.request_timeout if timeout is None else min(timeout, self.request_timeout)
        try:
            return await asyncio.wait_for(self._execute(op, method), budget)
        except asyncio.TimeoutError as exc:
            self.failed_requests += 1
            raise RpcTimeout(f"{method or 'rpc call'} exceeded {budget:.1f}s") from exc

    async def _execute(self, op: Callable[[Any], Awaitable[T]], method: str) -> T:
        backoff = self.backoff_start
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            endpoint = await self._next_endpoint()
            self.total_requests += 1
            started = time.monotonic()
            try:
                result = await op(endpoint.client)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                self.failed_requests += 1
                kind = classify_error(exc)
                if kind is ErrorClass.FATAL:
                    raise
                endpoint.error_count += 1
                endpoint.last_error = str(exc)
                if kind is ErrorClass.CRITICAL:
                    self._deactivate(endpoint, str(exc))
                    continue
                logger.debug(
                    "Retryable error on %s (%s attempt %d/%d): %s; backoff %.2fs",
                    endpoint.url,
                    method or "rpc",
                    attempt,
                    self.max_attempts,
                    exc,
                    backoff,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, self.backoff_cap)
                continue
            endpoint.success_count += 1
            endpoint.consecutive_failures = 0
            endpoint.observe_latency(time.monotonic() - started)
            self.last_success = time.time()
            return result
        raise AllAttemptsExhausted(self.max_attempts, last_error)

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def _probe(self, endpoint: RpcEndpoint) -> bool:
        started = time.monotonic()
        try:
            await asyncio.wait_for(endpoint.client.get_version(), self.health_probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            endpoint.consecutive_failures += 1
            endpoint.last_error = str(exc)
            logger.debug(
                "Health probe failed for %s (%d in a row): %s",
                endpoint.url,
                endpoint.consecutive_failures,
                exc,
            )
            if endpoint.consecutive_failures >= self.failure_threshold:
                self._deactivate(endpoint, f"{endpoint.consecutive_failures} failed health checks")
            return False
        endpoint.observe_latency(time.monotonic() - started)
        endpoint.consecutive_failures = 0
        if not endpoint.active:
            endpoint.active = True
            logger.info("RPC endpoint %s is healthy again", endpoint.url)
        return True

    async def health_check_once(self) -> int:
        """Probe every endpoint once and return the number of active ones."""
        await asyncio.gather(*(self._probe(ep) for ep in self._endpoints))
        active = self.active_count()
        if active * 2 < len(self._endpoints):
            self._maybe_start_reconnect()
        return active

    async def _health_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.health_check_interval)
            await self.health_check_once()

    def _maybe_start_reconnect(self) -> None:
        if self._closed or self.active_count() * 2 >= len(self._endpoints):
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = RECONNECT_BACKOFF_START
        logger.warning(
            "Only %d/%d RPC endpoints active; starting reconnect loop",
            self.active_count(),
            len(self._endpoints),
        )
        while not self._closed and self.active_count() * 2 < len(self._endpoints):
            await asyncio.sleep(delay)
            inactive = [ep for ep in self._endpoints if not ep.active]
            await asyncio.gather(*(self._probe(ep) for ep in inactive))
            delay = min(delay * 2, RECONNECT_BACKOFF_CAP)
        logger.info("RPC reconnect loop finished with %d active endpoints", self.active_count())

    def start(self) -> None:
        """Launch the periodic health check loop on the running event loop."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    async def close(self) -> None:
        self._closed = True
        tasks = [t for t in (self._health_task, self._reconnect_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for endpoint in self._endpoints:
            close = getattr(endpoint.client, "close", None)
            if close is not None:
                await close()


__all__ = [
    "ErrorClass",
    "RpcEndpoint",
    "RpcEndpointPool",
    "classify_error",
    "commitment_from_name",
]
