"""Shared aiohttp plumbing for the off-chain pool index.

Every request goes through a per-host guard that caps concurrency and opens
a circuit after repeated failures, so an index outage costs one fast error
instead of a stalled swap.  An :class:`HttpClient` owns its session and
guards; callers without one share a session per event loop and one set of
guards.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import weakref
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Deque, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import orjson

from .util import env_float, env_int

logger = logging.getLogger(__name__)

CONNECTOR_LIMIT = env_int("HTTP_CONNECTOR_LIMIT", 0, minimum=0)
CONNECTOR_LIMIT_PER_HOST = env_int("HTTP_CONNECTOR_LIMIT_PER_HOST", 0, minimum=0)
USER_AGENT = os.getenv("HTTP_USER_AGENT", "raysnipe/1.0")


class HTTPError(Exception):
    """Non-success HTTP status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HostCircuitOpenError(RuntimeError):
    """The host guard is refusing requests until its cooldown ends."""


def dumps(obj: object) -> bytes:
    return orjson.dumps(obj)


def loads(data: str | bytes) -> object:
    return orjson.loads(data)


_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


def _new_session(timeout: float | None = None) -> aiohttp.ClientSession:
    if timeout is None:
        timeout = env_float("HTTP_TIMEOUT_SEC", 15.0, minimum=0.1)
    return aiohttp.ClientSession(
        headers={"User-Agent": USER_AGENT},
        timeout=aiohttp.ClientTimeout(total=timeout),
        connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT, limit_per_host=CONNECTOR_LIMIT_PER_HOST),
    )


async def get_session() -> aiohttp.ClientSession:
    """Return the session bound to the running loop, creating it on first use."""
    loop = asyncio.get_running_loop()
    session = _SESSIONS.get(loop)
    if session is not None and not session.closed:
        return session
    session = _SESSIONS[loop] = _new_session()
    return session


async def close_session() -> None:
    sessions = list(_SESSIONS.values())
    _SESSIONS.clear()
    for session in sessions:
        if not session.closed:
            await session.close()


@dataclass(frozen=True)
class HostPolicy:
    concurrency: int = 4
    failure_threshold: int = 5
    cooldown: float = 30.0
    attempts: int = 3
    backoff: float = 0.5


# keyed by registrable domain; subdomains inherit the policy
_POLICIES: Dict[str, HostPolicy] = {
    "dexscreener.com": HostPolicy(concurrency=4, failure_threshold=3, cooldown=20.0),
}


def policy_for(host: str) -> HostPolicy:
    host = host.lower()
    for domain, policy in _POLICIES.items():
        if host == domain or host.endswith("." + domain):
            return policy
    return HostPolicy(concurrency=CONNECTOR_LIMIT_PER_HOST or 4)


class _HostGuard:
    def __init__(self, host: str, policy: HostPolicy) -> None:
        self.host = host
        self.policy = policy
        self.slots = asyncio.Semaphore(max(1, policy.concurrency))
        self.failures: Deque[float] = deque()
        self.open_until = 0.0

    def check(self) -> None:
        now = time.monotonic()
        if now < self.open_until:
            raise HostCircuitOpenError(
                f"circuit open for host {self.host} ({self.open_until - now:.1f}s left)"
            )
        if self.open_until:
            self.open_until = 0.0
            self.failures.clear()

    def succeeded(self) -> None:
        self.failures.clear()

    def failed(self) -> None:
        now = time.monotonic()
        self.failures.append(now)
        while self.failures and self.failures[0] < now - self.policy.cooldown:
            self.failures.popleft()
        if len(self.failures) >= self.policy.failure_threshold:
            self.open_until = now + self.policy.cooldown
            logger.warning(
                "Opening HTTP circuit for %s: %d failures, cooling down %.0fs",
                self.host,
                len(self.failures),
                self.policy.cooldown,
            )


class HostGuards:
    """Per-host concurrency slots and circuit breakers."""

    def __init__(self) -> None:
        self._guards: Dict[str, _HostGuard] = {}

    def get(self, host: str) -> _HostGuard:
        guard = self._guards.get(host)
        if guard is None:
            guard = self._guards[host] = _HostGuard(host, policy_for(host))
        return guard

    def clear(self) -> None:
        """Drop every host guard, closing any open circuit."""
        self._guards.clear()

    @asynccontextmanager
    async def request(self, url: str) -> AsyncIterator[HostPolicy]:
        """Hold a concurrency slot for *url*'s host and record the outcome."""
        host = _host_of(url)
        if not host:
            yield HostPolicy(attempts=1, backoff=0.0)
            return
        guard = self.get(host)
        guard.check()
        async with guard.slots:
            try:
                yield guard.policy
            except Exception:
                guard.failed()
                raise
            guard.succeeded()

    def retry_config(self, url: str) -> Tuple[int, float]:
        """``(attempts, backoff)`` to use for *url*."""
        host = _host_of(url)
        if not host:
            return 1, 0.0
        policy = self.get(host).policy
        return max(1, policy.attempts), max(0.0, policy.backoff)


def _host_of(url: str) -> str:
    parsed = urlparse(url)
    return (parsed.hostname or parsed.netloc or "").lower()


# used by callers that do not bring their own HttpClient
_SHARED_GUARDS = HostGuards()


def reset_host_controllers() -> None:
    _SHARED_GUARDS.clear()


def host_request(url: str) -> AsyncContextManager[HostPolicy]:
    return _SHARED_GUARDS.request(url)


def host_retry_config(url: str) -> Tuple[int, float]:
    return _SHARED_GUARDS.retry_config(url)


class HttpClient:
    """A session and host guards owned by one component instead of the process.

    The session is opened on first use and closed by :meth:`close`.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        self.timeout = timeout
        self.guards = HostGuards()
        self._session: Optional[aiohttp.ClientSession] = None

    async def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = _new_session(self.timeout)
        return self._session

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
        self.guards.clear()


_RETRY_ON = (aiohttp.ClientError, asyncio.TimeoutError, HTTPError, orjson.JSONDecodeError)


async def _request_once(
    session: aiohttp.ClientSession, guards: HostGuards, method: str, url: str, **kwargs: Any
) -> Any:
    async with guards.request(url):
        async with session.request(method, url, **kwargs) as response:
            if response.status >= 400:
                body = await response.text()
                raise HTTPError(f"{method} {url} -> {response.status}: {body[:300]}", response.status)
            return loads(await response.read())


async def fetch_json(
    url: str,
    method: str = "GET",
    *,
    attempts: int | None = None,
    backoff: float | None = None,
    client: Optional[HttpClient] = None,
    **kwargs: Any,
) -> Any:
    """Request *url* and decode the JSON body.

    Transport errors, error statuses and malformed bodies are retried up to
    *attempts* times, sleeping ``backoff * 2**n`` between tries.  An open
    circuit is raised straight away.  The last error is re-raised once the
    attempts are used up.  With *client* its session and host guards are
    used, otherwise the per-loop session and the shared guards.
    """
    if client is not None:
        session, guards = await client.session(), client.guards
    else:
        session, guards = await get_session(), _SHARED_GUARDS
    default_attempts, default_backoff = guards.retry_config(url)
    attempts = max(1, default_attempts if attempts is None else attempts)
    backoff = default_backoff if backoff is None else max(0.0, backoff)

    for n in range(attempts):
        try:
            return await _request_once(session, guards, method, url, **kwargs)
        except _RETRY_ON as exc:
            if n + 1 >= attempts:
                raise
            delay = backoff * 2**n
            logger.debug("%s %s failed (%s), retry %d/%d in %.2fs", method, url, exc, n + 1, attempts - 1, delay)
            await asyncio.sleep(delay)
    raise RuntimeError(f"failed to fetch {url}")


__all__ = [
    "HTTPError",
    "HostCircuitOpenError",
    "HostGuards",
    "HostPolicy",
    "HttpClient",
    "dumps",
    "loads",
    "get_session",
    "close_session",
    "fetch_json",
    "host_request",
    "host_retry_config",
    "policy_for",
    "reset_host_controllers",
]
