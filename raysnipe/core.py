"""Wire the trading components together from a :class:`CoreConfig`."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from solders.pubkey import Pubkey

from .config import CoreConfig
from .dispatcher import TaskDispatcher, Wallet
from .http import HttpClient
from .index_client import PoolIndex, PoolIndexClient
from .pool_cache import PoolCache
from .pool_resolver import PoolResolver
from .pricing import PricingEngine, PricingLimits
from .rpc_pool import RpcEndpointPool
from .sniper import SnipeConfig, SnipingController
from .swap import SwapExecutor, SwapRequest
from .transactions import SubmitOptions, TransactionOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class TradingCore:
    config: CoreConfig
    rpc: RpcEndpointPool
    cache: PoolCache
    resolver: PoolResolver
    pricing: PricingEngine
    orchestrator: TransactionOrchestrator
    executor: SwapExecutor
    http: HttpClient = dataclasses.field(default_factory=HttpClient)

    def start(self) -> None:
        """Start the RPC health loop and the cache sweeper on the running loop."""
        self.rpc.start()
        self.cache.start()

    async def close(self) -> None:
        await self.cache.close()
        await self.rpc.close()
        await self.http.close()

    def dispatcher(self, wallets: Mapping[str, Wallet]) -> TaskDispatcher:
        return TaskDispatcher(
            self.executor,
            wallets,
            workers=self.config.workers,
            max_retries=self.config.retries,
            simulate=self.config.simulate,
        )

    def sniper(self, pool_id: Pubkey, request: SwapRequest, **overrides: Any) -> SnipingController:
        settings = dict(
            monitor_interval=self.config.monitor_interval,
            max_retries=self.config.retries,
            liquidity_limits=self.pricing.limits,
        )
        settings.update(overrides)
        return SnipingController(
            self.executor,
            lambda: self.resolver.fetch_pool(pool_id),
            dataclasses.replace(request, pool_id=pool_id),
            SnipeConfig(**settings),
        )


def build_core(
    config: CoreConfig,
    *,
    client_factory: Optional[Callable[[str], Any]] = None,
    index: Optional[PoolIndex] = None,
) -> TradingCore:
    rpc = RpcEndpointPool(
        config.rpc_list,
        client_factory=client_factory,
        commitment=config.poll_commitment,
        request_timeout=config.request_timeout,
        health_check_interval=config.health_check_interval,
        health_probe_timeout=config.health_probe_timeout,
    )
    cache = PoolCache(config.cache_ttl, sweep_interval=config.cache_sweep_interval)
    http = HttpClient()
    if index is None and config.index_base_url:
        index = PoolIndexClient(config.index_base_url, http=http)
    resolver = PoolResolver(rpc, cache, index, min_liquidity=config.min_pool_liquidity)
    pricing = PricingEngine(
        PricingLimits(
            max_impact_pct=config.max_impact_pct,
            min_total_liquidity=config.min_total_liquidity,
            max_reserve_imbalance=config.max_reserve_imbalance,
        )
    )
    orchestrator = TransactionOrchestrator(rpc)
    executor = SwapExecutor(
        rpc,
        resolver,
        pricing,
        orchestrator,
        submit_options=SubmitOptions(
            skip_preflight=config.skip_preflight,
            preflight_commitment=config.poll_commitment,
            commitment=config.poll_commitment,
            confirmation_timeout=config.confirmation_timeout,
        ),
        simulation_timeout=config.simulation_timeout,
    )
    logger.info(
        "Trading core ready: %d endpoint(s), index=%s, cache ttl=%.0fs",
        len(config.rpc_list),
        "on" if index is not None else "off",
        cache.ttl,
    )
    return TradingCore(config, rpc, cache, resolver, pricing, orchestrator, executor, http)


__all__ = ["TradingCore", "build_core"]
