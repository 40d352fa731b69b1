"""Raydium V4 AMM trading core: pool discovery, quoting, swaps and sniping."""

__version__ = "0.1.0"

from .config import CoreConfig, validate_config
from .core import TradingCore, build_core
from .dispatcher import TaskDispatcher
from .errors import SnipeError, is_retryable
from .models import ExecutionState, ExecutionStatus, Pool, PoolState, PoolStatus, SwapDirection, SwapQuote
from .pool_cache import PoolCache
from .pool_resolver import PoolResolver
from .pricing import PricingEngine, PricingLimits, SlippagePolicy, parse_slippage
from .rpc_pool import RpcEndpointPool
from .sniper import SnipeConfig, SnipingController, SniperState
from .swap import SwapExecutor, SwapRequest, SwapResult
from .tasks import Task, TradeResult, task_from_record
from .transactions import KeypairSigner, SubmitOptions, TransactionOrchestrator

__all__ = [
    "__version__",
    "CoreConfig",
    "TradingCore",
    "build_core",
    "validate_config",
    "TaskDispatcher",
    "SnipeError",
    "is_retryable",
    "ExecutionState",
    "ExecutionStatus",
    "Pool",
    "PoolState",
    "PoolStatus",
    "SwapDirection",
    "SwapQuote",
    "PoolCache",
    "PoolResolver",
    "PricingEngine",
    "PricingLimits",
    "SlippagePolicy",
    "parse_slippage",
    "RpcEndpointPool",
    "SnipeConfig",
    "SnipingController",
    "SniperState",
    "SwapExecutor",
    "SwapRequest",
    "SwapResult",
    "Task",
    "TradeResult",
    "task_from_record",
    "KeypairSigner",
    "SubmitOptions",
    "TransactionOrchestrator",
]
