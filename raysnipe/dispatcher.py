"""Bounded parallel execution of independent swap tasks."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from fractions import Fraction
from typing import Iterable, List, Mapping, Optional, Set, Tuple

from solders.pubkey import Pubkey

from .errors import SnipeError
from .logging_utils import serialize_for_log
from .swap import DEFAULT_SWAP_RETRIES, SwapExecutor, SwapRequest, SwapResult
from .tasks import ACTION_BUY, ACTION_SELL, STATUS_CANCELLED, STATUS_FAILED, Task, TradeResult
from .transactions import Signer

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4

Wallet = Tuple[Pubkey, Signer]


class TaskDispatcher:
    """Run tasks through a :class:`SwapExecutor` with at most ``workers`` in flight.

    Every outcome, including failures, becomes a :class:`TradeResult` that is
    both returned from :meth:`run` and pushed to :attr:`results` as soon as
    it is known.
    """

    def __init__(
        self,
        executor: SwapExecutor,
        wallets: Mapping[str, Wallet],
        *,
        workers: int = DEFAULT_WORKERS,
        task_timeout: Optional[float] = None,
        max_retries: int = DEFAULT_SWAP_RETRIES,
        simulate: bool = False,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.executor = executor
        self.wallets = dict(wallets)
        self.workers = workers
        self.task_timeout = task_timeout
        self.max_retries = max_retries
        self.simulate = simulate
        self.results: asyncio.Queue[TradeResult] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(workers)
        self._inflight: Set[asyncio.Task] = set()
        self._cancelled = False

    def cancel(self) -> None:
        """Cancel every in-flight task; pending ones are reported as cancelled."""
        self._cancelled = True
        for job in list(self._inflight):
            job.cancel()

    def _emit(self, result: TradeResult, sink: List[TradeResult]) -> None:
        sink.append(result)
        self.results.put_nowait(result)
        if result.status == STATUS_FAILED:
            logger.warning("Trade result %s", serialize_for_log(result.to_record()))
        else:
            logger.info("Trade result %s", serialize_for_log(result.to_record()))

    def _timeout_for(self, task: Task) -> Optional[float]:
        return task.deadline_seconds or self.task_timeout

    async def _swap(
        self,
        task: Task,
        wallet: Wallet,
        source: Pubkey,
        target: Pubkey,
        amount: int,
        action: str,
    ) -> TradeResult:
        owner, signer = wallet
        timeout = self._timeout_for(task)
        request = SwapRequest(
            owner=owner,
            signer=signer,
            source_mint=source,
            target_mint=target,
            amount_in=amount,
            slippage=task.slippage,
            priority_fee_sol=task.priority_fee_sol,
            compute_unit_limit=task.compute_units,
            wait_confirmation=task.wait_confirmation,
            simulate=self.simulate,
            max_retries=self.max_retries,
            deadline=time.time() + timeout if timeout else None,
            task_name=task.task_name,
        )
        base = dict(
            wallet=task.wallet,
            pair=f"{source}/{target}",
            action=action,
            amount_in=amount,
            task_name=task.task_name,
        )
        try:
            if timeout:
                swap: SwapResult = await asyncio.wait_for(self.executor.execute(request), timeout)
            else:
                swap = await self.executor.execute(request)
        except asyncio.TimeoutError:
            return TradeResult(status=STATUS_FAILED, error_message=f"deadline of {timeout:g}s exceeded", **base)
        except SnipeError as exc:
            return TradeResult(status=STATUS_FAILED, error_message=str(exc), **base)
        except Exception as exc:
            logger.exception("Task %s hit an unexpected error", task.task_name)
            return TradeResult(status=STATUS_FAILED, error_message=f"{type(exc).__name__}: {exc}", **base)
        return TradeResult(
            status=swap.status.state.value,
            amount_out=swap.quote.amount_out,
            signature=swap.signature,
            error_message=swap.status.error_message,
            **base,
        )

    async def _autosell(self, task: Task, wallet: Wallet, sink: List[TradeResult]) -> None:
        plan = task.autosell
        assert plan is not None
        if plan.delay > 0:
            await asyncio.sleep(plan.delay)
        async with self._semaphore:
            owner, _ = wallet
            try:
                balance = await self.executor.token_balance(owner, task.target_token)
            except SnipeError as exc:
                self._emit(
                    TradeResult(
                        wallet=task.wallet,
                        pair=f"{task.target_token}/{task.source_token}",
                        action=ACTION_SELL,
                        amount_in=0,
                        status=STATUS_FAILED,
                        error_message=f"balance lookup failed: {exc}",
                        task_name=task.task_name,
                    ),
                    sink,
                )
                return
            amount = math.floor(balance * Fraction(str(plan.percent)) / 100)
            if amount <= 0:
                self._emit(
                    TradeResult(
                        wallet=task.wallet,
                        pair=f"{task.target_token}/{task.source_token}",
                        action=ACTION_SELL,
                        amount_in=0,
                        status=STATUS_FAILED,
                        error_message="no balance",
                        task_name=task.task_name,
                    ),
                    sink,
                )
                return
            logger.info(
                "Autosell %s: selling %d of %d (%g%%)", task.task_name, amount, balance, plan.percent
            )
            result = await self._swap(
                task, wallet, task.target_token, task.source_token, amount, ACTION_SELL
            )
        self._emit(result, sink)

    async def _run_one(self, task: Task, sink: List[TradeResult]) -> None:
        wallet = self.wallets.get(task.wallet)
        selling = False
        try:
            if wallet is None:
                self._emit(
                    TradeResult(
                        wallet=task.wallet,
                        pair=task.pair,
                        action=ACTION_BUY,
                        amount_in=task.amount_in,
                        status=STATUS_FAILED,
                        error_message=f"unknown wallet {task.wallet!r}",
                        task_name=task.task_name,
                    ),
                    sink,
                )
                return
            async with self._semaphore:
                result = await self._swap(
                    task, wallet, task.source_token, task.target_token, task.amount_in, ACTION_BUY
                )
            self._emit(result, sink)
            if task.autosell is not None and result.ok:
                selling = True
                await self._autosell(task, wallet, sink)
        except asyncio.CancelledError:
            logger.info("Task %s cancelled during %s", task.task_name, ACTION_SELL if selling else ACTION_BUY)
            # once the buy has a result only the sell can be cancelled
            self._emit(
                TradeResult(
                    wallet=task.wallet,
                    pair=f"{task.target_token}/{task.source_token}" if selling else task.pair,
                    action=ACTION_SELL if selling else ACTION_BUY,
                    amount_in=0 if selling else task.amount_in,
                    status=STATUS_CANCELLED,
                    task_name=task.task_name,
                ),
                sink,
            )
            raise

    async def run(self, tasks: Iterable[Task]) -> List[TradeResult]:
        """Execute *tasks* and return their results in completion order."""
        collected: List[TradeResult] = []
        jobs = []
        for task in tasks:
            job = asyncio.create_task(self._run_one(task, collected), name=f"task:{task.task_name}")
            self._inflight.add(job)
            job.add_done_callback(self._inflight.discard)
            jobs.append(job)
        if self._cancelled:
            self.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        logger.info(
            "Dispatched %d task(s): %d result(s)",
            len(jobs),
            len(collected),
        )
        return collected


__all__ = ["TaskDispatcher", "Wallet", "DEFAULT_WORKERS"]
