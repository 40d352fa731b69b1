"""End-to-end assembly and submission of a single AMM swap."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.instructions import (
    CloseAccountParams,
    SyncNativeParams,
    close_account,
    create_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from .codec import TOKEN_PROGRAM_ID, WSOL_MINT, account_data, decode_token_account_amount, swap_instruction
from .errors import (
    DeadlineExceeded,
    InputError,
    InsufficientBalance,
    MissingSignature,
    SnipeError,
    is_retryable,
    with_stage,
)
from .models import ExecutionStatus, Pool, SwapDirection, SwapParams, SwapQuote
from .pool_resolver import PoolResolver
from .priority import DEFAULT_UNITS, ComputeBudget, sol_to_lamports
from .pricing import PricingEngine, SlippagePolicy, parse_slippage
from .rpc_pool import RpcEndpointPool
from .transactions import DEFAULT_SIMULATION_TIMEOUT, Signer, SubmitOptions, TransactionOrchestrator

logger = logging.getLogger(__name__)

BASE_TX_COST = 5_000
TOKEN_ACCOUNT_RENT = 2_039_280
DEFAULT_SWAP_RETRIES = 3


@dataclass(slots=True)
class SwapRequest:
    owner: Pubkey
    signer: Signer
    source_mint: Pubkey
    target_mint: Pubkey
    amount_in: int
    slippage: SlippagePolicy | str = "1.0"
    priority_fee_sol: float = 0.0
    compute_unit_limit: int = DEFAULT_UNITS
    wait_confirmation: bool = True
    simulate: bool = False
    max_retries: int = DEFAULT_SWAP_RETRIES
    # absolute wall-clock time, seconds since the epoch
    deadline: Optional[float] = None
    task_name: str = ""
    # trade through this pool instead of the best one for the pair
    pool_id: Optional[Pubkey] = None


@dataclass(slots=True)
class SwapResult:
    quote: SwapQuote
    status: ExecutionStatus
    pool: Pool
    attempts: int = 1

    @property
    def signature(self) -> Optional[str]:
        return self.status.signature

    @property
    def succeeded(self) -> bool:
        return self.status.succeeded


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)


class SwapExecutor:
    """Resolve, quote, build and submit swaps with whole-pipeline retries.

    Resolver, pricing and balance failures surface immediately.  Errors
    classified as retryable by :func:`raysnipe.errors.is_retryable` re-run
    the entire pipeline after ``retry_base * 2**attempt`` seconds so a stale
    blockhash, quote or pool snapshot is never reused.
    """

    def __init__(
        self,
        rpc: RpcEndpointPool,
        resolver: PoolResolver,
        pricing: PricingEngine,
        orchestrator: TransactionOrchestrator,
        *,
        base_tx_cost: int = BASE_TX_COST,
        submit_options: SubmitOptions | None = None,
        retry_base: float = 1.0,
        simulation_timeout: float = DEFAULT_SIMULATION_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc = rpc
        self.resolver = resolver
        self.pricing = pricing
        self.orchestrator = orchestrator
        self.base_tx_cost = base_tx_cost
        self.submit_options = submit_options or SubmitOptions()
        self.retry_base = retry_base
        self.simulation_timeout = simulation_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Account helpers
    # ------------------------------------------------------------------

    async def _read_accounts(self, keys: Sequence[Pubkey]) -> List[Optional[bytes]]:
        resp = await self.rpc.execute(
            lambda client: client.get_multiple_accounts(list(keys), encoding="base64"),
            method="getMultipleAccounts",
        )
        values = list(resp.value or [])
        values += [None] * (len(keys) - len(values))
        return [account_data(acc) for acc in values]

    def associated_token_address(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        return associated_token_address(owner, mint)

    async def ensure_token_accounts(
        self, owner: Pubkey, mints: Sequence[Pubkey]
    ) -> Tuple[List[Pubkey], List[Instruction]]:
        """Return the owner's ATAs for *mints* and create instructions for missing ones."""
        addresses = [associated_token_address(owner, mint) for mint in mints]
        existing = await self._read_accounts(addresses)
        create: List[Instruction] = []
        for mint, address, data in zip(mints, addresses, existing):
            if data is None:
                logger.debug("Token account %s for mint %s missing; creating", address, mint)
                create.append(create_associated_token_account(owner, owner, mint))
        return addresses, create

    async def native_balance(self, owner: Pubkey) -> int:
        resp = await self.rpc.execute(lambda client: client.get_balance(owner), method="getBalance")
        return int(resp.value)

    async def token_balance(self, owner: Pubkey, mint: Pubkey) -> int:
        """Raw token amount held in the owner's ATA for *mint*, 0 if it does not exist."""
        (data,) = await self._read_accounts([associated_token_address(owner, mint)])
        if data is None:
            return 0
        return decode_token_account_amount(data)

    async def _check_balance(self, request: SwapRequest, new_accounts: int, priority_lamports: int) -> None:
        required = priority_lamports + self.base_tx_cost + new_accounts * TOKEN_ACCOUNT_RENT
        if request.source_mint == WSOL_MINT:
            required += request.amount_in
        else:
            held = await self.token_balance(request.owner, request.source_mint)
            if held < request.amount_in:
                raise InsufficientBalance(request.amount_in, held, unit=f"of {request.source_mint}")
        lamports = await self.native_balance(request.owner)
        if lamports < required:
            raise InsufficientBalance(required, lamports)

    # ------------------------------------------------------------------
    # Instruction assembly
    # ------------------------------------------------------------------

    def build_swap_params(
        self,
        request: SwapRequest,
        pool: Pool,
        quote: SwapQuote,
        direction: SwapDirection,
        source_account: Pubkey,
        destination_account: Pubkey,
        budget: ComputeBudget,
    ) -> SwapParams:
        policy = parse_slippage(request.slippage)
        return SwapParams(
            user_wallet=request.owner,
            sign_fn=request.signer,
            amount_in=quote.amount_in,
            min_amount_out=quote.min_amount_out,
            pool=pool,
            source_token_account=source_account,
            destination_token_account=destination_account,
            priority_fee_micro_lamports=budget.micro_lamports,
            compute_unit_limit=budget.unit_limit,
            direction=direction,
            slippage_bps=policy.bps,
            wait_confirmation=request.wait_confirmation,
            deadline=request.deadline,
            heap_bytes=budget.heap_bytes,
        )

    def build_instructions(
        self, params: SwapParams, setup: Sequence[Instruction] = ()
    ) -> List[Instruction]:
        """Compute budget first, then account setup, then the swap itself."""
        budget = ComputeBudget(
            unit_limit=params.compute_unit_limit,
            micro_lamports=params.priority_fee_micro_lamports,
            heap_bytes=params.heap_bytes,
        )
        pool = params.pool
        if params.direction is SwapDirection.BASE_TO_QUOTE:
            source_mint, target_mint = pool.base_mint, pool.quote_mint
        else:
            source_mint, target_mint = pool.quote_mint, pool.base_mint

        ixs = budget.instructions()
        ixs.extend(setup)
        if source_mint == WSOL_MINT:
            ixs.append(
                transfer(
                    TransferParams(
                        from_pubkey=params.user_wallet,
                        to_pubkey=params.source_token_account,
                        lamports=params.amount_in,
                    )
                )
            )
            ixs.append(sync_native(SyncNativeParams(TOKEN_PROGRAM_ID, params.source_token_account)))
        ixs.append(
            swap_instruction(
                pool,
                params.user_wallet,
                params.source_token_account,
                params.destination_token_account,
                params.amount_in,
                params.min_amount_out,
                params.direction,
            )
        )
        if WSOL_MINT in (source_mint, target_mint):
            wsol_account = (
                params.source_token_account if source_mint == WSOL_MINT else params.destination_token_account
            )
            ixs.append(
                close_account(
                    CloseAccountParams(
                        program_id=TOKEN_PROGRAM_ID,
                        account=wsol_account,
                        dest=params.user_wallet,
                        owner=params.user_wallet,
                    )
                )
            )
        return ixs

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(request: SwapRequest) -> None:
        if isinstance(request.amount_in, bool) or not isinstance(request.amount_in, int):
            raise InputError(f"amount_in must be an integer, got {request.amount_in!r}")
        if request.amount_in <= 0:
            raise InputError(f"amount_in must be positive, got {request.amount_in}")
        if request.source_mint == request.target_mint:
            raise InputError("source and target mints must differ")
        if request.signer is None:
            raise MissingSignature("swap request has no signer")
        if request.max_retries < 0:
            raise InputError("max_retries must be >= 0")
        if request.priority_fee_sol < 0:
            raise InputError("priority fee must be >= 0")
        parse_slippage(request.slippage)

    def _check_deadline(self, request: SwapRequest, upcoming: float = 0.0) -> None:
        if request.deadline is not None and self._clock() + upcoming > request.deadline:
            raise DeadlineExceeded(f"swap {request.task_name or request.target_mint} passed its deadline")

    async def _attempt(self, request: SwapRequest) -> Tuple[Pool, SwapQuote, ExecutionStatus]:
        if request.pool_id is not None:
            pool = await self.resolver.fetch_pool(request.pool_id)
        else:
            pool = await self.resolver.resolve(request.source_mint, request.target_mint)
            # cached entries can hold reserves from minutes ago
            pool = await self.resolver.refresh(pool)
        if not pool.has_mints(request.source_mint, request.target_mint):
            raise InputError(f"pool {pool.id} does not trade the requested pair", stage="resolve")
        direction = pool.direction_for(request.source_mint)

        try:
            quote = self.pricing.quote(pool, request.amount_in, direction, request.slippage)
        except SnipeError as exc:
            raise with_stage(exc, "quote")

        budget = ComputeBudget.for_fee(request.priority_fee_sol, request.compute_unit_limit or DEFAULT_UNITS)
        if not request.compute_unit_limit:
            budget.unit_limit = 0
        accounts, setup = await self.ensure_token_accounts(
            request.owner, [request.source_mint, request.target_mint]
        )
        try:
            await self._check_balance(request, len(setup), sol_to_lamports(request.priority_fee_sol))
        except InsufficientBalance as exc:
            raise with_stage(exc, "balance")

        params = self.build_swap_params(request, pool, quote, direction, accounts[0], accounts[1], budget)
        instructions = self.build_instructions(params, setup)

        if request.simulate:
            try:
                sim = await self.orchestrator.simulate(
                    instructions, request.owner, request.signer, timeout=self.simulation_timeout
                )
            except SnipeError as exc:
                raise with_stage(exc, "simulate")
            logger.debug("Simulation ok for %s, %s units", request.task_name or "swap", sim.units_consumed)

        opts = dataclasses.replace(self.submit_options, wait_confirmation=request.wait_confirmation)
        try:
            status = await self.orchestrator.submit(instructions, request.owner, request.signer, opts)
        except SnipeError as exc:
            raise with_stage(exc, "submit")
        return pool, quote, status

    async def execute(self, request: SwapRequest) -> SwapResult:
        self._validate(request)
        label = request.task_name or f"{request.source_mint}->{request.target_mint}"
        attempt = 0
        while True:
            self._check_deadline(request)
            try:
                pool, quote, status = await self._attempt(request)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable(exc) or attempt >= request.max_retries:
                    exc.attempts = attempt + 1
                    logger.error("Swap %s failed after %d attempt(s): %s", label, attempt + 1, exc)
                    raise
                delay = self.retry_base * 2 ** attempt
                attempt += 1
                logger.warning(
                    "Swap %s attempt %d/%d failed: %s; retrying in %.1fs",
                    label,
                    attempt,
                    request.max_retries + 1,
                    exc,
                    delay,
                )
                try:
                    self._check_deadline(request, delay)
                except DeadlineExceeded as deadline_exc:
                    raise deadline_exc from exc
                await asyncio.sleep(delay)
                continue
            logger.info(
                "Swap %s on pool %s: in=%d out=%d min=%d sig=%s state=%s",
                label,
                pool.id,
                quote.amount_in,
                quote.amount_out,
                quote.min_amount_out,
                status.signature,
                status.state.value,
            )
            return SwapResult(quote=quote, status=status, pool=pool, attempts=attempt + 1)


__all__ = [
    "BASE_TX_COST",
    "SwapRequest",
    "SwapResult",
    "SwapExecutor",
    "associated_token_address",
]
