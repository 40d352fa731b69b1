from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence

from solana.rpc.commitment import Finalized, Processed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import (
    ConfirmationTimeout,
    MissingSignature,
    RpcError,
    SimulationFailed,
    TransactionFailed,
    ValidationError,
    is_retryable,
)
from .models import ExecutionState, ExecutionStatus
from .rpc_pool import RpcEndpointPool, commitment_from_name

logger = logging.getLogger(__name__)

Signer = Callable[[Pubkey, bytes], Optional[Signature]]

DEFAULT_CONFIRMATION_TIMEOUT = 45.0
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_SIMULATION_TIMEOUT = 5.0
MIN_CONFIRMATIONS = 1


class KeypairSigner:
    """Signing capability backed by in-memory keypairs.

    The keypairs never leave this object; callers only see signatures.
    """

    def __init__(self, *keypairs: Keypair) -> None:
        self._keys = {kp.pubkey(): kp for kp in keypairs}

    @property
    def pubkeys(self) -> List[Pubkey]:
        return list(self._keys)

    def __call__(self, pubkey: Pubkey, message: bytes) -> Optional[Signature]:
        keypair = self._keys.get(pubkey)
        if keypair is None:
            return None
        return keypair.sign_message(message)


@dataclass(slots=True)
class SubmitOptions:
    skip_preflight: bool = False
    preflight_commitment: str = "confirmed"
    wait_confirmation: bool = True
    commitment: str = "confirmed"
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_retries: int = 2
    retry_delay: float = 1.0


@dataclass(slots=True)
class AnchorError:
    code: str
    number: Optional[int]
    message: str

    def __str__(self) -> str:
        number = f" ({self.number})" if self.number is not None else ""
        return f"{self.code}{number}: {self.message}"


@dataclass(slots=True)
class SimulationResult:
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None


_ANCHOR_RE = re.compile(
    r"AnchorError (?:occurred|thrown in \S+?)\. Error Code: (?P<code>\w+)\. "
    r"Error Number: (?P<number>\d+)\. Error Message: (?P<message>.*?)\.?$"
)
_CUSTOM_RE = re.compile(r"custom program error: (?P<hex>0x[0-9a-fA-F]+)")
_PROGRAM_LOG_RE = re.compile(r"Program log: Error: (?P<message>.+)$")


def parse_anchor_error(logs: Iterable[str]) -> Optional[AnchorError]:
    """Extract the program error reported in simulation or transaction logs."""
    custom: Optional[int] = None
    message: Optional[str] = None
    for line in logs:
        match = _ANCHOR_RE.search(line)
        if match:
            return AnchorError(match["code"], int(match["number"]), match["message"])
        match = _CUSTOM_RE.search(line)
        if match and custom is None:
            custom = int(match["hex"], 16)
        match = _PROGRAM_LOG_RE.search(line)
        if match and message is None:
            message = match["message"].strip()
    if custom is None and message is None:
        return None
    return AnchorError("ProgramError", custom, message or "custom program error")


def validate_transaction(tx: VersionedTransaction) -> None:
    signatures = list(tx.signatures)
    if not signatures:
        raise ValidationError("transaction has no signatures")
    if any(sig == Signature.default() for sig in signatures):
        raise ValidationError("transaction carries an empty signature")
    if tx.message.recent_blockhash == Hash.default():
        raise ValidationError("transaction has a zero blockhash")
    if not tx.message.instructions:
        raise ValidationError("transaction has no instructions")


def build_transaction(
    instructions: Sequence[Instruction],
    payer: Pubkey,
    signer: Signer,
    blockhash: Hash,
) -> VersionedTransaction:
    """Compile, sign and validate a v0 transaction paid for by *payer*."""
    if not instructions:
        raise ValidationError("instruction list is empty")
    if blockhash == Hash.default():
        raise ValidationError("recent blockhash is zero")
    message = MessageV0.try_compile(payer, list(instructions), [], blockhash)
    payload = to_bytes_versioned(message)
    required = message.account_keys[: message.header.num_required_signatures]
    signatures: List[Signature] = []
    for key in required:
        sig = signer(key, payload)
        if sig is None:
            raise MissingSignature(f"signer cannot sign for {key}")
        signatures.append(sig)
    tx = VersionedTransaction.populate(message, signatures)
    validate_transaction(tx)
    return tx


def _confirmation_name(status: Any) -> str:
    value = getattr(status, "confirmation_status", None)
    if value is None:
        return ""
    return str(value).split(".")[-1].lower()


class TransactionOrchestrator:
    """Turn instruction lists into submitted and tracked transactions."""

    def __init__(self, rpc: RpcEndpointPool) -> None:
        self.rpc = rpc

    async def latest_blockhash(self) -> Hash:
        resp = await self.rpc.execute(
            lambda client: client.get_latest_blockhash(Finalized),
            method="getLatestBlockhash",
        )
        return resp.value.blockhash

    async def send(self, tx: VersionedTransaction, opts: SubmitOptions) -> str:
        tx_opts = TxOpts(
            skip_preflight=opts.skip_preflight,
            preflight_commitment=commitment_from_name(opts.preflight_commitment),
        )
        raw = bytes(tx)
        resp = await self.rpc.execute(
            lambda client: client.send_raw_transaction(raw, opts=tx_opts),
            method="sendTransaction",
        )
        return str(resp.value)

    async def submit(
        self,
        instructions: Sequence[Instruction],
        payer: Pubkey,
        signer: Signer,
        opts: SubmitOptions | None = None,
    ) -> ExecutionStatus:
        """Sign and send *instructions*, optionally waiting for confirmation.

        Submission errors that are retryable are retried with a linear
        ``(attempt + 1) * retry_delay`` backoff and a fresh blockhash.  Once a
        signature exists it is never resubmitted; a confirmation timeout
        returns a ``PENDING`` status carrying that signature.
        """
        opts = opts or SubmitOptions()
        if not instructions:
            raise ValidationError("instruction list is empty")
        attempt = 0
        while True:
            try:
                blockhash = await self.latest_blockhash()
                tx = build_transaction(instructions, payer, signer, blockhash)
                signature = await self.send(tx, opts)
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable(exc) or attempt >= opts.max_retries:
                    raise
                attempt += 1
                delay = attempt * opts.retry_delay
                logger.warning(
                    "Submit attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt,
                    opts.max_retries + 1,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

        logger.info("Submitted transaction %s", signature)
        if not opts.wait_confirmation:
            return ExecutionStatus(signature=signature)
        status = await self.wait_for_confirmation(
            signature,
            timeout=opts.confirmation_timeout,
            commitment=opts.commitment,
            poll_interval=opts.poll_interval,
        )
        if status.state is ExecutionState.FAILED:
            logger.error("Transaction %s failed on-chain: %s", signature, status.error_message)
        elif status.state is ExecutionState.PENDING:
            logger.warning("Transaction %s still pending: %s", signature, status.error_message)
        return status

    async def submit_or_raise(
        self,
        instructions: Sequence[Instruction],
        payer: Pubkey,
        signer: Signer,
        opts: SubmitOptions | None = None,
    ) -> ExecutionStatus:
        opts = opts or SubmitOptions()
        status = await self.submit(instructions, payer, signer, opts)
        if status.state is ExecutionState.FAILED:
            raise TransactionFailed(status.error_message or "transaction failed", status=status)
        if opts.wait_confirmation and status.state is ExecutionState.PENDING:
            raise ConfirmationTimeout(status.signature or "", opts.confirmation_timeout)
        return status

    async def get_status(self, signature: str) -> Any:
        sig = Signature.from_string(signature)
        resp = await self.rpc.execute(
            lambda client: client.get_signature_statuses([sig]),
            method="getSignatureStatuses",
        )
        values = list(resp.value or [])
        return values[0] if values else None

    async def wait_for_confirmation(
        self,
        signature: str,
        *,
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        commitment: str = "confirmed",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> ExecutionStatus:
        want_finalized = commitment_from_name(commitment) == Finalized
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                status = await self.get_status(signature)
            except RpcError as exc:
                logger.debug("Status poll for %s failed: %s", signature, exc)
                status = None
            if status is not None:
                result = self._interpret(signature, status, want_finalized)
                if result is not None:
                    return result
            remaining = deadline - loop.time()
            if remaining <= 0:
                return ExecutionStatus(
                    signature=signature,
                    state=ExecutionState.PENDING,
                    error_message=str(ConfirmationTimeout(signature, timeout)),
                )
            await asyncio.sleep(min(poll_interval, remaining))

    @staticmethod
    def _interpret(signature: str, status: Any, want_finalized: bool) -> Optional[ExecutionStatus]:
        confirmations = getattr(status, "confirmations", None)
        slot = getattr(status, "slot", None)
        err = getattr(status, "err", None)
        if err is not None:
            return ExecutionStatus(
                signature=signature,
                state=ExecutionState.FAILED,
                confirmations=confirmations,
                slot=slot,
                error_message=str(err),
            )
        name = _confirmation_name(status)
        if name == "finalized":
            return ExecutionStatus(signature, ExecutionState.FINALIZED, confirmations, slot)
        confirmed = name == "confirmed" or (confirmations or 0) >= MIN_CONFIRMATIONS
        if confirmed and not want_finalized:
            return ExecutionStatus(signature, ExecutionState.CONFIRMED, confirmations, slot)
        return None

    async def simulate(
        self,
        instructions: Sequence[Instruction],
        payer: Pubkey,
        signer: Signer,
        *,
        timeout: float = DEFAULT_SIMULATION_TIMEOUT,
    ) -> SimulationResult:
        blockhash = await self.latest_blockhash()
        tx = build_transaction(instructions, payer, signer, blockhash)
        resp = await self.rpc.execute(
            lambda client: client.simulate_transaction(tx, sig_verify=False, commitment=Processed),
            timeout=timeout,
            method="simulateTransaction",
        )
        value = resp.value
        logs = list(getattr(value, "logs", None) or [])
        err = getattr(value, "err", None)
        if err is not None:
            anchor = parse_anchor_error(logs)
            detail = f" ({anchor})" if anchor else ""
            raise SimulationFailed(f"simulation failed: {err}{detail}", logs=logs, anchor_error=anchor)
        return SimulationResult(logs=logs, units_consumed=getattr(value, "units_consumed", None))


__all__ = [
    "Signer",
    "KeypairSigner",
    "SubmitOptions",
    "AnchorError",
    "SimulationResult",
    "parse_anchor_error",
    "validate_transaction",
    "build_transaction",
    "TransactionOrchestrator",
]
