from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from raysnipe.codec import (
    OPENBOOK_PROGRAM_ID,
    RAYDIUM_AMM_AUTHORITY,
    encode_market_account,
    encode_pool_account,
    encode_token_account,
    find_vault_signer_nonce,
)
from raysnipe.logging_utils import reset_warn_once_cache
from raysnipe.models import MarketInfo, Pool, PoolState, PoolStatus
from raysnipe.rpc_pool import RpcEndpointPool


def build_pool(
    base_reserve: int = 1_000 * 10**9,
    quote_reserve: int = 181_000 * 10**6,
    status: PoolStatus = PoolStatus.ACTIVE,
    *,
    base_decimals: int = 9,
    quote_decimals: int = 6,
    fee_bps: int = 25,
    base_mint: Optional[Pubkey] = None,
    quote_mint: Optional[Pubkey] = None,
    with_market: bool = True,
) -> Pool:
    market_id = Pubkey.new_unique()
    market = None
    if with_market:
        vault_signer, _ = find_vault_signer_nonce(market_id, OPENBOOK_PROGRAM_ID)
        market = MarketInfo(
            market_id=market_id,
            program_id=OPENBOOK_PROGRAM_ID,
            bids=Pubkey.new_unique(),
            asks=Pubkey.new_unique(),
            event_queue=Pubkey.new_unique(),
            base_vault=Pubkey.new_unique(),
            quote_vault=Pubkey.new_unique(),
            vault_signer=vault_signer,
        )
    return Pool(
        id=Pubkey.new_unique(),
        authority=RAYDIUM_AMM_AUTHORITY,
        base_mint=base_mint or Pubkey.new_unique(),
        quote_mint=quote_mint or Pubkey.new_unique(),
        base_vault=Pubkey.new_unique(),
        quote_vault=Pubkey.new_unique(),
        market_id=market_id,
        lp_mint=Pubkey.new_unique(),
        base_decimals=base_decimals,
        quote_decimals=quote_decimals,
        default_fee_bps=fee_bps,
        state=PoolState(base_reserve, quote_reserve, status),
        open_orders=Pubkey.new_unique(),
        target_orders=Pubkey.new_unique(),
        market_program_id=OPENBOOK_PROGRAM_ID,
        market=market,
    )


class FakeSolanaClient:
    """In-memory stand-in for ``solana.rpc.async_api.AsyncClient``."""

    def __init__(self) -> None:
        self.accounts: Dict[Pubkey, bytes] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.sent: List[VersionedTransaction] = []
        self.send_errors: List[Exception] = []
        self.status_err = None
        self.confirmation_status: Optional[str] = "confirmed"
        self.simulate_err = None
        self.simulate_logs: List[str] = []
        self.version_error: Optional[Exception] = None
        self.blockhash = Hash.new_unique()
        self.calls: List[str] = []
        self.closed = False

    def add_pool(self, pool: Pool) -> None:
        self.accounts[pool.id] = encode_pool_account(pool)
        self.accounts[pool.base_vault] = encode_token_account(
            pool.base_mint, RAYDIUM_AMM_AUTHORITY, pool.state.base_reserve + pool.base_need_take_pnl
        )
        self.accounts[pool.quote_vault] = encode_token_account(
            pool.quote_mint, RAYDIUM_AMM_AUTHORITY, pool.state.quote_reserve + pool.quote_need_take_pnl
        )
        if pool.market is not None:
            _, nonce = find_vault_signer_nonce(pool.market.market_id, pool.market.program_id)
            self.accounts[pool.market_id] = encode_market_account(pool.market, nonce)

    def set_reserves(self, pool: Pool, base: int, quote: int) -> None:
        self.accounts[pool.base_vault] = encode_token_account(pool.base_mint, RAYDIUM_AMM_AUTHORITY, base)
        self.accounts[pool.quote_vault] = encode_token_account(pool.quote_mint, RAYDIUM_AMM_AUTHORITY, quote)

    async def get_multiple_accounts(self, pubkeys, commitment=None, encoding="base64", data_slice=None):
        self.calls.append("getMultipleAccounts")
        value = [SimpleNamespace(data=self.accounts[key]) if key in self.accounts else None for key in pubkeys]
        return SimpleNamespace(value=value)

    async def get_program_accounts(self, pubkey, commitment=None, encoding="base64", data_slice=None, filters=None):
        self.calls.append("getProgramAccounts")
        matches = []
        for key, data in self.accounts.items():
            ok = True
            for flt in filters or []:
                if isinstance(flt, int):
                    ok = ok and len(data) == flt
                else:
                    wanted = bytes(Pubkey.from_string(flt.bytes))
                    ok = ok and data[flt.offset:flt.offset + len(wanted)] == wanted
            if ok:
                matches.append(SimpleNamespace(pubkey=key, account=SimpleNamespace(data=data)))
        return SimpleNamespace(value=matches)

    async def get_balance(self, pubkey, commitment=None):
        self.calls.append("getBalance")
        return SimpleNamespace(value=self.balances.get(pubkey, 0))

    async def get_latest_blockhash(self, commitment=None):
        self.calls.append("getLatestBlockhash")
        return SimpleNamespace(value=SimpleNamespace(blockhash=self.blockhash, last_valid_block_height=1_000))

    async def send_raw_transaction(self, txn, opts=None):
        self.calls.append("sendTransaction")
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx = VersionedTransaction.from_bytes(txn)
        self.sent.append(tx)
        return SimpleNamespace(value=tx.signatures[0])

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        self.calls.append("getSignatureStatuses")
        if self.status_err is None and self.confirmation_status is None:
            return SimpleNamespace(value=[None])
        status = SimpleNamespace(
            err=self.status_err,
            confirmation_status=self.confirmation_status,
            confirmations=1,
            slot=42,
        )
        return SimpleNamespace(value=[status])

    async def simulate_transaction(self, txn, sig_verify=False, commitment=None):
        self.calls.append("simulateTransaction")
        return SimpleNamespace(
            value=SimpleNamespace(err=self.simulate_err, logs=list(self.simulate_logs), units_consumed=12_345)
        )

    async def get_version(self):
        if self.version_error is not None:
            raise self.version_error
        return SimpleNamespace(value={"solana-core": "1.18.0"})

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warn_once_cache()
    yield
    reset_warn_once_cache()


@pytest.fixture
def make_pool():
    return build_pool


@pytest.fixture
def chain():
    return FakeSolanaClient()


@pytest.fixture
def rpc(chain):
    return RpcEndpointPool(["http://rpc.test"], client_factory=lambda url: chain, backoff_start=0.0)


@pytest.fixture
def owner():
    return Keypair()
