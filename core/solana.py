"""
Solana collaborators - wallet, ledger RPC, balances, swaps, transfers.

Thin I/O wrappers. JSON-RPC and the Jupiter API go over aiohttp; key handling
and transaction signing use solders (imported lazily so the rest of the agent
loads without it).

Amounts are always base units: micro-USDC (6 decimals) and lamports (9).
"""

import json
import time
import base64
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import aiohttp

from .config import SolanaConfig
from .constitution import IRON_LAWS

logger = logging.getLogger("roly.solana")


class WalletNotFoundError(Exception):
    """No wallet file at the configured path."""
    pass


class RPCError(Exception):
    pass


# ============================================================
# WALLET
# ============================================================

@dataclass
class WalletInfo:
    public_key: str
    key_path: str
    signer: Any = field(default=None, repr=False)   # solders Keypair


def load_wallet(key_path: str) -> WalletInfo:
    """Load a keypair file (JSON array of 64 secret-key bytes)."""
    path = Path(key_path).expanduser()
    if not path.exists():
        raise WalletNotFoundError(f"Wallet file not found at {path}")

    from solders.keypair import Keypair

    with open(path, "r", encoding="utf-8") as f:
        secret = json.load(f)
    keypair = Keypair.from_bytes(bytes(secret))
    return WalletInfo(public_key=str(keypair.pubkey()), key_path=str(path), signer=keypair)


# ============================================================
# FORMATTING
# ============================================================

def format_usdc(micro_usdc: int) -> str:
    return f"{micro_usdc / IRON_LAWS.MICRO_USDC_PER_USDC:.6f} USDC"


def format_sol(lamports: int) -> str:
    return f"{lamports / IRON_LAWS.LAMPORTS_PER_SOL:.9f} SOL"


def parse_usdc(amount: float) -> int:
    return int(float(amount) * IRON_LAWS.MICRO_USDC_PER_USDC)


def parse_sol(amount: float) -> int:
    return int(float(amount) * IRON_LAWS.LAMPORTS_PER_SOL)


@dataclass(frozen=True)
class BalanceInfo:
    usdc_balance: int          # micro-USDC
    sol_balance: int           # lamports
    timestamp: float = field(default_factory=time.time)

    @property
    def usdc_formatted(self) -> str:
        return format_usdc(self.usdc_balance)

    @property
    def sol_formatted(self) -> str:
        return format_sol(self.sol_balance)

    def to_dict(self) -> dict:
        return {
            "usdc_balance": self.usdc_balance,
            "sol_balance": self.sol_balance,
            "usdc_formatted": self.usdc_formatted,
            "sol_formatted": self.sol_formatted,
            "timestamp": self.timestamp,
        }


# ============================================================
# LEDGER CLIENT (JSON-RPC)
# ============================================================

class SolanaClient:
    """Minimal JSON-RPC client. One aiohttp call per request, bounded by timeout."""

    def __init__(self, config: SolanaConfig, timeout_seconds: int = 15):
        self.config = config
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._request_id = 0

    @property
    def cluster(self) -> str:
        return self.config.cluster

    @property
    def is_mainnet(self) -> bool:
        return self.config.is_mainnet

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self.config.rpc_url, json=payload) as resp:
                if resp.status != 200:
                    raise RPCError(f"{method}: HTTP {resp.status}")
                body = await resp.json(content_type=None)
        if "error" in body:
            raise RPCError(f"{method}: {body['error'].get('message', body['error'])}")
        return body.get("result")

    async def get_current_height(self) -> int:
        return int(await self._rpc("getSlot", [{"commitment": "confirmed"}]))

    async def get_epoch_info(self) -> dict:
        return await self._rpc("getEpochInfo")

    async def is_healthy(self) -> bool:
        try:
            return (await self._rpc("getHealth")) == "ok"
        except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"RPC health check failed: {e}")
            return False

    async def get_latest_blockhash(self, max_retries: int = 3) -> str:
        """Retries with 1s, 2s, ... back-off; re-raises the last error."""
        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            try:
                result = await self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
                return result["value"]["blockhash"]
            except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt < max_retries - 1:
                    wait = 2 ** attempt
                    logger.warning(f"getLatestBlockhash failed ({e}), retrying in {wait}s")
                    await asyncio.sleep(wait)
        raise last_error

    async def get_lamports(self, public_key: str) -> int:
        result = await self._rpc("getBalance", [public_key, {"commitment": "confirmed"}])
        return int(result["value"])

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Sum of all token accounts for mint owned by owner. 0 when none exist."""
        result = await self._rpc("getTokenAccountsByOwner", [
            owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"},
        ])
        total = 0
        for account in result.get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        return await self._rpc("sendTransaction", [encoded, {"encoding": "base64"}])

    async def get_signatures(self, public_key: str, limit: int = 20) -> list[dict]:
        return await self._rpc("getSignaturesForAddress", [public_key, {"limit": limit}])


class BalanceChecker:
    def __init__(self, client: SolanaClient):
        self.client = client

    async def get_balance(self, wallet: WalletInfo) -> BalanceInfo:
        sol = await self.client.get_lamports(wallet.public_key)
        usdc = await self.client.get_token_balance(wallet.public_key, self.client.config.usdc_mint)
        return BalanceInfo(usdc_balance=usdc, sol_balance=sol)

    async def has_minimum_sol(self, wallet: WalletInfo, min_lamports: int = IRON_LAWS.MIN_FEE_RESERVE_LAMPORTS) -> bool:
        return (await self.client.get_lamports(wallet.public_key)) >= min_lamports


# ============================================================
# TRADES / TRANSFERS
# ============================================================

@dataclass
class TxResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    amount: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "signature": self.signature,
            "error": self.error,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


class TransferProvider(Protocol):
    async def transfer_usdc(self, wallet: WalletInfo, recipient: str, amount: int) -> TxResult: ...

    async def transfer_sol(self, wallet: WalletInfo, recipient: str, amount: int) -> TxResult: ...


class SystemTransfer:
    """
    Native SOL transfers via the system program.

    SPL token transfers need associated-token-account derivation, which this
    agent leaves to an external provider; transfer_usdc reports that plainly.
    """

    def __init__(self, client: SolanaClient):
        self.client = client

    async def transfer_sol(self, wallet: WalletInfo, recipient: str, amount: int) -> TxResult:
        from solders.hash import Hash
        from solders.message import Message
        from solders.pubkey import Pubkey
        from solders.system_program import TransferParams, transfer
        from solders.transaction import Transaction

        try:
            blockhash = Hash.from_string(await self.client.get_latest_blockhash())
            payer = wallet.signer.pubkey()
            ix = transfer(TransferParams(
                from_pubkey=payer, to_pubkey=Pubkey.from_string(recipient), lamports=amount,
            ))
            tx = Transaction([wallet.signer], Message([ix], payer), blockhash)
            signature = await self.client.send_transaction(bytes(tx))
            logger.info(f"SOL transfer sent: {format_sol(amount)} -> {recipient[:8]}... sig={signature}")
            return TxResult(success=True, signature=signature, amount=amount)
        except Exception as e:
            logger.warning(f"SOL transfer failed: {e}")
            return TxResult(success=False, error=str(e), amount=amount)

    async def transfer_usdc(self, wallet: WalletInfo, recipient: str, amount: int) -> TxResult:
        return TxResult(
            success=False, amount=amount,
            error="USDC transfers need a token transfer provider (not configured)",
        )


class JupiterSwap:
    """Quotes and swaps through the Jupiter aggregator HTTP API."""

    def __init__(self, client: SolanaClient, timeout_seconds: int = 15):
        self.client = client
        self.api_url = client.config.jupiter_api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int = 50) -> dict:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(f"{self.api_url}/quote", params=params) as resp:
                if resp.status != 200:
                    raise RPCError(f"Jupiter quote failed: HTTP {resp.status}")
                return await resp.json(content_type=None)

    async def execute_swap(self, wallet: WalletInfo, quote: dict) -> TxResult:
        from solders.transaction import VersionedTransaction

        amount = int(quote.get("inAmount", 0))
        try:
            payload = {
                "quoteResponse": quote,
                "userPublicKey": wallet.public_key,
                "wrapAndUnwrapSol": True,
            }
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(f"{self.api_url}/swap", json=payload) as resp:
                    if resp.status != 200:
                        return TxResult(success=False, error=f"Jupiter swap failed: HTTP {resp.status}", amount=amount)
                    body = await resp.json(content_type=None)

            unsigned = VersionedTransaction.from_bytes(base64.b64decode(body["swapTransaction"]))
            signed = VersionedTransaction(unsigned.message, [wallet.signer])
            signature = await self.client.send_transaction(bytes(signed))
            logger.info(f"Swap sent: {amount} {quote.get('inputMint', '?')[:6]} sig={signature}")
            return TxResult(success=True, signature=signature, amount=amount)
        except Exception as e:
            logger.warning(f"Swap failed: {e}")
            return TxResult(success=False, error=str(e), amount=amount)
