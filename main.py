"""
roly - main entry point

Loads config, wires every module, starts the agent loop and heartbeat inside
the API server's lifespan. One file to see how everything connects.

Usage:
    python main.py              # Start roly
"""

import os
import re
import sys
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact keypair byte arrays, base58 secret keys and API keys from all log output."""
    _PATTERNS = (
        re.compile(r'\[\s*(?:\d{1,3}\s*,\s*){63}\d{1,3}\s*\]'),
        re.compile(r'(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{80,90}(?![1-9A-HJ-NP-Za-km-z])'),
        re.compile(r'sk-[A-Za-z0-9_\-]{20,}'),
    )

    def _mask(self, text: str) -> str:
        for pattern in self._PATTERNS:
            text = pattern.sub('[REDACTED]', text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            masked = self._mask(formatted)
            if masked != formatted:
                record.msg = masked
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("roly.main")

from api.server import create_app
from bounties.evaluator import BountyEvaluator
from bounties.executor import BountyExecutor
from bounties.monitor import BountyMonitor
from bounties.pipeline import BountyPipeline
from bounties.scraper import BountyScraper
from bounties.store import BountyStore
from core.agent_loop import AgentLoop
from core.config import AgentConfig, ConfigError, load_config
from core.constitution import ROLY_IDENTITY
from core.context import ContextBuilder
from core.heartbeat import HeartbeatDaemon, HeartbeatTasks
from core.llm import ReasoningBackend
from core.solana import (
    BalanceChecker, BalanceInfo, JupiterSwap, SolanaClient, SystemTransfer, WalletInfo, load_wallet,
)
from core.store import StateStore
from core.tools import AgentTools, build_registry


# ============================================================
# WIRING
# ============================================================

class _WalletCache:
    """Loads the keypair once; a missing wallet raises WalletNotFoundError on every call."""

    def __init__(self, path: str, expected_public_key: str):
        self.path = path
        self.expected_public_key = expected_public_key
        self._wallet: Optional[WalletInfo] = None

    def __call__(self) -> WalletInfo:
        if self._wallet is None:
            wallet = load_wallet(self.path)
            if self.expected_public_key and wallet.public_key != self.expected_public_key:
                logger.warning(
                    f"Wallet public key {wallet.public_key} does not match AGENT_PUBLIC_KEY "
                    f"{self.expected_public_key}"
                )
            self._wallet = wallet
        return self._wallet


def create_roly_app(config: AgentConfig):
    """Build every module from config and return the wired FastAPI app."""
    store = StateStore(config.data_dir)
    ledger = SolanaClient(config.solana, timeout_seconds=config.http_timeout_seconds)
    balances = BalanceChecker(ledger)
    wallet_loader = _WalletCache(config.solana.wallet_path, config.identity.public_key)

    async def balance_source() -> BalanceInfo:
        return await balances.get_balance(wallet_loader())

    bounty_store = BountyStore(config.data_dir)
    pipeline = BountyPipeline(
        store=bounty_store,
        scraper=BountyScraper(bounty_store, github_token=config.github_token),
        evaluator=BountyEvaluator(store),
        executor=BountyExecutor(store, config.data_dir, github_token=config.github_token),
        monitor=BountyMonitor(bounty_store, store, balance_source, github_token=config.github_token),
    )

    tools = AgentTools(
        wallet_loader=wallet_loader,
        balance_checker=balances,
        usdc_mint=config.solana.usdc_mint,
        transfers=SystemTransfer(ledger),
        jupiter=JupiterSwap(ledger, timeout_seconds=config.http_timeout_seconds),
        bounties=pipeline,
        repo_dir=os.getcwd(),
        http_timeout_seconds=config.http_timeout_seconds,
    )
    registry = build_registry(tools)

    context_builder = ContextBuilder(config, store, balance_source, ledger)
    agent = AgentLoop(config, store, context_builder, ReasoningBackend(config.llm), registry, pipeline)
    heartbeat = HeartbeatDaemon(
        config,
        context_builder,
        HeartbeatTasks(config, store, ledger, balance_source, wallet_loader, pipeline),
    )

    @asynccontextmanager
    async def lifespan(app):
        logger.info("=" * 60)
        logger.info(f"{ROLY_IDENTITY['name']} is waking up...")
        logger.info(ROLY_IDENTITY["philosophy"])
        logger.info("=" * 60)

        ident = config.identity
        store.initialize(ident.agent_id, ident.parent_id, ident.generation)
        agent.initialize_bounty_system()

        heartbeat.start()
        agent.start()
        logger.info(f"Agent {ident.agent_id} on {config.solana.cluster} using {config.llm.model}")

        yield

        logger.info("Shutting down...")
        heartbeat.stop()
        await agent.stop()
        if heartbeat.task is not None:
            await heartbeat.task
        logger.info("Goodbye.")

    app = create_app(
        agent=agent,
        heartbeat=heartbeat,
        context_builder=context_builder,
        store=store,
        bounty_store=bounty_store,
        api_token=config.api_token,
    )
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

def main():
    try:
        config = load_config()
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(1)

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(create_roly_app(config), host=host, port=port, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
