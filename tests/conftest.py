import time

import pytest

from bounties.models import Bounty, BountySource, BountyStatus
from bounties.store import BountyStore
from core.config import AgentConfig, IdentityConfig, LLMConfig, SolanaConfig
from core.solana import BalanceInfo
from core.store import StateStore


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"))


@pytest.fixture
def bounty_store(tmp_path):
    return BountyStore(str(tmp_path / "bounties"))


@pytest.fixture
def config(tmp_path):
    return AgentConfig(
        identity=IdentityConfig(agent_id="roly-test", public_key="TestPubkey1111111111111111111111111111111111"),
        solana=SolanaConfig(cluster="devnet", wallet_path=str(tmp_path / "wallet.key")),
        llm=LLMConfig(api_key="test-key"),
        data_dir=str(tmp_path / "data"),
    )


@pytest.fixture
def make_bounty():
    """Factory for bounties that evaluate as a recommended easy docs task by default."""

    def _make(**overrides):
        fields = dict(
            id="github_1",
            source=BountySource.GITHUB,
            title="Fix typo in README docs",
            url="https://github.com/solana-labs/example/issues/1",
            description="Update the documentation readme with a usage example.",
            reward_amount=100_000_000,
            skills=("TypeScript",),
            status=BountyStatus.OPEN,
            discovered_at=time.time() - 2 * 86400,
            metadata={"repository": "solana-labs/example", "number": 1, "labels": []},
        )
        fields.update(overrides)
        return Bounty(**fields)

    return _make


def balance(usdc: int, sol: int = 0) -> BalanceInfo:
    return BalanceInfo(usdc_balance=usdc, sol_balance=sol)
