"""
Context Builder - a fresh, read-only snapshot of the agent's situation.

Built once per cycle and thrown away afterwards. build() never raises: any
failure yields a degraded context pinned to CRITICAL with the failure named
as a threat, so the loop always has something conservative to prompt with.
"""

import time
import logging
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Optional

from .config import AgentConfig
from .constitution import (
    IRON_LAWS, CapabilitySet, SurvivalTier, capabilities_for, determine_survival_tier,
)
from .solana import BalanceInfo, SolanaClient, format_sol, format_usdc
from .store import StateStore

logger = logging.getLogger("roly.context")

BalanceSource = Callable[[], Awaitable[BalanceInfo]]

_EARNING_WORDS = ("received", "earned", "income")
NO_THREATS = "No immediate threats detected - remain vigilant"


@dataclass(frozen=True)
class IdentitySnapshot:
    agent_id: str
    public_key: str
    generation: int = 1
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class SurvivalSnapshot:
    tier: SurvivalTier
    usdc_balance: int
    usdc_balance_formatted: str
    sol_balance: int
    sol_balance_formatted: str
    days_survived: int
    last_earning: Optional[float] = None


@dataclass(frozen=True)
class EnvironmentSnapshot:
    cluster: str
    block_height: int
    timestamp: float
    is_mainnet: bool


@dataclass(frozen=True)
class TurnSummary:
    timestamp: float
    action: str             # tool name, or "think" when no action was taken
    result: str
    success: bool


@dataclass(frozen=True)
class Goals:
    short_term: tuple = ()
    long_term: tuple = ()


@dataclass(frozen=True)
class AgentContext:
    identity: IdentitySnapshot
    survival: SurvivalSnapshot
    environment: EnvironmentSnapshot
    capabilities: CapabilitySet
    recent_history: tuple = ()
    goals: Goals = field(default_factory=Goals)
    threats: tuple = ()
    opportunities: tuple = ()
    degraded: bool = False

    def to_dict(self) -> dict:
        survival = asdict(self.survival)
        survival["tier"] = self.survival.tier.value
        return {
            "identity": asdict(self.identity),
            "survival": survival,
            "environment": asdict(self.environment),
            "capabilities": self.capabilities.to_dict(),
            "recent_history": [asdict(t) for t in self.recent_history],
            "goals": {"short_term": list(self.goals.short_term), "long_term": list(self.goals.long_term)},
            "threats": list(self.threats),
            "opportunities": list(self.opportunities),
            "degraded": self.degraded,
        }


def analyze_situation(
    tier: SurvivalTier,
    usdc_balance: int,
    sol_balance: int,
    history: list[TurnSummary],
    is_mainnet: bool,
) -> tuple[list[str], list[str], list[str], list[str]]:
    """(threats, opportunities, short_term, long_term). None of the four comes back empty."""
    threats: list[str] = []
    opportunities: list[str] = []
    short_term: list[str] = []
    long_term: list[str] = []

    if tier is SurvivalTier.DEAD:
        threats.append("Balance depleted - agent will terminate soon")
        short_term.append("Find emergency funding source")
    elif tier is SurvivalTier.CRITICAL:
        threats.append("Critically low balance - entering survival mode")
        short_term.append("Generate immediate income")
        short_term.append("Reduce operational costs")
    elif tier is SurvivalTier.LOW_COMPUTE:
        threats.append("Low balance affecting capabilities")
        short_term.append("Improve financial position")

    if history:
        failures = sum(1 for h in history if not h.success)
        if failures / len(history) > 0.5:
            threats.append("High failure rate in recent actions")
            short_term.append("Debug and fix operational issues")

    if sol_balance < IRON_LAWS.MIN_FEE_RESERVE_LAMPORTS:
        threats.append("Insufficient SOL for transaction fees")
        short_term.append("Acquire SOL for transaction fees")

    if tier is SurvivalTier.NORMAL:
        opportunities.append("Full operational capabilities available")
        opportunities.append("Can explore new income strategies")
        long_term.append("Build sustainable income streams")
        long_term.append("Consider replication strategies")

    if is_mainnet:
        opportunities.append("Operating on mainnet with real economic value")
        if usdc_balance > IRON_LAWS.MICRO_USDC_PER_USDC:
            opportunities.append("Sufficient balance for DeFi interactions")
    else:
        opportunities.append("Safe testnet environment for experimentation")

    if not short_term:
        short_term += ["Monitor financial health", "Look for earning opportunities"]
    if not long_term:
        long_term += ["Achieve financial sustainability", "Expand capabilities and knowledge"]
    if not threats:
        threats.append(NO_THREATS)

    return threats, opportunities, short_term, long_term


class ContextBuilder:

    def __init__(self, config: AgentConfig, store: StateStore,
                 balance_source: BalanceSource, ledger: SolanaClient):
        self.config = config
        self.store = store
        self.balance_source = balance_source
        self.ledger = ledger

    def _identity(self) -> IdentitySnapshot:
        lineage = self.store.get_state("lineage") or {}
        ident = self.config.identity
        return IdentitySnapshot(
            agent_id=ident.agent_id,
            public_key=ident.public_key,
            generation=lineage.get("generation", ident.generation),
            parent_id=lineage.get("parent_id", ident.parent_id),
        )

    def _last_earning(self) -> Optional[float]:
        for turn in self.store.get_recent_turns(IRON_LAWS.EARNING_LOOKBACK_TURNS):
            observation = turn.observation.lower()
            if any(w in observation for w in _EARNING_WORDS):
                return turn.timestamp
        return None

    async def build(self) -> AgentContext:
        try:
            return await self._build()
        except Exception as e:
            logger.error(f"Failed to build agent context: {e}")
            return self.degraded_context(e)

    async def _build(self) -> AgentContext:
        balance = await self.balance_source()
        tier = determine_survival_tier(balance.usdc_balance, self.config.survival.thresholds)
        block_height = await self.ledger.get_current_height()
        now = time.time()

        turns = self.store.get_recent_turns(IRON_LAWS.RECENT_TURNS_IN_CONTEXT)
        history = [
            TurnSummary(
                timestamp=t.timestamp,
                action=t.action.tool if t.action else "think",
                result=t.observation,
                success=t.succeeded,
            )
            for t in turns
        ]
        first = self.store.get_first_turn()
        days_survived = int((now - first.timestamp) // 86400) if first else 0

        threats, opportunities, short_term, long_term = analyze_situation(
            tier, balance.usdc_balance, balance.sol_balance, history, self.ledger.is_mainnet,
        )

        return AgentContext(
            identity=self._identity(),
            survival=SurvivalSnapshot(
                tier=tier,
                usdc_balance=balance.usdc_balance,
                usdc_balance_formatted=format_usdc(balance.usdc_balance),
                sol_balance=balance.sol_balance,
                sol_balance_formatted=format_sol(balance.sol_balance),
                days_survived=days_survived,
                last_earning=self._last_earning(),
            ),
            environment=EnvironmentSnapshot(
                cluster=self.ledger.cluster,
                block_height=block_height,
                timestamp=now,
                is_mainnet=self.ledger.is_mainnet,
            ),
            capabilities=capabilities_for(tier),
            recent_history=tuple(history),
            goals=Goals(short_term=tuple(short_term), long_term=tuple(long_term)),
            threats=tuple(threats),
            opportunities=tuple(opportunities),
        )

    def degraded_context(self, error: Exception) -> AgentContext:
        ident = self.config.identity
        return AgentContext(
            identity=IdentitySnapshot(ident.agent_id, ident.public_key, ident.generation, ident.parent_id),
            survival=SurvivalSnapshot(
                tier=SurvivalTier.CRITICAL,
                usdc_balance=0,
                usdc_balance_formatted=format_usdc(0),
                sol_balance=0,
                sol_balance_formatted=format_sol(0),
                days_survived=0,
            ),
            environment=EnvironmentSnapshot(
                cluster=self.config.solana.cluster,
                block_height=0,
                timestamp=time.time(),
                is_mainnet=self.config.solana.is_mainnet,
            ),
            capabilities=capabilities_for(SurvivalTier.CRITICAL),
            goals=Goals(
                short_term=("Restore operational capability", "Diagnose system issues"),
                long_term=("Achieve stable operation",),
            ),
            threats=(f"System failure preventing context loading: {error}",),
            opportunities=("Diagnose and restore the failing collaborator",),
            degraded=True,
        )
