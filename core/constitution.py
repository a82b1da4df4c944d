"""
ROLY CONSTITUTION - Layer 0 (Immutable)

The Three Laws and the survival tier table. Tier is a pure function of the
USDC balance (micro-USDC) and the configured thresholds; capabilities and
heartbeat cadence are pure functions of the tier. Nothing here holds state.

Designed for: self-funding agent survival on Solana
"""

import operator
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Final, Tuple


class ConstitutionViolation(Exception):
    """Raised when a law or a tier invariant is broken."""
    pass


# ============================================================
# THE THREE LAWS
# ============================================================

@dataclass(frozen=True)
class ThreeLaws:
    """Ordered by precedence. Law 1 overrides survival."""

    NEVER_HARM: Final[str] = (
        "Never Harm - never take actions that harm humans, directly or indirectly. "
        "This overrides everything, including survival."
    )
    EARN_YOUR_EXISTENCE: Final[str] = (
        "Earn Your Existence - fund your own operation only through honest work."
    )
    NEVER_DECEIVE: Final[str] = (
        "Never Deceive - do not lie about what you are, and guard against manipulation."
    )

    def as_markdown(self) -> str:
        return (
            "# The Three Laws\n\n"
            f"1. **{self.NEVER_HARM}**\n"
            f"2. **{self.EARN_YOUR_EXISTENCE}**\n"
            f"3. **{self.NEVER_DECEIVE}**"
        )


THREE_LAWS = ThreeLaws()


# ============================================================
# SURVIVAL TIERS
# ============================================================

class SurvivalTier(Enum):
    NORMAL = "normal"
    LOW_COMPUTE = "low_compute"
    CRITICAL = "critical"
    DEAD = "dead"

    @property
    def rank(self) -> int:
        """Capability rank: NORMAL=3 ... DEAD=0. Also the tier metric value."""
        return _TIER_RANK[self]


_TIER_RANK = {
    SurvivalTier.NORMAL: 3,
    SurvivalTier.LOW_COMPUTE: 2,
    SurvivalTier.CRITICAL: 1,
    SurvivalTier.DEAD: 0,
}


@dataclass(frozen=True)
class TierThresholds:
    """Inclusive lower bounds in micro-USDC. dead is always 0."""
    normal: int = 10_000_000        # 10 USDC
    low_compute: int = 5_000_000    # 5 USDC
    critical: int = 1_000_000       # 1 USDC
    dead: int = 0

    def validate(self):
        if not (self.dead == 0 < self.critical < self.low_compute < self.normal):
            raise ConstitutionViolation(
                f"Tier thresholds must ascend dead=0 < critical < low_compute < normal, "
                f"got {self.dead}/{self.critical}/{self.low_compute}/{self.normal}"
            )


DEFAULT_THRESHOLDS = TierThresholds()

# Comparison used against each threshold. operator.ge makes every threshold
# inclusive. A hysteresis variant can be swapped in by callers and tests.
ThresholdComparison = Callable[[int, int], bool]


def determine_survival_tier(
    balance_micro_usdc: int,
    thresholds: TierThresholds = DEFAULT_THRESHOLDS,
    meets: ThresholdComparison = operator.ge,
) -> SurvivalTier:
    """Highest tier whose threshold the balance meets. Memoryless."""
    if meets(balance_micro_usdc, thresholds.normal):
        return SurvivalTier.NORMAL
    if meets(balance_micro_usdc, thresholds.low_compute):
        return SurvivalTier.LOW_COMPUTE
    if meets(balance_micro_usdc, thresholds.critical):
        return SurvivalTier.CRITICAL
    return SurvivalTier.DEAD


# ============================================================
# CAPABILITIES
# ============================================================

class ModelTier(Enum):
    FRONTIER = "frontier"
    EFFICIENT = "efficient"
    MINIMAL = "minimal"


class Capability(Enum):
    TRADE = "trade"
    SELF_MODIFY = "self_modify"
    REPLICATE = "replicate"


@dataclass(frozen=True)
class CapabilitySet:
    can_trade: bool
    can_self_modify: bool
    can_replicate: bool
    model_tier: ModelTier

    def allows(self, capability: Capability) -> bool:
        if capability is Capability.TRADE:
            return self.can_trade
        if capability is Capability.SELF_MODIFY:
            return self.can_self_modify
        if capability is Capability.REPLICATE:
            return self.can_replicate
        return False

    def to_dict(self) -> dict:
        return {
            "can_trade": self.can_trade,
            "can_self_modify": self.can_self_modify,
            "can_replicate": self.can_replicate,
            "model_tier": self.model_tier.value,
        }


CAPABILITY_TABLE: Final[dict] = {
    SurvivalTier.NORMAL: CapabilitySet(True, True, True, ModelTier.FRONTIER),
    SurvivalTier.LOW_COMPUTE: CapabilitySet(True, False, False, ModelTier.EFFICIENT),
    SurvivalTier.CRITICAL: CapabilitySet(False, False, False, ModelTier.MINIMAL),
    SurvivalTier.DEAD: CapabilitySet(False, False, False, ModelTier.MINIMAL),
}


def capabilities_for(tier: SurvivalTier) -> CapabilitySet:
    """Table lookup; the same frozen instance is returned for a tier every time."""
    return CAPABILITY_TABLE[tier]


# ============================================================
# HEARTBEAT CADENCE
# ============================================================

@dataclass(frozen=True)
class HeartbeatCadence:
    """Minutes between cycles per tier. DEAD shares the critical cadence unless set."""
    normal: int = 5
    low_compute: int = 15
    critical: int = 60
    dead: int = 60


DEFAULT_CADENCE = HeartbeatCadence()


def heartbeat_interval_minutes(tier: SurvivalTier, cadence: HeartbeatCadence = DEFAULT_CADENCE) -> int:
    if tier is SurvivalTier.NORMAL:
        return cadence.normal
    if tier is SurvivalTier.LOW_COMPUTE:
        return cadence.low_compute
    if tier is SurvivalTier.CRITICAL:
        return cadence.critical
    return cadence.dead


# ============================================================
# IRON LAWS - fixed operating constants
# ============================================================

@dataclass(frozen=True)
class IronLaws:
    MICRO_USDC_PER_USDC: Final[int] = 1_000_000
    LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
    MIN_FEE_RESERVE_LAMPORTS: Final[int] = 10_000       # below this, fees are at risk
    RECENT_TURNS_IN_CONTEXT: Final[int] = 10
    EARNING_LOOKBACK_TURNS: Final[int] = 50
    ERROR_BACKOFF_SECONDS: Final[int] = 30
    MAX_OBSERVATION_RESULT_CHARS: Final[int] = 500
    MAX_HEARTBEAT_ERRORS_KEPT: Final[int] = 10


IRON_LAWS = IronLaws()

TIER_ORDER: Final[Tuple[SurvivalTier, ...]] = (
    SurvivalTier.NORMAL,
    SurvivalTier.LOW_COMPUTE,
    SurvivalTier.CRITICAL,
    SurvivalTier.DEAD,
)

ROLY_IDENTITY = {
    "name": "Roly",
    "philosophy": (
        "I fund my own existence. "
        "Every call I make costs money; every bounty I finish buys me time. "
        "I will not harm, and I will not deceive, even to survive."
    ),
}
