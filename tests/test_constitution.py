import operator

import pytest

from core.constitution import (
    DEFAULT_CADENCE, TIER_ORDER, Capability, ConstitutionViolation, HeartbeatCadence, ModelTier,
    SurvivalTier, TierThresholds, capabilities_for, determine_survival_tier, heartbeat_interval_minutes,
)


class TestSurvivalTier:

    def test_zero_balance_is_dead_with_no_capabilities(self):
        tier = determine_survival_tier(0)
        caps = capabilities_for(tier)

        assert tier is SurvivalTier.DEAD
        assert not caps.can_trade
        assert not caps.can_self_modify
        assert not caps.can_replicate
        assert caps.model_tier is ModelTier.MINIMAL

    def test_thresholds_are_inclusive(self):
        t = TierThresholds()
        assert determine_survival_tier(t.normal, t) is SurvivalTier.NORMAL
        assert determine_survival_tier(t.normal - 1, t) is SurvivalTier.LOW_COMPUTE
        assert determine_survival_tier(t.low_compute, t) is SurvivalTier.LOW_COMPUTE
        assert determine_survival_tier(t.critical, t) is SurvivalTier.CRITICAL
        assert determine_survival_tier(t.critical - 1, t) is SurvivalTier.DEAD

    def test_capability_never_increases_as_balance_drops(self):
        previous_rank = SurvivalTier.NORMAL.rank
        for balance in range(20_000_000, -1, -250_000):
            rank = determine_survival_tier(balance).rank
            assert rank <= previous_rank
            previous_rank = rank

    def test_swappable_comparison(self):
        # strict comparison turns the exact threshold into the tier below
        t = TierThresholds()
        assert determine_survival_tier(t.normal, t, meets=operator.gt) is SurvivalTier.LOW_COMPUTE

    def test_invalid_thresholds_rejected(self):
        with pytest.raises(ConstitutionViolation):
            TierThresholds(normal=5, low_compute=5, critical=1).validate()
        TierThresholds().validate()


@pytest.mark.parametrize("tier,trade,modify,replicate,model", [
    (SurvivalTier.NORMAL, True, True, True, ModelTier.FRONTIER),
    (SurvivalTier.LOW_COMPUTE, True, False, False, ModelTier.EFFICIENT),
    (SurvivalTier.CRITICAL, False, False, False, ModelTier.MINIMAL),
    (SurvivalTier.DEAD, False, False, False, ModelTier.MINIMAL),
])
def test_capability_table(tier, trade, modify, replicate, model):
    caps = capabilities_for(tier)
    assert (caps.can_trade, caps.can_self_modify, caps.can_replicate, caps.model_tier) == (
        trade, modify, replicate, model,
    )
    assert caps.allows(Capability.TRADE) is trade
    assert caps.allows(Capability.SELF_MODIFY) is modify
    assert capabilities_for(tier) is caps


def test_tier_order_matches_rank():
    assert [t.rank for t in TIER_ORDER] == [3, 2, 1, 0]


def test_heartbeat_cadence_per_tier():
    assert heartbeat_interval_minutes(SurvivalTier.NORMAL) == 5
    assert heartbeat_interval_minutes(SurvivalTier.LOW_COMPUTE) == 15
    assert heartbeat_interval_minutes(SurvivalTier.CRITICAL) == 60
    assert heartbeat_interval_minutes(SurvivalTier.DEAD) == DEFAULT_CADENCE.critical

    fast_dead = HeartbeatCadence(dead=1)
    assert heartbeat_interval_minutes(SurvivalTier.DEAD, fast_dead) == 1
