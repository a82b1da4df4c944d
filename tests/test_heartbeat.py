import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bounties.evaluator import BountyEvaluator
from bounties.models import BountyStatus, MonitorResult
from bounties.monitor import BountyMonitor
from bounties.pipeline import BountyPipeline
from core.constitution import SurvivalTier
from core.context import ContextBuilder
from core.heartbeat import HeartbeatDaemon, HeartbeatTasks

from conftest import balance

NOW = 1_700_000_000.0


class Clock:

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _ledger():
    ledger = MagicMock()
    ledger.get_current_height = AsyncMock(return_value=321)
    ledger.get_epoch_info = AsyncMock(return_value={"epoch": 7})
    ledger.is_healthy = AsyncMock(return_value=True)
    ledger.cluster = "devnet"
    ledger.is_mainnet = False
    return ledger


def _stub_pipeline():
    pipeline = MagicMock()
    pipeline.scraper.scrape_all = AsyncMock(return_value=[])
    pipeline.monitor.monitor_all = AsyncMock(return_value=[])
    pipeline.monitor.check_for_payments = AsyncMock(return_value=[])
    pipeline.store.get_bounties = MagicMock(return_value=[])
    return pipeline


def _setup(config, store, usdc, bounties=None, clock=None):
    ledger = _ledger()
    source = AsyncMock(return_value=balance(usdc, 1_000_000))
    wallet = MagicMock(public_key="RolyPubkey")
    tasks = HeartbeatTasks(config, store, ledger, source, lambda: wallet, bounties, clock or Clock())
    return tasks, ContextBuilder(config, store, source, ledger)


def _beat(tasks, builder):
    async def go():
        return await tasks.execute_heartbeat_tasks(await builder.build())
    return asyncio.run(go())


class TestTierSelection:

    def test_critical_tier_tasks(self, config, store):
        tasks, builder = _setup(config, store, 2_000_000)

        results = _beat(tasks, builder)

        assert [r.task for r in results] == [
            "health_check", "balance_monitor", "survival_assessment", "network_status",
            "emergency_bounty_scan", "database_cleanup", "metrics_report",
        ]
        failed = [r for r in results if not r.success]
        assert [r.task for r in failed] == ["emergency_bounty_scan"]
        assert failed[0].error == "Bounty system not configured"
        assert store.get_metrics("heartbeat_success_rate")[0]["value"] == pytest.approx(6 / 7)
        assert len(store.get_states("heartbeat_results")) == 1

    def test_dead_tier_skips_network(self, config, store):
        tasks, builder = _setup(config, store, 0)
        names = [r.task for r in _beat(tasks, builder)]
        assert names[:3] == ["health_check", "balance_monitor", "survival_assessment"]
        assert "network_status" not in names

    def test_low_compute_tier_tasks(self, config, store):
        tasks, builder = _setup(config, store, 6_000_000, _stub_pipeline())
        names = [r.task for r in _beat(tasks, builder)]
        assert "essential_monitor" in names
        assert "bounty_check" in names
        assert "bounty_scan" not in names

    def test_periodic_tasks_are_gated(self, config, store):
        clock = Clock()
        tasks, builder = _setup(config, store, 20_000_000, _stub_pipeline(), clock)

        first = [r.task for r in _beat(tasks, builder)]
        clock.now += 30 * 60
        second = [r.task for r in _beat(tasks, builder)]
        clock.now += 31 * 60
        third = [r.task for r in _beat(tasks, builder)]

        for name in ("bounty_scan", "database_cleanup", "metrics_report"):
            assert name in first
            assert name not in second
        assert "bounty_scan" in third
        assert "database_cleanup" not in third
        assert "system_backup" in second


class TestTasks:

    def test_balance_change_is_reported(self, config, store):
        tasks, _ = _setup(config, store, 5_000_000)
        store.store_state("last_balance", "balance_check", {"usdc_balance": 4_000_000, "sol_balance": 1_000_000})

        data = asyncio.run(tasks.balance_monitor())

        assert data["change"] == {"usdc": 1_000_000, "sol": 0}
        assert store.get_state("last_balance")["usdc_balance"] == 5_000_000
        assert store.get_metrics("balance_usdc")[0]["value"] == 5_000_000

    def test_first_balance_has_no_change(self, config, store):
        tasks, _ = _setup(config, store, 5_000_000)
        assert asyncio.run(tasks.balance_monitor())["change"] is None

    def test_survival_tier_change_recorded(self, config, store):
        tasks, builder = _setup(config, store, 2_000_000)
        store.store_state("last_survival_tier", "survival_tier", "normal")
        ctx = asyncio.run(builder.build())

        data = asyncio.run(tasks.survival_assessment(ctx))

        assert data["changed"]
        change = store.get_state("survival_tier_change")
        assert (change["from"], change["to"]) == ("normal", "critical")
        assert store.get_state("last_survival_tier") == "critical"
        assert store.get_metrics("survival_tier_numeric")[0]["value"] == SurvivalTier.CRITICAL.rank

    def test_excess_sol_is_an_opportunity(self, config, store):
        tasks, _ = _setup(config, store, 20_000_000)
        tasks.balance_source = AsyncMock(return_value=balance(20_000_000, 60_000_000))
        opportunities = asyncio.run(tasks.opportunity_scan())["opportunities"]
        assert [o["type"] for o in opportunities] == ["sol_to_usdc_swap"]

    def test_bounty_scan_auto_claims_when_idle(self, config, store, bounty_store, make_bounty):
        bounty = make_bounty()
        bounty_store.store_bounties([bounty])
        scraper = MagicMock()
        scraper.scrape_all = AsyncMock(return_value=[bounty])
        pipeline = BountyPipeline(bounty_store, scraper, BountyEvaluator(store), MagicMock(), MagicMock())
        tasks, _ = _setup(config, store, 20_000_000, pipeline)

        summary = asyncio.run(tasks.bounty_scan())

        assert summary["auto_claimed"] == "github_1"
        claimed = bounty_store.get_bounty("github_1")
        assert claimed.status is BountyStatus.CLAIMED
        assert claimed.claimed_at == NOW

    def test_emergency_scan_claims_quick_easy_work(self, config, store, bounty_store, make_bounty):
        bounty = make_bounty()
        bounty_store.store_bounties([bounty])
        scraper = MagicMock()
        scraper.scrape_all = AsyncMock(return_value=[bounty])
        pipeline = BountyPipeline(bounty_store, scraper, BountyEvaluator(store), MagicMock(), MagicMock())
        tasks, _ = _setup(config, store, 2_000_000, pipeline)

        summary = asyncio.run(tasks.emergency_bounty_scan())

        assert summary["priority"] == "CRITICAL_SURVIVAL"
        assert bounty_store.get_bounty("github_1").status is BountyStatus.CLAIMED


def _pipeline(store, bounty_store, scraped=(), balance_source=None):
    scraper = MagicMock()
    scraper.scrape_all = AsyncMock(return_value=list(scraped))
    monitor = BountyMonitor(bounty_store, store, balance_source=balance_source, request_delay=0)
    return BountyPipeline(bounty_store, scraper, BountyEvaluator(store), MagicMock(), monitor)


def _submitted_bounty(bounty_store, make_bounty):
    bounty_store.store_bounties([make_bounty(id="github_9", reward_amount=1_000_000)])
    bounty_store.update_status("github_9", BountyStatus.SUBMITTED)


class TestBountyTasks:

    def test_monitoring_reports_the_payment_it_detected(self, config, store, bounty_store, make_bounty):
        _submitted_bounty(bounty_store, make_bounty)
        pipeline = _pipeline(store, bounty_store, balance_source=AsyncMock(return_value=balance(1_000_000)))
        pipeline.monitor.monitor_bounty = AsyncMock(return_value=MonitorResult(
            "github_9", BountyStatus.SUBMITTED, BountyStatus.SUBMITTED))
        tasks, _ = _setup(config, store, 20_000_000, pipeline)

        summary = asyncio.run(tasks.bounty_monitoring())

        assert summary == {
            "monitored": 1,
            "status_changes": 0,
            "payments_detected": 1,
            "total_payment_amount": 1_000_000,
        }
        metrics = store.get_metrics("payment_received_USDC")
        assert len(metrics) == 1
        assert metrics[0]["metadata"]["bounty_id"] == "github_9"

    def test_bounty_check_counts_payments(self, config, store, bounty_store, make_bounty):
        _submitted_bounty(bounty_store, make_bounty)
        pipeline = _pipeline(store, bounty_store, balance_source=AsyncMock(return_value=balance(1_000_000)))
        tasks, _ = _setup(config, store, 6_000_000, pipeline)

        summary = asyncio.run(tasks.bounty_check())

        assert summary["payments_detected"] == 1
        assert summary["submitted_bounties"] == 1
        assert summary["active_bounties"] == 0

    @pytest.mark.parametrize("stored_status", [BountyStatus.SUBMITTED, BountyStatus.COMPLETED])
    def test_scan_skips_bounties_past_open(self, config, store, bounty_store, make_bounty, stored_status):
        stale = make_bounty()
        bounty_store.store_bounties([stale])
        bounty_store.update_status(stale.id, stored_status)
        tasks, _ = _setup(config, store, 20_000_000, _pipeline(store, bounty_store, [stale]))

        summary = asyncio.run(tasks.bounty_scan())

        assert "auto_claimed" not in summary
        assert summary["recommended"] == 0
        assert bounty_store.get_bounty(stale.id).status is stored_status

    def test_scan_claims_the_open_bounty_instead(self, config, store, bounty_store, make_bounty):
        stale, fresh = make_bounty(), make_bounty(id="github_2")
        bounty_store.store_bounties([stale, fresh])
        bounty_store.update_status(stale.id, BountyStatus.COMPLETED)
        tasks, _ = _setup(config, store, 20_000_000, _pipeline(store, bounty_store, [stale, fresh]))

        summary = asyncio.run(tasks.bounty_scan())

        assert summary["auto_claimed"] == "github_2"
        assert bounty_store.get_bounty("github_2").status is BountyStatus.CLAIMED
        assert bounty_store.get_bounty(stale.id).status is BountyStatus.COMPLETED

    def test_emergency_scan_skips_completed_bounty(self, config, store, bounty_store, make_bounty):
        stale = make_bounty()
        bounty_store.store_bounties([stale])
        bounty_store.update_status(stale.id, BountyStatus.COMPLETED)
        tasks, _ = _setup(config, store, 2_000_000, _pipeline(store, bounty_store, [stale]))

        summary = asyncio.run(tasks.emergency_bounty_scan())

        assert summary == {"emergency_bounties": 0, "message": "No suitable emergency bounties found"}
        assert bounty_store.get_bounty(stale.id).status is BountyStatus.COMPLETED


class TestDaemon:

    def _daemon(self, config, clock=None):
        builder = MagicMock()
        builder.build = AsyncMock(return_value=MagicMock())
        builder.build.return_value.survival.tier = SurvivalTier.NORMAL
        tasks = MagicMock()
        tasks.execute_heartbeat_tasks = AsyncMock(return_value=["ok"])
        return HeartbeatDaemon(config, builder, tasks, clock or Clock())

    def test_skipped_unless_running_or_forced(self, config):
        daemon = self._daemon(config)
        assert asyncio.run(daemon.perform_heartbeat()) is None
        assert asyncio.run(daemon.force_heartbeat()) == ["ok"]
        assert daemon.state.beat_count == 1

    def test_overlapping_beat_is_skipped(self, config):
        daemon = self._daemon(config)
        daemon.state.in_flight = True
        assert asyncio.run(daemon.force_heartbeat()) is None
        daemon.tasks.execute_heartbeat_tasks.assert_not_called()

    def test_errors_recorded_then_cleared(self, config):
        daemon = self._daemon(config)
        daemon.state.running = True
        daemon.tasks.execute_heartbeat_tasks.side_effect = RuntimeError("rpc down")

        for _ in range(12):
            assert asyncio.run(daemon.perform_heartbeat()) is None
        assert len(daemon.state.errors) == 10
        assert not daemon.is_healthy()

        daemon.tasks.execute_heartbeat_tasks.side_effect = None
        asyncio.run(daemon.perform_heartbeat())
        assert daemon.state.errors == []
        assert daemon.is_healthy()

    def test_stale_beat_is_unhealthy(self, config):
        clock = Clock()
        daemon = self._daemon(config, clock)
        daemon.state.running = True
        daemon.state.last_beat = NOW
        clock.now += 11 * 60
        assert not daemon.is_healthy()

    def test_emergency_shutdown(self, config):
        daemon = self._daemon(config)
        daemon.state.running = True
        daemon.emergency_shutdown("wallet compromised")
        assert not daemon.state.running
        assert daemon.state.errors[-1] == "EMERGENCY_SHUTDOWN: wallet compromised"
        assert daemon.get_status()["healthy"] is False

    def test_start_beats_immediately_and_stops(self, config):
        daemon = self._daemon(config)

        async def scenario():
            daemon.start()
            await asyncio.sleep(0.05)
            daemon.stop()
            await daemon.task

        asyncio.run(scenario())

        assert daemon.state.beat_count == 1
        assert not daemon.state.running
