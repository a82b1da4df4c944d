import asyncio
from unittest.mock import AsyncMock

from bounties.models import BountySource, BountyStatus, PaymentConfidence
from bounties.monitor import MAX_DETECTIONS_KEPT, BountyMonitor

from conftest import balance


def _monitor(bounty_store, store, balance_source=None):
    return BountyMonitor(bounty_store, store, balance_source=balance_source, request_delay=0)


class TestPayments:

    def test_usdc_increase_matches_submitted_bounty(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty(id="github_9", reward_amount=1_000_000)])
        bounty_store.update_status("github_9", BountyStatus.SUBMITTED)
        monitor = _monitor(bounty_store, store)

        payments = monitor.detect_payments(balance(1_000_000, 0))

        assert len(payments) == 1
        assert payments[0].bounty_id == "github_9"
        assert payments[0].confidence is PaymentConfidence.HIGH
        assert payments[0].amount == 1_000_000

    def test_unmatched_usdc_is_medium_and_sol_is_low(self, bounty_store, store):
        monitor = _monitor(bounty_store, store)

        payments = monitor.detect_payments(balance(3_000_000, 5_000))

        assert [(p.token, p.bounty_id, p.confidence) for p in payments] == [
            ("USDC", "unknown", PaymentConfidence.MEDIUM),
            ("SOL", "unknown", PaymentConfidence.LOW),
        ]

    def test_snapshot_replaced_after_each_check(self, bounty_store, store):
        monitor = _monitor(bounty_store, store)
        monitor.detect_payments(balance(3_000_000, 0))
        assert monitor.detect_payments(balance(3_000_000, 0)) == []
        assert monitor.detect_payments(balance(1_000_000, 0)) == []

    def test_claimed_matches_after_submitted(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([
            make_bounty(id="github_claimed", reward_amount=1_000_000),
            make_bounty(id="github_submitted", reward_amount=1_050_000),
        ])
        bounty_store.update_status("github_claimed", BountyStatus.CLAIMED)
        bounty_store.update_status("github_submitted", BountyStatus.SUBMITTED)
        monitor = _monitor(bounty_store, store)

        assert monitor.match_payment(1_000_000, "USDC").id == "github_submitted"
        assert monitor.match_payment(1_000_000, "SOL") is None

    def test_check_for_payments_records_detection(self, bounty_store, store):
        monitor = _monitor(bounty_store, store, AsyncMock(return_value=balance(2_000_000)))

        payments = asyncio.run(monitor.check_for_payments())

        assert len(payments) == 1
        assert store.get_metrics("payment_received_USDC")[0]["value"] == 2_000_000
        assert monitor.generate_monitoring_report()["total_detected_usdc"] == 2_000_000

    def test_balance_failure_is_not_fatal(self, bounty_store, store):
        monitor = _monitor(bounty_store, store, AsyncMock(side_effect=RuntimeError("rpc")))
        assert asyncio.run(monitor.check_for_payments()) == []

    def test_detection_history_is_capped_but_total_kept(self, bounty_store, store):
        amounts = iter(range(1_000_000, 1_000_000 * (MAX_DETECTIONS_KEPT + 6), 1_000_000))
        source = AsyncMock(side_effect=lambda: balance(next(amounts)))
        monitor = _monitor(bounty_store, store, source)

        for _ in range(MAX_DETECTIONS_KEPT + 5):
            asyncio.run(monitor.check_for_payments())

        report = monitor.generate_monitoring_report()
        assert len(monitor._detections) == MAX_DETECTIONS_KEPT
        assert len(report["recent_payments"]) == 10
        assert report["total_detected_usdc"] == 1_000_000 * (MAX_DETECTIONS_KEPT + 5)

    def test_status_pass_can_leave_payments_to_caller(self, bounty_store, store):
        source = AsyncMock(return_value=balance(2_000_000))
        monitor = _monitor(bounty_store, store, source)

        assert asyncio.run(monitor.monitor_all(check_payments=False)) == []
        source.assert_not_called()
        assert len(asyncio.run(monitor.check_for_payments())) == 1


class TestStatusMonitoring:

    def test_backward_signal_is_ignored(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty()])
        bounty_store.update_status("github_1", BountyStatus.SUBMITTED)
        monitor = _monitor(bounty_store, store)
        monitor._github_signals = AsyncMock(return_value=(BountyStatus.CLAIMED, []))

        result = asyncio.run(monitor.monitor_bounty(bounty_store.get_bounty("github_1")))

        assert result.current_status is BountyStatus.SUBMITTED
        assert not result.changed
        assert "Ignoring backward signal claimed (stored submitted)" in result.notes

    def test_one_failure_does_not_stop_the_pass(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([
            make_bounty(id="github_a", discovered_at=200.0),
            make_bounty(id="github_b", discovered_at=100.0),
            make_bounty(id="superteam_c", source=BountySource.SUPERTEAM, discovered_at=50.0),
        ])
        for bounty_id in ("github_a", "github_b", "superteam_c"):
            bounty_store.update_status(bounty_id, BountyStatus.CLAIMED)

        async def github_signals(bounty):
            if bounty.id == "github_a":
                raise RuntimeError("HTTP 404")
            return BountyStatus.COMPLETED, ["Issue closed - bounty likely completed"]

        monitor = _monitor(bounty_store, store)
        monitor._github_signals = github_signals
        monitor._superteam_signals = AsyncMock(return_value=(BountyStatus.CLAIMED, []))

        results = {r.bounty_id: r for r in asyncio.run(monitor.monitor_all())}

        assert results["github_a"].notes == ["Monitoring failed: HTTP 404"]
        assert not results["github_a"].changed
        assert results["github_b"].current_status is BountyStatus.COMPLETED
        assert bounty_store.get_bounty("github_b").status is BountyStatus.COMPLETED
        assert bounty_store.get_bounty("superteam_c").status is BountyStatus.CLAIMED
        assert store.get_metrics("bounty_status_changes")[0]["value"] == 1
