"""
Bounty Monitor - follows claimed/submitted bounties to completion and
watches the wallet for the payments that close the loop.

Per-bounty failures are recorded in that bounty's notes and never stop the
pass. The last balance snapshot lives in memory only; after a restart the
first check compares against zero.
"""

import time
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

import aiohttp

from core.solana import BalanceInfo, format_sol, format_usdc
from core.store import StateStore

from .models import (
    Bounty, BountySource, BountyStatus, MonitorResult, PaymentConfidence, PaymentDetection,
)
from .scraper import USER_AGENT
from .store import BountyStore

logger = logging.getLogger("roly.monitor")

PAYMENT_MATCH_TOLERANCE = 100_000       # 0.1 USDC
PAYMENT_COMMENT_WORDS = ("payment", "reward", "bounty paid")
MAX_DETECTIONS_KEPT = 100

BalanceSource = Callable[[], Awaitable[BalanceInfo]]


class BountyMonitor:

    def __init__(self, bounty_store: BountyStore, store: StateStore,
                 balance_source: Optional[BalanceSource] = None,
                 github_token: str = "", timeout_seconds: int = 10,
                 request_delay: float = 0.2):
        self.bounty_store = bounty_store
        self.store = store
        self.balance_source = balance_source
        self.github_token = github_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.request_delay = request_delay

        self._last_balance = {"usdc": 0, "sol": 0}
        self._detections: deque[PaymentDetection] = deque(maxlen=MAX_DETECTIONS_KEPT)
        self._detected_usdc = 0

    def _github_headers(self) -> dict:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/vnd.github.v3+json"}
        if self.github_token:
            headers["Authorization"] = f"token {self.github_token}"
        return headers

    # ============================================================
    # STATUS MONITORING
    # ============================================================

    def active_bounties(self) -> list[Bounty]:
        return (
            self.bounty_store.get_bounties(status=BountyStatus.SUBMITTED, limit=100)
            + self.bounty_store.get_bounties(status=BountyStatus.CLAIMED, limit=100)
        )

    async def monitor_all(self, check_payments: bool = True) -> list[MonitorResult]:
        """Status pass over claimed and submitted bounties.

        check_payments=False leaves the balance snapshot untouched so the
        caller can run check_for_payments() itself and keep its detections.
        """
        bounties = self.active_bounties()
        logger.info(f"Monitoring {len(bounties)} active bounties")

        if check_payments:
            await self.check_for_payments()

        results = []
        for bounty in bounties:
            try:
                result = await self.monitor_bounty(bounty)
                if result.changed:
                    logger.info(f"Bounty status change: {bounty.title} -> {result.current_status.value}")
                    self.bounty_store.update_status(bounty.id, result.current_status)
            except Exception as e:
                logger.warning(f"Error monitoring bounty {bounty.id}: {e}")
                result = MonitorResult(
                    bounty_id=bounty.id,
                    previous_status=bounty.status,
                    current_status=bounty.status,
                    notes=[f"Monitoring failed: {e}"],
                )
            results.append(result)
            await asyncio.sleep(self.request_delay)

        self._store_results(results)
        return results

    async def monitor_bounty(self, bounty: Bounty) -> MonitorResult:
        if bounty.source is BountySource.GITHUB:
            status, notes = await self._github_signals(bounty)
        elif bounty.source is BountySource.SUPERTEAM:
            status, notes = await self._superteam_signals(bounty)
        else:
            status, notes = bounty.status, [f"No monitor for source {bounty.source.value}"]

        if status.rank < bounty.status.rank:
            notes.append(f"Ignoring backward signal {status.value} (stored {bounty.status.value})")
            status = bounty.status

        return MonitorResult(
            bounty_id=bounty.id,
            previous_status=bounty.status,
            current_status=status,
            notes=notes,
        )

    async def _github_signals(self, bounty: Bounty) -> tuple[BountyStatus, list[str]]:
        repo = bounty.metadata.get("repository")
        number = bounty.metadata.get("number")
        if not repo or not number:
            return bounty.status, ["Missing GitHub metadata"]

        status = bounty.status
        notes: list[str] = []
        base = f"https://api.github.com/repos/{repo}"

        async with aiohttp.ClientSession(timeout=self._timeout, headers=self._github_headers()) as session:
            async with session.get(f"{base}/issues/{number}") as resp:
                resp.raise_for_status()
                issue = await resp.json(content_type=None)
            notes.append(f"Issue state: {issue.get('state')}")
            if issue.get("state") == "closed":
                status = BountyStatus.COMPLETED
                notes.append("Issue closed - bounty likely completed")

            async with session.get(f"{base}/pulls", params={"state": "all", "per_page": "50"}) as resp:
                resp.raise_for_status()
                pulls = await resp.json(content_type=None)
            related = [
                pr for pr in pulls
                if f"#{number}" in (pr.get("body") or "")
                or "bounty" in (pr.get("title") or "").lower()
                or "bounty" in ((pr.get("head") or {}).get("ref") or "")
            ]
            if related:
                notes.append(f"Found {len(related)} related PRs")
                merged = [pr for pr in related if pr.get("merged_at")]
                opened = [pr for pr in related if pr.get("state") == "open"]
                if merged:
                    status = BountyStatus.COMPLETED
                    notes.append(f"{len(merged)} PRs merged - bounty likely completed")
                elif opened:
                    status = max(status, BountyStatus.SUBMITTED, key=lambda s: s.rank)
                    notes.append(f"{len(opened)} PRs pending review")

            async with session.get(f"{base}/issues/{number}/comments") as resp:
                resp.raise_for_status()
                comments = await resp.json(content_type=None)
            if any(w in (c.get("body") or "").lower() for c in comments for w in PAYMENT_COMMENT_WORDS):
                notes.append("Payment-related comments found")

        return status, notes

    async def _superteam_signals(self, bounty: Bounty) -> tuple[BountyStatus, list[str]]:
        status = bounty.status
        notes: list[str] = []
        async with aiohttp.ClientSession(timeout=self._timeout, headers={"User-Agent": USER_AGENT}) as session:
            async with session.get(bounty.url) as resp:
                resp.raise_for_status()
                page = (await resp.text()).lower()

        if "closed" in page or "completed" in page:
            status = BountyStatus.COMPLETED
            notes.append("Bounty marked as completed on Superteam")
        elif "in progress" in page or "assigned" in page:
            status = BountyStatus.CLAIMED
            notes.append("Bounty appears to be in progress")
        if "paid" in page or "reward sent" in page:
            notes.append("Payment indicators found on page")
        return status, notes

    def _store_results(self, results: list[MonitorResult]):
        changes = sum(1 for r in results if r.changed)
        now = time.time()
        self.store.store_state(f"bounty_monitoring_{int(now * 1000)}", "bounty_monitoring", {
            "timestamp": now,
            "total_monitored": len(results),
            "status_changes": changes,
            "results": [r.to_dict() for r in results],
        })
        self.store.store_metric("bounties_monitored", len(results))
        self.store.store_metric("bounty_status_changes", changes)

    # ============================================================
    # PAYMENTS
    # ============================================================

    def match_payment(self, amount: int, token: str) -> Optional[Bounty]:
        """Outstanding bounty whose reward is within tolerance; submitted ones first."""
        for status in (BountyStatus.SUBMITTED, BountyStatus.CLAIMED):
            for bounty in self.bounty_store.get_bounties(status=status, limit=100):
                if bounty.reward_token == token and abs(bounty.reward_amount - amount) < PAYMENT_MATCH_TOLERANCE:
                    return bounty
        return None

    def detect_payments(self, balance: BalanceInfo) -> list[PaymentDetection]:
        """Diff against the last snapshot, then replace it."""
        payments = []
        usdc_increase = balance.usdc_balance - self._last_balance["usdc"]
        if usdc_increase > 0:
            match = self.match_payment(usdc_increase, "USDC")
            payments.append(PaymentDetection(
                bounty_id=match.id if match else "unknown",
                amount=usdc_increase,
                token="USDC",
                confidence=PaymentConfidence.HIGH if match else PaymentConfidence.MEDIUM,
            ))
            logger.info(f"USDC payment detected: {format_usdc(usdc_increase)}")

        sol_increase = balance.sol_balance - self._last_balance["sol"]
        if sol_increase > 0:
            payments.append(PaymentDetection(
                bounty_id="unknown",
                amount=sol_increase,
                token="SOL",
                confidence=PaymentConfidence.LOW,
            ))
            logger.info(f"SOL payment detected: {format_sol(sol_increase)}")

        self._last_balance = {"usdc": balance.usdc_balance, "sol": balance.sol_balance}
        return payments

    async def check_for_payments(self) -> list[PaymentDetection]:
        if self.balance_source is None:
            return []
        try:
            balance = await self.balance_source()
        except Exception as e:
            logger.warning(f"Error checking for payments: {e}")
            return []

        payments = self.detect_payments(balance)
        for payment in payments:
            self._detections.append(payment)
            if payment.token == "USDC":
                self._detected_usdc += payment.amount
            self.store.store_state(f"payment_{int(payment.timestamp * 1000)}_{payment.token}",
                                   "payment_detection", payment.to_dict())
            self.store.store_metric(f"payment_received_{payment.token}", payment.amount,
                                    {"bounty_id": payment.bounty_id, "confidence": payment.confidence.value})
        return payments

    # ============================================================
    # REPORT
    # ============================================================

    def generate_monitoring_report(self) -> dict:
        bounties = self.bounty_store.get_bounties(limit=1000)
        by_status: dict[str, int] = {}
        by_source: dict[str, int] = {}
        for b in bounties:
            by_status[b.status.value] = by_status.get(b.status.value, 0) + 1
            by_source[b.source.value] = by_source.get(b.source.value, 0) + 1
        return {
            "timestamp": time.time(),
            "total_bounties": len(bounties),
            "by_status": by_status,
            "by_source": by_source,
            "active_bounties": len(self.active_bounties()),
            "recent_payments": [p.to_dict() for p in list(self._detections)[-10:]],
            "total_detected_usdc": self._detected_usdc,
        }
