"""
Heartbeat - periodic maintenance that runs beside the agent loop.

Which tasks run depends on the survival tier of the context passed in:

    always        health_check, balance_monitor, survival_assessment
    not DEAD      network_status
    NORMAL        opportunity_scan, bounty_scan, bounty_monitoring, system_backup
    LOW_COMPUTE   essential_monitor, bounty_check
    CRITICAL      emergency_bounty_scan
    periodic      database_cleanup (daily), metrics_report (6h)

Each task is wrapped by run_task and never raises. Periodic tasks are gated
by explicit last-run timestamps held on HeartbeatTasks.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from bounties.models import Bounty, BountyEvaluation, BountyStatus, Difficulty
from bounties.pipeline import BountyError, BountyPipeline

from .config import AgentConfig
from .constitution import IRON_LAWS, SurvivalTier, heartbeat_interval_minutes
from .context import AgentContext, ContextBuilder
from .solana import BalanceInfo, SolanaClient, WalletInfo, format_usdc
from .store import StateStore

logger = logging.getLogger("roly.heartbeat")

BalanceSource = Callable[[], Awaitable[BalanceInfo]]

SIGNIFICANT_CHANGE_MICRO_USDC = 100_000    # 0.1 USDC
SIGNIFICANT_CHANGE_PERCENT = 5
EXCESS_SOL_LAMPORTS = 50_000_000           # 0.05 SOL
BOUNTY_SCAN_MINUTES = 60
CLEANUP_MINUTES = 24 * 60
METRICS_REPORT_MINUTES = 6 * 60
CLEANUP_RETENTION_DAYS = 30
UNHEALTHY_ERROR_COUNT = 5


@dataclass(frozen=True)
class HeartbeatTaskResult:
    task: str
    success: bool
    duration_ms: int
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task": self.task,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "data": self.data,
            "error": self.error,
        }


class HeartbeatTasks:

    def __init__(
        self,
        config: AgentConfig,
        store: StateStore,
        ledger: SolanaClient,
        balance_source: BalanceSource,
        wallet_loader: Callable[[], WalletInfo],
        bounties: Optional[BountyPipeline] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.ledger = ledger
        self.balance_source = balance_source
        self.wallet_loader = wallet_loader
        self.bounties = bounties
        self.clock = clock
        self.last_run: dict[str, float] = {}

    def should_run_periodic(self, name: str, interval_minutes: int) -> bool:
        """Due when never run or interval elapsed; marks the run when due."""
        now = self.clock()
        last = self.last_run.get(name)
        if last is not None and now - last < interval_minutes * 60:
            return False
        self.last_run[name] = now
        return True

    async def run_task(self, name: str, task: Callable[[], Awaitable[Any]]) -> HeartbeatTaskResult:
        started = time.monotonic()
        try:
            data = await task()
            duration = int((time.monotonic() - started) * 1000)
            logger.info(f"{name} completed ({duration}ms)")
            return HeartbeatTaskResult(task=name, success=True, duration_ms=duration, data=data)
        except Exception as e:
            duration = int((time.monotonic() - started) * 1000)
            logger.warning(f"{name} failed: {e} ({duration}ms)")
            return HeartbeatTaskResult(task=name, success=False, duration_ms=duration, error=str(e))

    async def execute_heartbeat_tasks(self, context: AgentContext) -> list[HeartbeatTaskResult]:
        tier = context.survival.tier
        results = [
            await self.run_task("health_check", self.health_check),
            await self.run_task("balance_monitor", self.balance_monitor),
            await self.run_task("survival_assessment", lambda: self.survival_assessment(context)),
        ]

        if tier is not SurvivalTier.DEAD:
            results.append(await self.run_task("network_status", self.network_status))

        if tier is SurvivalTier.NORMAL:
            results.append(await self.run_task("opportunity_scan", self.opportunity_scan))
            if self.should_run_periodic("bounty_scan", BOUNTY_SCAN_MINUTES):
                results.append(await self.run_task("bounty_scan", self.bounty_scan))
            results.append(await self.run_task("bounty_monitoring", self.bounty_monitoring))
            results.append(await self.run_task("system_backup", self.system_backup))
        elif tier is SurvivalTier.LOW_COMPUTE:
            results.append(await self.run_task("essential_monitor", self.essential_monitor))
            results.append(await self.run_task("bounty_check", self.bounty_check))
        elif tier is SurvivalTier.CRITICAL:
            results.append(await self.run_task("emergency_bounty_scan", self.emergency_bounty_scan))

        if self.should_run_periodic("database_cleanup", CLEANUP_MINUTES):
            results.append(await self.run_task("database_cleanup", self.database_cleanup))
        if self.should_run_periodic("metrics_report", METRICS_REPORT_MINUTES):
            results.append(await self.run_task("metrics_report", self.metrics_report))

        self._store_results(context, results)
        return results

    def _store_results(self, context: AgentContext, results: list[HeartbeatTaskResult]):
        now = self.clock()
        success_rate = sum(1 for r in results if r.success) / len(results)
        self.store.store_state(f"heartbeat_{int(now * 1000)}", "heartbeat_results", {
            "timestamp": now,
            "survival_tier": context.survival.tier.value,
            "balance": context.survival.usdc_balance,
            "tasks": [r.to_dict() for r in results],
            "success_rate": success_rate,
            "total_duration_ms": sum(r.duration_ms for r in results),
        })
        self.store.store_metric("heartbeat_success_rate", success_rate)

    def _pipeline(self) -> BountyPipeline:
        if self.bounties is None:
            raise RuntimeError("Bounty system not configured")
        return self.bounties

    # ============================================================
    # ALWAYS
    # ============================================================

    async def health_check(self) -> dict:
        wallet = self.wallet_loader()
        slot = await self.ledger.get_current_height()
        return {
            "solana_slot": slot,
            "wallet_accessible": True,
            "public_key": wallet.public_key,
            "database": self.store.get_info(),
            "timestamp": self.clock(),
        }

    async def balance_monitor(self) -> dict:
        balance = await self.balance_source()
        self.store.store_metric("balance_usdc", balance.usdc_balance)
        self.store.store_metric("balance_sol", balance.sol_balance)

        last = self.store.get_state("last_balance")
        change = None
        if last:
            usdc_delta = balance.usdc_balance - last["usdc_balance"]
            sol_delta = balance.sol_balance - last["sol_balance"]
            change = {"usdc": usdc_delta, "sol": sol_delta}
            percent = abs(usdc_delta) / last["usdc_balance"] * 100 if last["usdc_balance"] > 0 else 0
            if abs(usdc_delta) > SIGNIFICANT_CHANGE_MICRO_USDC or percent > SIGNIFICANT_CHANGE_PERCENT:
                logger.info(f"Significant balance change detected: {format_usdc(usdc_delta)}")

        self.store.store_state("last_balance", "balance_check", balance.to_dict())
        return {"balance": balance.to_dict(), "change": change}

    async def survival_assessment(self, context: AgentContext) -> dict:
        tier = context.survival.tier
        last_tier = self.store.get_state("last_survival_tier")
        changed = last_tier is not None and last_tier != tier.value

        if changed:
            if tier is SurvivalTier.DEAD:
                logger.critical(f"Survival tier changed: {last_tier} -> {tier.value}")
            else:
                logger.warning(f"Survival tier changed: {last_tier} -> {tier.value}")
            self.store.store_state("survival_tier_change", "tier_change", {
                "from": last_tier,
                "to": tier.value,
                "timestamp": self.clock(),
                "balance": context.survival.usdc_balance,
            })

        self.store.store_state("last_survival_tier", "survival_tier", tier.value)
        self.store.store_metric("survival_tier_numeric", tier.rank)
        thresholds = self.config.survival.thresholds
        return {
            "current_tier": tier.value,
            "changed": changed,
            "balance": context.survival.usdc_balance,
            "thresholds": {
                "normal": thresholds.normal,
                "low_compute": thresholds.low_compute,
                "critical": thresholds.critical,
            },
        }

    async def network_status(self) -> dict:
        slot = await self.ledger.get_current_height()
        epoch = await self.ledger.get_epoch_info()
        healthy = await self.ledger.is_healthy()
        self.store.store_metric("network_slot", slot)
        self.store.store_metric("network_healthy", 1 if healthy else 0)
        return {"slot": slot, "epoch_info": epoch, "is_healthy": healthy, "cluster": self.ledger.cluster}

    # ============================================================
    # NORMAL
    # ============================================================

    async def opportunity_scan(self) -> dict:
        balance = await self.balance_source()
        opportunities = []
        if balance.sol_balance > EXCESS_SOL_LAMPORTS:
            opportunities.append({
                "type": "sol_to_usdc_swap",
                "potential": "Convert excess SOL to USDC for stability",
                "amount": balance.sol_balance,
            })
        return {"opportunities": opportunities}

    def _claimable(self, pipeline: BountyPipeline, found: list[Bounty]) -> list[Bounty]:
        """Stored records of the scraped bounties that are still open."""
        stored = (pipeline.store.get_bounty(b.id) for b in found)
        return [b for b in stored if b is not None and b.status is BountyStatus.OPEN]

    def _claim_first(self, pipeline: BountyPipeline,
                     candidates: list[BountyEvaluation]) -> Optional[BountyEvaluation]:
        for evaluation in candidates:
            try:
                pipeline.claim(evaluation.bounty.id, claimed_at=self.clock())
                return evaluation
            except BountyError as e:
                logger.warning(f"Auto-claim of {evaluation.bounty.id} refused: {e}")
        return None

    async def bounty_scan(self) -> dict:
        pipeline = self._pipeline()
        found = await pipeline.scraper.scrape_all()
        summary = {
            "bounties_found": len(found),
            "sources": {src: sum(1 for b in found if b.source.value == src) for src in ("superteam", "github")},
        }
        if not found:
            return summary

        open_bounties = self._claimable(pipeline, found[:20])
        recommended = [e for e in pipeline.evaluator.evaluate_many(open_bounties) if e.recommended]
        summary["recommended"] = len(recommended)
        active = pipeline.store.get_bounties(status=BountyStatus.CLAIMED)
        if recommended and not active:
            best = self._claim_first(pipeline, recommended)
            if best is not None:
                logger.info(f"Auto-claimed bounty: {best.bounty.title}")
                summary["auto_claimed"] = best.bounty.id
                summary["auto_claimed_title"] = best.bounty.title
        return summary

    async def bounty_monitoring(self) -> dict:
        monitor = self._pipeline().monitor
        results = await monitor.monitor_all(check_payments=False)
        payments = await monitor.check_for_payments()
        changes = [r for r in results if r.changed]
        if changes:
            logger.info(f"{len(changes)} bounty status changes detected")
        if payments:
            logger.info(f"{len(payments)} potential payments detected")
        return {
            "monitored": len(results),
            "status_changes": len(changes),
            "payments_detected": len(payments),
            "total_payment_amount": sum(p.amount for p in payments),
        }

    async def system_backup(self) -> dict:
        dest = self.store.backup()
        return {"message": "System backup completed", "path": str(dest), "timestamp": self.clock()}

    # ============================================================
    # LOW_COMPUTE / CRITICAL
    # ============================================================

    async def essential_monitor(self) -> dict:
        return {"message": "Essential systems operational", "timestamp": self.clock()}

    async def bounty_check(self) -> dict:
        """Counts and a payment check only; status monitoring is skipped to save compute."""
        pipeline = self._pipeline()
        payments = await pipeline.monitor.check_for_payments()
        return {
            "active_bounties": len(pipeline.store.get_bounties(status=BountyStatus.CLAIMED)),
            "submitted_bounties": len(pipeline.store.get_bounties(status=BountyStatus.SUBMITTED)),
            "payments_detected": len(payments),
            "message": "Limited bounty monitoring active",
        }

    async def emergency_bounty_scan(self) -> dict:
        pipeline = self._pipeline()
        logger.warning("Emergency bounty scan - looking for immediate earning opportunities")
        found = await pipeline.scraper.scrape_all()
        candidates = [
            e for e in pipeline.evaluator.evaluate_many(self._claimable(pipeline, found))
            if e.difficulty is Difficulty.EASY and e.roi > 2 and e.estimated_hours <= 4
        ]
        best = self._claim_first(pipeline, candidates)
        if best is None:
            return {"emergency_bounties": 0, "message": "No suitable emergency bounties found"}

        logger.info(f"Emergency auto-claim: {best.bounty.title}")
        return {
            "emergency_bounties": len(candidates),
            "auto_claimed": best.bounty.id,
            "title": best.bounty.title,
            "estimated_hours": best.estimated_hours,
            "roi": best.roi,
            "priority": "CRITICAL_SURVIVAL",
        }

    # ============================================================
    # PERIODIC
    # ============================================================

    async def database_cleanup(self) -> dict:
        return {"removed": self.store.cleanup(CLEANUP_RETENTION_DAYS)}

    async def metrics_report(self) -> dict:
        stats = self.store.get_stats(since=self.clock() - 86400)
        turns = stats["turns"]
        if turns["total_turns"]:
            self.store.store_metric("daily_turns", turns["total_turns"])
            self.store.store_metric("daily_success_rate", turns["successful_turns"] / turns["total_turns"])
        return stats


# ============================================================
# DAEMON
# ============================================================

@dataclass
class HeartbeatState:
    running: bool = False
    beat_count: int = 0
    last_beat: Optional[float] = None
    started_at: Optional[float] = None
    current_tier: SurvivalTier = SurvivalTier.NORMAL
    errors: list = field(default_factory=list)
    in_flight: bool = False


class HeartbeatDaemon:
    """Runs HeartbeatTasks on a tier-dependent cadence."""

    def __init__(self, config: AgentConfig, context_builder: ContextBuilder, tasks: HeartbeatTasks,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.context_builder = context_builder
        self.tasks = tasks
        self.clock = clock
        self.state = HeartbeatState()
        self._stop = asyncio.Event()
        self.task: Optional[asyncio.Task] = None

    def interval_minutes(self) -> int:
        return heartbeat_interval_minutes(self.state.current_tier, self.config.survival.cadence)

    def _record_error(self, message: str):
        self.state.errors.append(message)
        self.state.errors = self.state.errors[-IRON_LAWS.MAX_HEARTBEAT_ERRORS_KEPT:]

    async def perform_heartbeat(self, force: bool = False) -> Optional[list[HeartbeatTaskResult]]:
        """One beat. None when skipped (not running, or a previous beat still in flight)."""
        if not self.state.running and not force:
            return None
        if self.state.in_flight:
            logger.warning("Heartbeat: previous cycle still running - skipping this tick")
            return None

        self.state.in_flight = True
        self.state.beat_count += 1
        self.state.last_beat = self.clock()
        logger.info(f"Heartbeat #{self.state.beat_count}")
        try:
            context = await self.context_builder.build()
            self.state.current_tier = context.survival.tier
            logger.info(f"Status: {context.survival.tier.value.upper()}, "
                        f"Balance: {context.survival.usdc_balance_formatted}")
            results = await self.tasks.execute_heartbeat_tasks(context)
            self.state.errors = []
            return results
        except Exception as e:
            logger.error(f"Heartbeat failed: {e}")
            self._record_error(str(e))
            return None
        finally:
            self.state.in_flight = False

    async def force_heartbeat(self) -> Optional[list[HeartbeatTaskResult]]:
        logger.info("Forcing manual heartbeat")
        return await self.perform_heartbeat(force=True)

    async def _run(self):
        while self.state.running:
            await self.perform_heartbeat()
            minutes = self.interval_minutes()
            logger.info(f"Next heartbeat in {minutes} minutes")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=minutes * 60)
            except asyncio.TimeoutError:
                pass

    def start(self) -> Optional[asyncio.Task]:
        if self.state.running:
            logger.warning("Heartbeat daemon already running")
            return self.task
        logger.info("Starting heartbeat daemon")
        self.state.running = True
        self.state.started_at = self.clock()
        self._stop.clear()
        self.task = asyncio.create_task(self._run())
        return self.task

    def stop(self):
        if not self.state.running:
            return
        logger.info("Stopping heartbeat daemon")
        self.state.running = False
        self._stop.set()

    def emergency_shutdown(self, reason: str):
        logger.critical(f"Emergency heartbeat shutdown: {reason}")
        self.stop()
        self._record_error(f"EMERGENCY_SHUTDOWN: {reason}")

    def is_healthy(self) -> bool:
        if not self.state.running:
            return False
        if len(self.state.errors) > UNHEALTHY_ERROR_COUNT:
            return False
        if self.state.last_beat is not None:
            if self.clock() - self.state.last_beat > self.interval_minutes() * 60 * 2:
                return False
        return True

    def get_status(self) -> dict:
        return {
            "is_running": self.state.running,
            "last_beat": self.state.last_beat,
            "beat_count": self.state.beat_count,
            "current_tier": self.state.current_tier.value,
            "interval_minutes": self.interval_minutes(),
            "errors": list(self.state.errors),
            "healthy": self.is_healthy(),
        }

    def get_stats(self) -> dict:
        errors = self.state.errors
        return {
            "total_beats": self.state.beat_count,
            "uptime_seconds": self.clock() - self.state.started_at if self.state.started_at else 0,
            "error_rate": len(errors) / max(self.state.beat_count, 1) if errors else 0,
            "current_interval_minutes": self.interval_minutes(),
            "last_error": errors[-1] if errors else None,
        }
