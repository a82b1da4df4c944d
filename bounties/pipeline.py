"""
Bounty pipeline - scraper, evaluator, executor and monitor over one store.

Shared by the agent's bounty tools and the heartbeat tasks so both drive the
same claim/execute flow.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional

from .evaluator import BountyEvaluator
from .executor import BountyExecutor
from .models import BountyEvaluation, BountyStatus, ExecutionResult
from .monitor import BountyMonitor
from .scraper import BountyScraper
from .store import BountyStore

logger = logging.getLogger("roly.bounties")


class BountyError(Exception):
    """Domain failure in the claim/execute flow (unknown id, wrong status, not recommended)."""

    def __init__(self, message: str, evaluation: Optional[BountyEvaluation] = None):
        super().__init__(message)
        self.evaluation = evaluation


@dataclass
class BountyPipeline:
    store: BountyStore
    scraper: BountyScraper
    evaluator: BountyEvaluator
    executor: BountyExecutor
    monitor: BountyMonitor
    initialized: bool = False

    def initialize(self) -> dict:
        self.evaluator.load_skills()
        self.initialized = True
        counts = self.store.count_by_status()
        logger.info(f"Bounty system initialized: {len(self.store)} bounties known {counts}")
        return {"bounties": len(self.store), "by_status": counts, "skills": dict(self.evaluator.skills)}

    def evaluate_open(self, limit: int = 50) -> list[BountyEvaluation]:
        return self.evaluator.evaluate_many(self.store.get_bounties(status=BountyStatus.OPEN, limit=limit))

    def claim(self, bounty_id: str, claimed_at: Optional[float] = None) -> dict:
        bounty = self.store.get_bounty(bounty_id)
        if bounty is None or bounty.status is not BountyStatus.OPEN:
            raise BountyError("Bounty not found or not available")
        claimed_at = claimed_at or time.time()
        if not self.store.update_status(bounty_id, BountyStatus.CLAIMED, claimed_at):
            raise BountyError("Bounty not found or not available")
        return {
            "bounty_id": bounty_id,
            "title": bounty.title,
            "source": bounty.source.value,
            "reward": f"{bounty.reward_amount / 1_000_000} {bounty.reward_token}",
            "claimed_at": claimed_at,
            "next_step": "Use execute_bounty to begin work",
        }

    async def execute(self, bounty_id: str) -> ExecutionResult:
        """Run a claimed, recommended bounty. On success: submitted + skill update."""
        bounty = self.store.get_bounty(bounty_id)
        if bounty is None or bounty.status is not BountyStatus.CLAIMED:
            raise BountyError("Bounty not found or not claimed")

        evaluation = self.evaluator.evaluate(bounty)
        if not evaluation.recommended:
            raise BountyError("Bounty evaluation suggests not to proceed", evaluation)

        logger.info(f"Starting bounty execution: {bounty.title}")
        result = await self.executor.execute(bounty, evaluation)
        if result.success:
            self.store.update_status(bounty_id, BountyStatus.SUBMITTED)
            self.evaluator.update_skills_from_experience(bounty, True)
        return result
