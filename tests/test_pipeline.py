import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bounties.evaluator import SKILLS_STATE_ID, BountyEvaluator
from bounties.models import BountyStatus, ExecutionResult
from bounties.pipeline import BountyError, BountyPipeline


def _pipeline(bounty_store, store, executor=None):
    return BountyPipeline(
        store=bounty_store,
        scraper=MagicMock(),
        evaluator=BountyEvaluator(store),
        executor=executor or MagicMock(),
        monitor=MagicMock(),
    )


class TestPipeline:

    def test_initialize_reports_counts(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty()])
        pipeline = _pipeline(bounty_store, store)

        info = pipeline.initialize()

        assert pipeline.initialized
        assert info["bounties"] == 1
        assert info["by_status"]["open"] == 1

    def test_claim_only_open_bounties(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty()])
        pipeline = _pipeline(bounty_store, store)

        claimed = pipeline.claim("github_1")

        assert claimed["reward"] == "100.0 USDC"
        assert bounty_store.get_bounty("github_1").status is BountyStatus.CLAIMED
        with pytest.raises(BountyError):
            pipeline.claim("github_1")
        with pytest.raises(BountyError):
            pipeline.claim("github_missing")

    def test_execute_requires_claim(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty()])
        with pytest.raises(BountyError, match="not claimed"):
            asyncio.run(_pipeline(bounty_store, store).execute("github_1"))

    def test_execute_refuses_unrecommended(self, bounty_store, store, make_bounty):
        bounty_store.store_bounties([make_bounty(title="Redesign consensus architecture",
                                                 description="complex protocol work",
                                                 reward_amount=1_000_000)])
        executor = MagicMock()
        executor.execute = AsyncMock()
        pipeline = _pipeline(bounty_store, store, executor)
        pipeline.claim("github_1")

        with pytest.raises(BountyError) as exc:
            asyncio.run(pipeline.execute("github_1"))

        assert exc.value.evaluation is not None
        assert not exc.value.evaluation.recommended
        executor.execute.assert_not_called()

    def test_successful_execution_submits_and_learns(self, bounty_store, store, make_bounty):
        bounty = make_bounty()
        bounty_store.store_bounties([bounty])
        executor = MagicMock()
        executor.execute = AsyncMock(return_value=ExecutionResult(bounty=bounty, success=True))
        pipeline = _pipeline(bounty_store, store, executor)
        pipeline.claim("github_1")

        result = asyncio.run(pipeline.execute("github_1"))

        assert result.success
        assert bounty_store.get_bounty("github_1").status is BountyStatus.SUBMITTED
        assert store.get_state(SKILLS_STATE_ID) is not None
