import asyncio
from unittest.mock import MagicMock

from bounties.evaluator import BountyEvaluator
from bounties.executor import BountyExecutor, StepError, extract_submission_url, generate_learnings
from bounties.models import BountySource, StepStatus


def _ok(output):
    async def handler(step, plan):
        return output
    return handler


def _fail(message):
    async def handler(step, plan):
        raise StepError(message)
    return handler


def _executor(store, tmp_path, **handlers):
    return BountyExecutor(store, data_dir=str(tmp_path / "work"), handlers=handlers)


class TestPlan:

    def test_github_plan_order(self, store, tmp_path, make_bounty):
        bounty = make_bounty()
        plan = _executor(store, tmp_path).create_plan(bounty, BountyEvaluator().evaluate(bounty))
        assert [s.id for s in plan.steps] == [
            "research", "clone_repo", "analyze_codebase", "create_branch",
            "implement_solution", "run_tests", "create_pr",
        ]
        assert all(s.status is StepStatus.PENDING for s in plan.steps)

    def test_superteam_plan_minimums(self, store, tmp_path, make_bounty):
        bounty = make_bounty(id="superteam_1", source=BountySource.SUPERTEAM)
        plan = _executor(store, tmp_path).create_plan(bounty, BountyEvaluator().evaluate(bounty))
        assert [s.id for s in plan.steps] == ["research", "download_brief", "execute_work", "prepare_submission"]
        assert plan.steps[0].estimated_minutes == 12
        assert plan.steps[2].estimated_minutes == 60


class TestExecute:

    def test_halts_at_first_failure(self, store, tmp_path, make_bounty):
        bounty = make_bounty()
        executor = _executor(
            store, tmp_path,
            research=_ok("researched"),
            clone_repo=_ok("cloned"),
            analyze_codebase=_fail("Repository not found"),
        )

        result = asyncio.run(executor.execute(bounty, BountyEvaluator().evaluate(bounty)))

        assert not result.success
        assert result.error == "Repository not found"
        assert [s.id for s in result.completed_steps] == ["research", "clone_repo", "analyze_codebase"]
        assert [s.status for s in result.plan.steps[3:]] == [StepStatus.PENDING] * 4
        assert "Failed at step: Analyze Codebase" in result.learnings
        assert store.get_metrics("bounty_execution_success")[0]["value"] == 0.0

    def test_superteam_success_records_submission(self, store, tmp_path, make_bounty):
        bounty = make_bounty(id="superteam_1", source=BountySource.SUPERTEAM)
        executor = _executor(
            store, tmp_path,
            research=_ok("researched"),
            download_brief=_ok("brief"),
            execute_work=_ok("done"),
            prepare_submission=_ok("Submitted at https://earn.superteam.fun/s/1 for review"),
        )

        result = asyncio.run(executor.execute(bounty, BountyEvaluator().evaluate(bounty)))

        assert result.success
        assert result.submission_url == "https://earn.superteam.fun/s/1"
        assert all(s.status is StepStatus.COMPLETED for s in result.completed_steps)
        assert result.cost >= 0
        saved = store.get_state("bounty_execution_superteam_1")
        assert saved["success"] is True
        assert saved["completed_steps"] == 4

    def test_crash_becomes_failed_result(self, store, tmp_path, make_bounty):
        bounty = make_bounty()
        executor = _executor(store, tmp_path)
        executor.create_plan = MagicMock(side_effect=OSError("disk full"))

        result = asyncio.run(executor.execute(bounty, BountyEvaluator().evaluate(bounty)))

        assert not result.success
        assert result.error == "disk full"
        assert result.plan is None


class TestHelpers:

    def test_extract_submission_url(self):
        assert extract_submission_url({"url": "https://x"}) == "https://x"
        assert extract_submission_url("no link") is None

    def test_learnings_on_success(self, make_bounty):
        learnings = generate_learnings(make_bounty(), [], True)
        assert learnings == ["Successfully completed github bounty", "Bounty type: TypeScript"]
