import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from bounties.models import BountySource
from bounties.scraper import (
    BountyScraper, extract_github_reward, extract_github_skills, github_issue_to_bounty,
    is_valid_github_issue, is_valid_superteam_listing, superteam_listing_to_bounty,
)


def _issue(**overrides):
    issue = {
        "id": 42,
        "number": 7,
        "title": "Improve TS types",
        "body": "See docs for details.",
        "state": "open",
        "html_url": "https://github.com/jup-ag/sdk/issues/7",
        "repository_url": "https://api.github.com/repos/jup-ag/sdk",
        "user": {"login": "someone"},
        "labels": [{"name": "rust-lang"}],
    }
    issue.update(overrides)
    return issue


class TestGithubConversion:

    def test_reward_from_text(self):
        assert extract_github_reward(_issue(body="Fix it, reward: $150")) == 150_000_000
        assert extract_github_reward(_issue(body="Pays 1,000 USDC")) == 1_000_000_000

    def test_implausible_amount_falls_back_to_labels(self):
        issue = _issue(body="TVL is $250,000", labels=[{"name": "Bounty"}])
        assert extract_github_reward(issue) == 250_000_000

    def test_no_reward_signal(self):
        assert extract_github_reward(_issue(labels=[])) == 0

    def test_skills_from_labels_then_text(self):
        assert extract_github_skills(_issue()) == ["Rust", "TypeScript", "Documentation"]

    def test_validity(self):
        assert is_valid_github_issue(_issue())
        assert not is_valid_github_issue(_issue(state="closed"))
        assert not is_valid_github_issue(_issue(html_url="https://github.com/jup-ag/sdk/pull/7"))

    def test_to_bounty(self):
        bounty = github_issue_to_bounty(_issue())
        assert bounty.id == "github_42"
        assert bounty.source is BountySource.GITHUB
        assert bounty.metadata["repository"] == "jup-ag/sdk"
        assert bounty.metadata["labels"] == ["rust-lang"]


class TestSuperteamConversion:

    LISTING = {
        "id": "abc",
        "title": "Write a thread",
        "type": "bounty",
        "status": "open",
        "rewards": [{"token": "USDC", "amount": 250.5}],
        "deadline": "2026-01-01T00:00:00Z",
        "skills": ["Writing"],
    }

    def test_to_bounty(self):
        bounty = superteam_listing_to_bounty(self.LISTING)
        assert bounty.id == "superteam_abc"
        assert bounty.reward_amount == 250_500_000
        assert bounty.deadline == datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()
        assert bounty.url == "https://earn.superteam.fun/bounties/abc"
        assert bounty.skills == ("Writing",)

    def test_bad_deadline_is_dropped(self):
        bounty = superteam_listing_to_bounty({**self.LISTING, "deadline": "soon"})
        assert bounty.deadline is None

    def test_validity(self):
        assert is_valid_superteam_listing(self.LISTING)
        assert not is_valid_superteam_listing({**self.LISTING, "status": "closed"})
        assert not is_valid_superteam_listing({**self.LISTING, "type": "grant"})


class TestScraper:

    def test_failing_source_is_isolated(self, bounty_store, make_bounty):
        scraper = BountyScraper(bounty_store)
        scraper.scrape_superteam = AsyncMock(side_effect=RuntimeError("HTTP 500"))
        scraper.scrape_github = AsyncMock(return_value=[make_bounty()])

        found = asyncio.run(scraper.scrape_all())

        assert [b.id for b in found] == ["github_1"]
        assert bounty_store.get_bounty("github_1") is not None
        assert scraper.last_scrape_at is not None

    def test_token_header(self, bounty_store):
        assert "Authorization" not in BountyScraper(bounty_store).github_headers()
        headers = BountyScraper(bounty_store, github_token="abc").github_headers()
        assert headers["Authorization"] == "token abc"
