"""
Bounty Scraper - fetches open listings and converts them to Bounty records.

Sources:
    GitHub       issue search across Solana ecosystem orgs x bounty labels
    Superteam    earn.superteam.fun listings API

Each fetch is isolated: one failing source or query is logged and skipped.
"""

import re
import time
import asyncio
import logging
from datetime import datetime
from typing import Optional

import aiohttp

from .models import Bounty, BountySource
from .store import BountyStore

logger = logging.getLogger("roly.scraper")

USER_AGENT = "Roly-Agent/1.0"
GITHUB_SEARCH_URL = "https://api.github.com/search/issues"
SUPERTEAM_LISTINGS_URL = "https://earn.superteam.fun/api/listings/"

SOLANA_ORGS = (
    "solana-labs",
    "helius-labs",
    "jup-ag",
    "metaplex-foundation",
    "coral-xyz",
    "anza-xyz",
)

BOUNTY_LABELS = (
    "bounty",
    "reward",
    "paid",
    "good-first-issue",
    "bug-bounty",
    "help-wanted",
)

_AMOUNT = r"(\d+(?:,\d{3})*(?:\.\d{2})?)"
_REWARD_PATTERNS = [
    re.compile(r"\$" + _AMOUNT),
    re.compile(_AMOUNT + r" ?usdc"),
    re.compile(r"reward[:\s]+\$?" + _AMOUNT),
    re.compile(r"bounty[:\s]+\$?" + _AMOUNT),
]

# USD estimate when the issue text names no amount
_LABEL_REWARD_DEFAULTS = (
    ("good-first-issue", 50),
    ("help-wanted", 100),
    ("bounty", 250),
    ("bug-bounty", 500),
)

_LABEL_SKILLS = (
    ("rust", "Rust"),
    ("typescript", "TypeScript"),
    ("javascript", "JavaScript"),
    ("python", "Python"),
    ("solana", "Solana"),
    ("web3", "Web3"),
    ("smart-contract", "Smart Contracts"),
    ("frontend", "Frontend"),
    ("backend", "Backend"),
    ("docs", "Documentation"),
    ("documentation", "Documentation"),
)

_TEXT_SKILLS = (
    (re.compile(r"\brust\b"), "Rust"),
    (re.compile(r"\b(typescript|ts)\b"), "TypeScript"),
    (re.compile(r"\breact\b"), "React"),
    (re.compile(r"\b(solana|web3)\b"), "Solana"),
    (re.compile(r"\b(documentation|docs)\b"), "Documentation"),
)

MICRO_PER_USD = 1_000_000


# ============================================================
# CONVERTERS
# ============================================================

def extract_github_reward(issue: dict) -> int:
    """Micro-USDC reward named in the issue, else a label-based estimate, else 0."""
    text = f"{issue.get('title', '')} {issue.get('body') or ''}".lower()
    for pattern in _REWARD_PATTERNS:
        for match in pattern.finditer(text):
            amount = float(match.group(1).replace(",", ""))
            if 0 < amount < 100_000:
                return int(amount * MICRO_PER_USD)

    labels = [l["name"].lower() for l in issue.get("labels", [])]
    for label, usd in _LABEL_REWARD_DEFAULTS:
        if label in labels:
            return usd * MICRO_PER_USD
    return 0


def extract_github_skills(issue: dict) -> list[str]:
    skills: list[str] = []
    text = f"{issue.get('title', '')} {issue.get('body') or ''}".lower()

    def add(skill: str):
        if skill not in skills:
            skills.append(skill)

    for label in (l["name"].lower() for l in issue.get("labels", [])):
        for key, skill in _LABEL_SKILLS:
            if key in label:
                add(skill)
    for pattern, skill in _TEXT_SKILLS:
        if pattern.search(text):
            add(skill)
    return skills


def is_valid_github_issue(issue: dict) -> bool:
    url = issue.get("html_url") or ""
    return issue.get("state") == "open" and bool(url) and "/pull/" not in url


def github_issue_to_bounty(issue: dict) -> Bounty:
    return Bounty(
        id=f"github_{issue['id']}",
        source=BountySource.GITHUB,
        title=issue["title"],
        description=issue.get("body") or "",
        reward_amount=extract_github_reward(issue),
        reward_token="USDC",
        url=issue["html_url"],
        skills=tuple(extract_github_skills(issue)),
        metadata={
            "repository": issue.get("repository_url", "").replace("https://api.github.com/repos/", ""),
            "number": issue.get("number"),
            "author": (issue.get("user") or {}).get("login"),
            "labels": [l["name"] for l in issue.get("labels", [])],
            "created_at": issue.get("created_at"),
            "updated_at": issue.get("updated_at"),
        },
    )


def _parse_deadline(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        logger.debug(f"Unparseable deadline {raw!r}")
        return None


def is_valid_superteam_listing(listing: dict) -> bool:
    return (
        bool(listing.get("id"))
        and bool(listing.get("title"))
        and listing.get("type") in ("bounty", "project")
        and listing.get("status") == "open"
    )


def superteam_listing_to_bounty(listing: dict) -> Bounty:
    rewards = listing.get("rewards") or []
    usdc = next((r for r in rewards if r.get("token") in ("USDC", "USD")), None)
    amount = usdc.get("amount", 0) if usdc else 0
    return Bounty(
        id=f"superteam_{listing['id']}",
        source=BountySource.SUPERTEAM,
        title=listing["title"],
        description=listing.get("description") or "",
        reward_amount=int(amount * MICRO_PER_USD),
        reward_token="USDC",
        deadline=_parse_deadline(listing.get("deadline")),
        url=listing.get("url") or f"https://earn.superteam.fun/bounties/{listing['id']}",
        skills=tuple(listing.get("skills") or ()),
        metadata={"original_type": listing.get("type"), "original_rewards": rewards},
    )


# ============================================================
# SCRAPER
# ============================================================

class BountyScraper:

    def __init__(self, store: BountyStore, github_token: str = "", timeout_seconds: int = 10,
                 request_delay: float = 0.1):
        self.store = store
        self.github_token = github_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.request_delay = request_delay
        self.last_scrape_at: Optional[float] = None

    def github_headers(self) -> dict:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/vnd.github.v3+json"}
        if self.github_token:
            headers["Authorization"] = f"token {self.github_token}"
        return headers

    async def scrape_all(self) -> list[Bounty]:
        bounties: list[Bounty] = []
        for name, fetch in (("Superteam Earn", self.scrape_superteam), ("GitHub", self.scrape_github)):
            try:
                found = await fetch()
                bounties.extend(found)
                logger.info(f"Found {len(found)} bounties from {name}")
            except Exception as e:
                logger.warning(f"Failed to scrape {name}: {e}")

        self.store.store_bounties(bounties)
        self.last_scrape_at = time.time()
        return bounties

    async def scrape_superteam(self) -> list[Bounty]:
        params = {"status": "open", "type": "bounty"}
        async with aiohttp.ClientSession(timeout=self._timeout, headers={"User-Agent": USER_AGENT}) as session:
            async with session.get(SUPERTEAM_LISTINGS_URL, params=params) as resp:
                if resp.status != 200:
                    logger.warning(f"Superteam listings returned HTTP {resp.status}")
                    return []
                data = await resp.json(content_type=None)

        if isinstance(data, dict):
            listings = (data.get("data") or {}).get("listings") or data.get("listings") or []
        else:
            listings = data or []

        bounties = []
        for listing in listings:
            if isinstance(listing, dict) and is_valid_superteam_listing(listing):
                bounties.append(superteam_listing_to_bounty(listing))
        return bounties

    async def scrape_github(self) -> list[Bounty]:
        found: dict[str, Bounty] = {}
        async with aiohttp.ClientSession(timeout=self._timeout, headers=self.github_headers()) as session:
            for org in SOLANA_ORGS:
                for label in BOUNTY_LABELS:
                    params = {
                        "q": f'label:"{label}" org:"{org}" state:open',
                        "sort": "updated",
                        "order": "desc",
                        "per_page": "30",
                    }
                    try:
                        async with session.get(GITHUB_SEARCH_URL, params=params) as resp:
                            if resp.status != 200:
                                logger.debug(f"GitHub search {org}/{label}: HTTP {resp.status}")
                                continue
                            data = await resp.json(content_type=None)
                        for issue in data.get("items", []):
                            if is_valid_github_issue(issue):
                                bounty = github_issue_to_bounty(issue)
                                found.setdefault(bounty.id, bounty)
                    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                        logger.warning(f"GitHub search failed for {org}/{label}: {e}")
                    await asyncio.sleep(self.request_delay)
        return list(found.values())
