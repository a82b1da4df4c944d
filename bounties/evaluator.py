"""
Bounty Evaluator - expected value, feasibility and urgency of a bounty.

    score = difficulty_mult * (0.4*min(roi,5)/5 + 0.3*skills + 0.1*urgency + 0.2*confidence)
    recommended = score > 0.6 and roi > 1.2 and skills > 0.6   (all strict)

The skill vector is the only learned state. It moves up after successful
completions and is persisted as the 'agent_skills' state entry.
"""

import re
import time
import logging
from typing import Callable, Optional

from core.store import StateStore

from .models import Bounty, BountyEvaluation, BountySource, Difficulty

logger = logging.getLogger("roly.evaluator")

COST_PER_HOUR = 10_000_000        # 10 USDC in micro-USDC
LEARNING_RATE = 0.05
SKILLS_STATE_ID = "agent_skills"

DEFAULT_SKILLS = {
    "rust": 0.6,
    "typescript": 0.8,
    "javascript": 0.8,
    "python": 0.7,
    "solana": 0.5,
    "documentation": 0.9,
    "research": 0.8,
    "design": 0.3,
    "web_scraping": 0.9,
    "api_integration": 0.8,
    "testing": 0.6,
}

DIFFICULTY_INDICATORS = {
    Difficulty.EASY: (
        "documentation", "docs", "readme", "comment", "simple",
        "beginner", "starter", "good first issue", "typo", "fix typo",
        "add example", "update readme", "small bug",
    ),
    Difficulty.MEDIUM: (
        "feature", "implement", "api", "integration", "refactor",
        "optimize", "improve", "enhancement", "bug fix", "test",
    ),
    Difficulty.HARD: (
        "architecture", "design", "complex", "performance", "security",
        "cryptography", "consensus", "protocol", "runtime", "vm",
        "compiler", "memory management", "concurrency",
    ),
}

LABEL_BOOSTS = (
    ("good-first-issue", Difficulty.EASY, 3),
    ("help-wanted", Difficulty.MEDIUM, 2),
    ("bug", Difficulty.MEDIUM, 1),
    ("enhancement", Difficulty.MEDIUM, 1),
    ("breaking-change", Difficulty.HARD, 3),
)

BASE_HOURS = {Difficulty.EASY: 2, Difficulty.MEDIUM: 8, Difficulty.HARD: 24}
DIFFICULTY_MULTIPLIER = {Difficulty.EASY: 1.0, Difficulty.MEDIUM: 0.8, Difficulty.HARD: 0.6}

# first match wins; ts/js only as whole words
_SKILL_LOOKUP = (
    (re.compile(r"rust"), "rust"),
    (re.compile(r"typescript|\bts\b"), "typescript"),
    (re.compile(r"javascript|\bjs\b"), "javascript"),
    (re.compile(r"python"), "python"),
    (re.compile(r"solana|web3"), "solana"),
    (re.compile(r"documentation|docs"), "documentation"),
    (re.compile(r"research"), "research"),
    (re.compile(r"design"), "design"),
    (re.compile(r"api|integration"), "api_integration"),
    (re.compile(r"test"), "testing"),
)
UNKNOWN_SKILL_CREDIT = 0.5

_CONTENT_SKILLS = (
    (("documentation", "readme"), "documentation"),
    (("api", "endpoint"), "api_integration"),
    (("scraping", "crawl"), "web_scraping"),
)


def skill_key(tag: str) -> Optional[str]:
    lower = tag.lower()
    for pattern, key in _SKILL_LOOKUP:
        if pattern.search(lower):
            return key
    return None


def _text(bounty: Bounty) -> str:
    return f"{bounty.title} {bounty.description}".lower()


# ============================================================
# PURE SCORING
# ============================================================

def assess_difficulty(bounty: Bounty) -> Difficulty:
    """Keyword votes plus label boosts. Ties go hard > medium > easy; no votes -> easy."""
    text = _text(bounty)
    votes = {d: sum(1 for word in words if word in text) for d, words in DIFFICULTY_INDICATORS.items()}

    if bounty.source is BountySource.GITHUB:
        labels = bounty.metadata.get("labels") or []
        for label, bucket, boost in LABEL_BOOSTS:
            if label in labels:
                votes[bucket] += boost

    top = max(votes.values())
    if top == 0:
        return Difficulty.EASY
    for bucket in (Difficulty.HARD, Difficulty.MEDIUM, Difficulty.EASY):
        if votes[bucket] == top:
            return bucket
    return Difficulty.EASY


def estimate_hours(bounty: Bounty, difficulty: Difficulty) -> int:
    text = _text(bounty)
    hours = float(BASE_HOURS[difficulty])

    if "documentation" in text or "readme" in text:
        hours *= 0.5
    if "test" in text and "fix test" not in text:
        hours *= 1.5
    if "new feature" in text or "implement" in text:
        hours *= 1.3
    if "research" in text or "investigate" in text:
        hours *= 1.2
    if "multiple" in text or "several" in text:
        hours *= 1.4

    return max(1, int(round(hours)))


def calculate_skills_match(bounty: Bounty, skills: dict) -> float:
    declared = 0.0
    for tag in bounty.skills:
        key = skill_key(tag)
        declared += skills.get(key, UNKNOWN_SKILL_CREDIT) if key else UNKNOWN_SKILL_CREDIT
    declared_score = declared / len(bounty.skills) if bounty.skills else 0.0

    text = _text(bounty)
    content_hits = [
        skills.get(key, UNKNOWN_SKILL_CREDIT)
        for words, key in _CONTENT_SKILLS
        if any(w in text for w in words)
    ]

    if content_hits:
        declared_weight = 0.7 if bounty.skills else 0.0
        content_score = sum(content_hits) / len(content_hits)
        return declared_weight * declared_score + (1 - declared_weight) * content_score

    return declared_score if bounty.skills else 0.5


def calculate_urgency(deadline: Optional[float], now: float) -> float:
    if deadline is None:
        return 0.5
    days_left = (deadline - now) / 86400
    if days_left < 0:
        return 0.0
    if days_left < 1:
        return 0.9
    if days_left < 3:
        return 0.8
    if days_left < 7:
        return 0.7
    if days_left < 14:
        return 0.6
    if days_left < 30:
        return 0.5
    return 0.4


def calculate_confidence(bounty: Bounty, skills_match: float, now: float) -> float:
    confidence = 0.5 + skills_match * 0.3
    if len(bounty.description) > 200:
        confidence += 0.1
    if bounty.source is BountySource.GITHUB:
        confidence += 0.1
    if bounty.reward_amount > 0:
        confidence += 0.1
    if (now - bounty.discovered_at) < 3600:
        confidence -= 0.1
    return max(0.0, min(1.0, confidence))


def calculate_roi(reward: int, cost: int) -> float:
    if reward <= 0 or cost <= 0:
        return 0.0
    return reward / cost


def calculate_overall_score(roi: float, skills_match: float, urgency: float,
                            confidence: float, difficulty: Difficulty) -> float:
    normalized_roi = min(roi, 5) / 5
    score = (
        normalized_roi * 0.4
        + skills_match * 0.3
        + urgency * 0.1
        + confidence * 0.2
    ) * DIFFICULTY_MULTIPLIER[difficulty]
    return max(0.0, min(1.0, score))


def is_recommended(score: float, roi: float, skills_match: float) -> bool:
    return score > 0.6 and roi > 1.2 and skills_match > 0.6


def _difficulty_reason(bounty: Bounty, difficulty: Difficulty) -> str:
    text = _text(bounty)
    if difficulty is Difficulty.EASY:
        if "documentation" in text:
            return "Documentation task"
        if "typo" in text:
            return "Simple text fix"
        if "readme" in text:
            return "README update"
        return "Simple task based on description"
    if difficulty is Difficulty.MEDIUM:
        if "feature" in text:
            return "Feature implementation"
        if "api" in text:
            return "API integration work"
        if "bug" in text:
            return "Bug fix required"
        return "Moderate complexity task"
    if "architecture" in text:
        return "Architectural changes needed"
    if "performance" in text:
        return "Performance optimization"
    if "security" in text:
        return "Security-related work"
    return "Complex technical task"


def build_reasoning(bounty: Bounty, difficulty: Difficulty, skills_match: float,
                    roi: float, now: float) -> list[str]:
    lines = [f"Difficulty: {difficulty.value} - {_difficulty_reason(bounty, difficulty)}"]

    pct = round(skills_match * 100)
    if skills_match >= 0.8:
        lines.append(f"Skills: Excellent match ({pct}%)")
    elif skills_match >= 0.6:
        lines.append(f"Skills: Good match ({pct}%)")
    elif skills_match >= 0.4:
        lines.append(f"Skills: Moderate match ({pct}%)")
    else:
        lines.append(f"Skills: Poor match ({pct}%) - may need learning")

    if roi >= 3:
        lines.append(f"ROI: Excellent ({roi:.1f}x return)")
    elif roi >= 2:
        lines.append(f"ROI: Good ({roi:.1f}x return)")
    elif roi >= 1:
        lines.append(f"ROI: Profitable ({roi:.1f}x return)")
    elif bounty.reward_amount == 0:
        lines.append("ROI: Unknown reward amount - could be valuable for reputation")
    else:
        lines.append(f"ROI: Unprofitable ({roi:.1f}x return)")

    if bounty.deadline is not None:
        days_left = (bounty.deadline - now) / 86400
        if days_left < 1:
            lines.append(f"Deadline: URGENT - expires in {round(days_left * 24)} hours")
        elif days_left < 7:
            lines.append(f"Deadline: Soon - {round(days_left)} days remaining")
        else:
            lines.append(f"Deadline: {round(days_left)} days remaining")

    if bounty.source is BountySource.GITHUB:
        lines.append("Source: GitHub - structured, likely legitimate")
    elif bounty.source is BountySource.SUPERTEAM:
        lines.append("Source: Superteam Earn - established bounty platform")
    return lines


# ============================================================
# EVALUATOR
# ============================================================

class BountyEvaluator:

    def __init__(self, store: Optional[StateStore] = None, cost_per_hour: int = COST_PER_HOUR,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.cost_per_hour = cost_per_hour
        self.clock = clock
        self.skills: dict[str, float] = dict(DEFAULT_SKILLS)

    def load_skills(self):
        """Merge persisted skills over the defaults."""
        if self.store is None:
            return
        saved = self.store.get_state(SKILLS_STATE_ID)
        if isinstance(saved, dict):
            self.skills.update({k: float(v) for k, v in saved.items()})
            logger.info(f"Loaded {len(saved)} learned skill levels")

    def evaluate(self, bounty: Bounty) -> BountyEvaluation:
        now = self.clock()
        difficulty = assess_difficulty(bounty)
        hours = estimate_hours(bounty, difficulty)
        cost = hours * self.cost_per_hour
        skills_match = calculate_skills_match(bounty, self.skills)
        urgency = calculate_urgency(bounty.deadline, now)
        confidence = calculate_confidence(bounty, skills_match, now)
        roi = calculate_roi(bounty.reward_amount, cost)
        score = calculate_overall_score(roi, skills_match, urgency, confidence, difficulty)

        return BountyEvaluation(
            bounty=bounty,
            score=score,
            difficulty=difficulty,
            estimated_hours=hours,
            estimated_cost=cost,
            roi=roi,
            skills_match=skills_match,
            urgency=urgency,
            confidence=confidence,
            reasoning=tuple(build_reasoning(bounty, difficulty, skills_match, roi, now)),
            recommended=is_recommended(score, roi, skills_match),
        )

    def evaluate_many(self, bounties: list[Bounty]) -> list[BountyEvaluation]:
        """Descending by score. A bounty that fails to evaluate is logged and dropped."""
        evaluations = []
        for bounty in bounties:
            try:
                evaluations.append(self.evaluate(bounty))
            except Exception as e:
                logger.warning(f"Error evaluating bounty {bounty.id}: {e}")
        evaluations.sort(key=lambda e: e.score, reverse=True)
        return evaluations

    def get_top_bounties(self, bounties: list[Bounty], limit: int = 5) -> list[BountyEvaluation]:
        return [e for e in self.evaluate_many(bounties) if e.recommended][:limit]

    def update_skills_from_experience(self, bounty: Bounty, success: bool):
        """Nudge each declared skill up by LEARNING_RATE. Failures never move skills."""
        if not success:
            return
        changed = []
        for tag in bounty.skills:
            key = skill_key(tag)
            if key is None:
                continue
            self.skills[key] = min(1.0, self.skills.get(key, UNKNOWN_SKILL_CREDIT) + LEARNING_RATE)
            changed.append(key)
        if self.store is not None:
            self.store.store_state(SKILLS_STATE_ID, "skills", dict(self.skills))
        if changed:
            logger.info(f"Skills improved from {bounty.id}: {', '.join(changed)}")
