"""
Bounty pipeline records.

Amounts are integers in the reward token's smallest unit (micro-USDC for
USDC). Timestamps are unix seconds.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class BountySource(Enum):
    GITHUB = "github"
    SUPERTEAM = "superteam"


class BountyStatus(Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    SUBMITTED = "submitted"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    BountyStatus.OPEN: 0,
    BountyStatus.CLAIMED: 1,
    BountyStatus.SUBMITTED: 2,
    BountyStatus.COMPLETED: 3,
}


class Difficulty(Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


@dataclass(frozen=True)
class Bounty:
    id: str                                  # source-prefixed: github_123, superteam_abc
    source: BountySource
    title: str
    url: str
    description: str = ""
    reward_amount: int = 0
    reward_token: str = "USDC"
    deadline: Optional[float] = None
    skills: tuple = ()
    status: BountyStatus = BountyStatus.OPEN
    discovered_at: float = field(default_factory=time.time)
    claimed_at: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    def with_status(self, status: BountyStatus, claimed_at: Optional[float] = None) -> "Bounty":
        return replace(self, status=status, claimed_at=claimed_at if claimed_at is not None else self.claimed_at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source.value,
            "title": self.title,
            "description": self.description,
            "reward_amount": self.reward_amount,
            "reward_token": self.reward_token,
            "deadline": self.deadline,
            "url": self.url,
            "skills": list(self.skills),
            "status": self.status.value,
            "discovered_at": self.discovered_at,
            "claimed_at": self.claimed_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bounty":
        return cls(
            id=data["id"],
            source=BountySource(data["source"]),
            title=data["title"],
            description=data.get("description") or "",
            reward_amount=int(data.get("reward_amount") or 0),
            reward_token=data.get("reward_token") or "USDC",
            deadline=data.get("deadline"),
            url=data["url"],
            skills=tuple(data.get("skills") or ()),
            status=BountyStatus(data.get("status", "open")),
            discovered_at=data.get("discovered_at") or time.time(),
            claimed_at=data.get("claimed_at"),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class BountyEvaluation:
    bounty: Bounty
    score: float
    difficulty: Difficulty
    estimated_hours: int
    estimated_cost: int
    roi: float
    skills_match: float
    urgency: float
    confidence: float
    reasoning: tuple = ()
    recommended: bool = False

    def to_dict(self) -> dict:
        return {
            "bounty_id": self.bounty.id,
            "title": self.bounty.title,
            "score": round(self.score, 4),
            "difficulty": self.difficulty.value,
            "estimated_hours": self.estimated_hours,
            "estimated_cost": self.estimated_cost,
            "roi": round(self.roi, 4),
            "skills_match": round(self.skills_match, 4),
            "urgency": self.urgency,
            "confidence": round(self.confidence, 4),
            "reasoning": list(self.reasoning),
            "recommended": self.recommended,
        }


# ============================================================
# EXECUTION
# ============================================================

class StepType(Enum):
    RESEARCH = "research"
    SETUP = "setup"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    SUBMISSION = "submission"


class StepStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExecutionStep:
    """Mutable: status moves pending -> in_progress -> completed | failed."""
    id: str
    name: str
    description: str
    type: StepType
    estimated_minutes: int
    dependencies: list = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "estimated_minutes": self.estimated_minutes,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class ExecutionPlan:
    bounty: Bounty
    evaluation: BountyEvaluation
    steps: list
    working_directory: str

    @property
    def estimated_minutes(self) -> int:
        return sum(s.estimated_minutes for s in self.steps)


@dataclass
class ExecutionResult:
    bounty: Bounty
    success: bool
    completed_steps: list = field(default_factory=list)
    total_time: float = 0.0          # seconds, wall clock
    cost: int = 0                    # estimate from elapsed minutes, not billed cost
    learnings: list = field(default_factory=list)
    submission_url: Optional[str] = None
    submission_data: Any = None
    error: Optional[str] = None
    plan: Optional[ExecutionPlan] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "bounty_id": self.bounty.id,
            "success": self.success,
            "submission_url": self.submission_url,
            "completed_steps": [s.to_dict() for s in self.completed_steps],
            "total_time": round(self.total_time, 3),
            "cost": self.cost,
            "learnings": list(self.learnings),
            "error": self.error,
        }


# ============================================================
# MONITORING
# ============================================================

class PaymentConfidence(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class PaymentDetection:
    bounty_id: str                  # "unknown" when no bounty matched
    amount: int
    token: str
    confidence: PaymentConfidence
    transaction_signature: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "bounty_id": self.bounty_id,
            "amount": self.amount,
            "token": self.token,
            "confidence": self.confidence.value,
            "transaction_signature": self.transaction_signature,
            "timestamp": self.timestamp,
        }


@dataclass
class MonitorResult:
    bounty_id: str
    previous_status: BountyStatus
    current_status: BountyStatus
    notes: list = field(default_factory=list)
    last_checked: float = field(default_factory=time.time)

    @property
    def changed(self) -> bool:
        return self.previous_status is not self.current_status

    def to_dict(self) -> dict:
        return {
            "bounty_id": self.bounty_id,
            "previous_status": self.previous_status.value,
            "current_status": self.current_status.value,
            "changed": self.changed,
            "notes": list(self.notes),
            "last_checked": self.last_checked,
        }
