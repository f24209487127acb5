"""Challenge data models.

A challenge is a time-boxed behavioral goal tied to a reward. Rules are a
tagged variant keyed by ``kind`` (always equal to the challenge ``type``), so
every rules object carries exactly the fields its type needs.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional, Tuple, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from finquest.core.errors import InvalidTransitionError


ChallengeType = Literal[
    "savings",
    "spending_limit",
    "category_ban",
    "streak",
    "goal_contribution",
    "income_percentage",
]
ChallengeStatus = Literal["active", "completed", "failed", "expired"]
ChallengeDifficulty = Literal["easy", "medium", "hard"]
ChallengeFrequency = Literal["daily", "weekly", "monthly"]
Provenance = Literal["manual", "generated", "fallback"]
Verdict = Literal["continue", "complete", "fail"]

CHALLENGE_TYPES: Tuple[str, ...] = ChallengeType.__args__
TERMINAL_STATUSES = frozenset({"completed", "failed", "expired"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(timezone.utc) if value is not None else None


def normalize_category(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().lower()


# ---------------------------------------------------------------------------
# Rules (one structure per challenge type)
# ---------------------------------------------------------------------------


class _Rules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SavingsRules(_Rules):
    kind: Literal["savings"] = "savings"
    target_amount: int = Field(gt=0)


class SpendingLimitRules(_Rules):
    kind: Literal["spending_limit"] = "spending_limit"
    target_amount: int = Field(gt=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @field_validator("category")
    @classmethod
    def normalize_category_field(cls, value):
        return normalize_category(value)


class CategoryBanRules(_Rules):
    kind: Literal["category_ban"] = "category_ban"
    category: str = Field(min_length=1, max_length=100)

    @field_validator("category")
    @classmethod
    def normalize_category_field(cls, value):
        return normalize_category(value)


class StreakRules(_Rules):
    kind: Literal["streak"] = "streak"
    category: str = Field(min_length=1, max_length=100)
    streak_days: int = Field(ge=1)

    @field_validator("category")
    @classmethod
    def normalize_category_field(cls, value):
        return normalize_category(value)


class GoalContributionRules(_Rules):
    kind: Literal["goal_contribution"] = "goal_contribution"
    goal_id: str = Field(min_length=1)
    target_amount: int = Field(gt=0)


class IncomePercentageRules(_Rules):
    kind: Literal["income_percentage"] = "income_percentage"
    percentage: float = Field(gt=0, le=100)
    target_amount: int = Field(gt=0)


ChallengeRules = Annotated[
    Union[
        SavingsRules,
        SpendingLimitRules,
        CategoryBanRules,
        StreakRules,
        GoalContributionRules,
        IncomePercentageRules,
    ],
    Field(discriminator="kind"),
]

# Field names each rules variant accepts, besides ``kind``.
RULE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "savings": ("target_amount",),
    "spending_limit": ("target_amount", "category"),
    "category_ban": ("category",),
    "streak": ("category", "streak_days"),
    "goal_contribution": ("goal_id", "target_amount"),
    "income_percentage": ("percentage", "target_amount"),
}


def _tag_rules(data: Any) -> Any:
    """Stamp rules with the challenge type so the discriminated union resolves."""
    if isinstance(data, dict):
        rules = data.get("rules")
        ctype = data.get("type")
        if isinstance(rules, dict) and "kind" not in rules and isinstance(ctype, str):
            data = {**data, "rules": {**rules, "kind": ctype}}
    return data


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class ChallengeProgress(BaseModel):
    """Evaluated progress plus the bookkeeping that makes it resumable."""

    model_config = ConfigDict(frozen=True)

    current_amount: int = 0
    current_streak: int = 0
    last_checked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    counted_transaction_ids: Tuple[str, ...] = ()
    last_activity_at: Optional[datetime] = None

    def same_state(self, other: "ChallengeProgress") -> bool:
        """Equality ignoring ``last_checked_at``, which moves on every check."""
        skip = {"last_checked_at"}
        return self.model_dump(exclude=skip) == other.model_dump(exclude=skip)


# ---------------------------------------------------------------------------
# Drafts and challenges
# ---------------------------------------------------------------------------


class ChallengeDraft(BaseModel):
    """Everything needed to create a challenge; validated before persistence."""

    model_config = ConfigDict(frozen=True)

    type: ChallengeType
    difficulty: ChallengeDifficulty = "medium"
    frequency: ChallengeFrequency = "weekly"
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    rules: ChallengeRules
    reward_points: int = Field(gt=0)
    start_date: datetime
    end_date: datetime
    provenance: Provenance = "manual"
    generation_context: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def tag_rules_kind(cls, data: Any) -> Any:
        return _tag_rules(data)

    @field_validator("start_date", "end_date")
    @classmethod
    def check_timezone(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @model_validator(mode="after")
    def check_consistency(self) -> "ChallengeDraft":
        if self.rules.kind != self.type:
            raise ValueError(f"rules of kind {self.rules.kind!r} do not match type {self.type!r}")
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


class Challenge(BaseModel):
    """Persisted challenge. Mutated only through ``transition``/``with_progress``."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    type: ChallengeType
    difficulty: ChallengeDifficulty
    frequency: ChallengeFrequency
    title: str
    description: str = ""
    rules: ChallengeRules
    reward_points: int = Field(gt=0)
    start_date: datetime
    end_date: datetime
    status: ChallengeStatus = "active"
    progress: ChallengeProgress = Field(default_factory=ChallengeProgress)
    provenance: Provenance = "manual"
    generation_context: Optional[str] = None
    reward_issued: bool = False
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def tag_rules_kind(cls, data: Any) -> Any:
        return _tag_rules(data)

    @classmethod
    def from_draft(cls, draft: ChallengeDraft, *, challenge_id: str, user_id: str, now: datetime) -> "Challenge":
        return cls(
            id=challenge_id,
            user_id=user_id,
            type=draft.type,
            difficulty=draft.difficulty,
            frequency=draft.frequency,
            title=draft.title,
            description=draft.description,
            rules=draft.rules,
            reward_points=draft.reward_points,
            start_date=draft.start_date,
            end_date=draft.end_date,
            provenance=draft.provenance,
            generation_context=draft.generation_context,
            progress=ChallengeProgress(last_checked_at=now),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_progress(self, progress: ChallengeProgress, now: datetime) -> "Challenge":
        if self.is_terminal:
            raise InvalidTransitionError(f"challenge {self.id} is {self.status}; progress is frozen")
        return self.model_copy(update={"progress": progress, "updated_at": now})

    def transition(self, status: ChallengeStatus, progress: ChallengeProgress, now: datetime) -> "Challenge":
        """Move ACTIVE to a terminal status. Anything else is a programming error."""
        if self.status != "active" or status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"illegal transition {self.status} -> {status} for challenge {self.id}")
        return self.model_copy(update={"status": status, "progress": progress, "updated_at": now})


@dataclass(frozen=True)
class ChallengeStats:
    total: int
    active: int
    completed: int
    failed: int
    expired: int
    total_points_earned: int
    success_rate: float
    current_streak: int = 0
    best_streak: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
