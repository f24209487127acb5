"""Request models and creation-time validation for challenges."""

from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from finquest.core.errors import InvalidRuleError, NotFoundError, PermissionError
from finquest.models.challenge import (
    ChallengeDifficulty,
    ChallengeDraft,
    ChallengeFrequency,
    ChallengeType,
)

FREQUENCY_DAYS: Dict[str, int] = {"daily": 1, "weekly": 7, "monthly": 30}


class CreateChallengeRequest(BaseModel):
    """Manual challenge creation. Rules stay a plain mapping until validated against ``type``."""

    type: ChallengeType
    difficulty: ChallengeDifficulty = "medium"
    frequency: ChallengeFrequency = "weekly"
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    rules: Dict[str, Any] = Field(default_factory=dict)
    reward_points: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class GenerateChallengesRequest(BaseModel):
    count: int = Field(default=3, ge=1, le=10)
    difficulty: Optional[ChallengeDifficulty] = None
    frequency: Optional[ChallengeFrequency] = None


def default_window(frequency: str, start: Optional[datetime], now: datetime) -> Tuple[datetime, datetime]:
    begin = start or now
    return begin, begin + timedelta(days=FREQUENCY_DAYS.get(frequency, 7))


def parse_draft(payload: Mapping[str, Any]) -> ChallengeDraft:
    """Validate a raw draft mapping, translating schema errors into InvalidRuleError."""
    try:
        return ChallengeDraft.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise InvalidRuleError(_summarize(exc)) from exc


def draft_from_request(req: CreateChallengeRequest, *, now: datetime, default_reward: int) -> ChallengeDraft:
    start, end = default_window(req.frequency, req.start_date, now)
    if req.end_date is not None:
        end = req.end_date
    return parse_draft(
        {
            "type": req.type,
            "difficulty": req.difficulty,
            "frequency": req.frequency,
            "title": req.title,
            "description": req.description,
            "rules": req.rules,
            "reward_points": default_reward if req.reward_points is None else req.reward_points,
            "start_date": start,
            "end_date": end,
            "provenance": "manual",
        }
    )


def check_references(user_id: str, draft: ChallengeDraft, goals) -> None:
    """A goal-contribution draft must point at an existing goal owned by the user."""
    if draft.rules.kind != "goal_contribution":
        return
    goal = goals.get(draft.rules.goal_id)
    if goal is None:
        raise NotFoundError(f"Goal {draft.rules.goal_id} not found")
    if goal.user_id != user_id:
        raise PermissionError("Goal belongs to another user")


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid challenge draft"
