"""Shared fakes and builders for challenge engine tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from finquest.core.errors import RewardIssuanceError
from finquest.features.challenges.generator import fallback_drafts
from finquest.features.rewards.ledger import InMemoryPointsLedger
from finquest.models.challenge import Challenge, ChallengeProgress
from finquest.models.transaction import Transaction

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_challenge(
    type: str,
    rules: dict,
    *,
    challenge_id: str = "c1",
    user_id: str = "alice",
    start: datetime = T0,
    days: int = 7,
    reward_points: int = 50,
    status: str = "active",
    progress: Optional[ChallengeProgress] = None,
) -> Challenge:
    return Challenge(
        id=challenge_id,
        user_id=user_id,
        type=type,
        difficulty="medium",
        frequency="weekly",
        title=f"{type} challenge",
        rules=rules,
        reward_points=reward_points,
        start_date=start,
        end_date=start + timedelta(days=days),
        status=status,
        progress=progress or ChallengeProgress(),
        created_at=start,
        updated_at=start,
    )


def txn(
    txn_id: str,
    amount: int,
    type: str = "expense",
    *,
    at: datetime,
    category: str = "other",
    user_id: str = "alice",
) -> Transaction:
    return Transaction(id=txn_id, user_id=user_id, amount=amount, type=type, category=category, occurred_at=at)


class FakeContentModel:
    """Returns canned text (or raises) and records prompts."""

    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.prompts: List[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.text


class RecordingGenerator:
    """Generator stand-in that records how many drafts were requested."""

    def __init__(self):
        self.requests: List[int] = []

    def generate(self, context, count, difficulty_hint=None, frequency_hint=None, now=None):
        self.requests.append(count)
        return fallback_drafts(context, count, now=now)


class CountingLedger(InMemoryPointsLedger):
    """In-memory ledger that counts award calls and can fail the first N."""

    def __init__(self, fail_times: int = 0):
        super().__init__()
        self.calls: List[str] = []
        self.fail_times = fail_times

    def award_points(self, user_id, amount, reason, idempotency_key):
        self.calls.append(idempotency_key)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RewardIssuanceError("ledger unavailable")
        return super().award_points(user_id, amount, reason, idempotency_key)
