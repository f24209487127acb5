from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from finquest.core.config import Settings, settings
from finquest.core.errors import NotFoundError, PermissionError
from finquest.core.logging import log_event
from finquest.core.tracing import start_span
from finquest.features.challenges.generator import ChallengeGenerator, GroqContentModel, UserContext
from finquest.features.challenges.lifecycle import LifecycleManager
from finquest.features.challenges.repository import (
    ChallengeRepository,
    InMemoryChallengeRepository,
    SqlChallengeRepository,
)
from finquest.features.challenges.validators import (
    CreateChallengeRequest,
    GenerateChallengesRequest,
    draft_from_request,
)
from finquest.features.goals.store import GoalStore, InMemoryGoalStore, SqlGoalStore
from finquest.features.rewards.ledger import InMemoryPointsLedger, PointsLedger, SqlPointsLedger
from finquest.features.transactions.store import InMemoryTransactionFeed, SqlTransactionFeed, TransactionFeed
from finquest.models.challenge import Challenge, ChallengeDraft, ChallengeStats, ChallengeStatus, utc_now
from finquest.models.goal import CreateGoalRequest, SavingsGoal
from finquest.models.transaction import CreateTransactionRequest, Transaction


class ChallengeService:
    """Caller-facing operations of the challenge engine.

    Composes the stores, the generator and the lifecycle manager. Every
    evaluation entry point first retries unconfirmed rewards, then evaluates,
    then tops the active population back up.
    """

    def __init__(
        self,
        *,
        repository: ChallengeRepository,
        transactions: TransactionFeed,
        goals: GoalStore,
        ledger: PointsLedger,
        generator: Optional[ChallengeGenerator] = None,
        target_active_count: int = 3,
        max_conflict_retries: int = 3,
        default_reward_points: int = 50,
        context_lookback_days: int = 30,
    ):
        self.repository = repository
        self.transactions = transactions
        self.goals = goals
        self.ledger = ledger
        self.generator = generator or ChallengeGenerator()
        self.target_active_count = target_active_count
        self.default_reward_points = default_reward_points
        self.context_lookback_days = context_lookback_days
        self.lifecycle = LifecycleManager(
            repository,
            ledger,
            transactions,
            goals,
            self.generator,
            max_conflict_retries=max_conflict_retries,
        )

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def create_challenge(
        self,
        user_id: str,
        draft: Union[ChallengeDraft, CreateChallengeRequest],
        *,
        now: Optional[datetime] = None,
    ) -> Challenge:
        """Validate and persist a challenge as ACTIVE. Raises InvalidRuleError, NotFoundError."""
        now = now or utc_now()
        if isinstance(draft, CreateChallengeRequest):
            draft = draft_from_request(draft, now=now, default_reward=self.default_reward_points)
        with start_span("challenges.create", {"user_id": user_id, "type": draft.type}):
            return self.lifecycle.create(user_id, draft, now)

    def generate_challenges(
        self,
        user_id: str,
        options: Optional[GenerateChallengesRequest] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[Challenge]:
        now = now or utc_now()
        options = options or GenerateChallengesRequest()
        context = self.build_context(user_id, now)
        with start_span("challenges.generate_for_user", {"user_id": user_id, "count": options.count}):
            drafts = self.generator.generate(
                context,
                options.count,
                difficulty_hint=options.difficulty,
                frequency_hint=options.frequency,
                now=now,
            )
            return [self.lifecycle.create(user_id, draft, now) for draft in drafts]

    def list_challenges(self, user_id: str, status: Optional[ChallengeStatus] = None) -> List[Challenge]:
        return self.repository.list_for_user(user_id, status=status)

    def get_challenge(self, challenge_id: str, user_id: Optional[str] = None) -> Challenge:
        challenge = self.repository.get(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        if user_id is not None and challenge.user_id != user_id:
            raise PermissionError("Challenge belongs to another user")
        return challenge

    def delete_challenge(self, user_id: str, challenge_id: str) -> None:
        """User-initiated removal. The engine itself never deletes challenges."""
        self.get_challenge(challenge_id, user_id=user_id)
        self.repository.delete(challenge_id)
        log_event("info", "challenge.deleted", user_id=user_id, challenge_id=challenge_id, event_type="deleted")

    def get_stats(self, user_id: str) -> ChallengeStats:
        challenges = self.repository.list_for_user(user_id)
        counts = {"active": 0, "completed": 0, "failed": 0, "expired": 0}
        for challenge in challenges:
            counts[challenge.status] += 1
        decided = counts["completed"] + counts["failed"]
        return ChallengeStats(
            total=len(challenges),
            active=counts["active"],
            completed=counts["completed"],
            failed=counts["failed"],
            expired=counts["expired"],
            total_points_earned=sum(c.reward_points for c in challenges if c.status == "completed"),
            success_rate=round(counts["completed"] / decided * 100, 2) if decided else 0.0,
            current_streak=max((c.progress.current_streak for c in challenges if c.status == "active"), default=0),
            best_streak=max((c.progress.current_streak for c in challenges), default=0),
        )

    # ------------------------------------------------------------------
    # Evaluation entry points
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        user_id: str,
        req: CreateTransactionRequest,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Transaction, List[Challenge]]:
        now = now or utc_now()
        txn = Transaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            amount=req.amount,
            type=req.type,
            category=req.category,
            description=req.description,
            occurred_at=req.occurred_at or now,
        )
        return txn, self.record_transaction_and_evaluate(user_id, txn, now=now)

    def record_transaction_and_evaluate(
        self,
        user_id: str,
        transaction: Transaction,
        *,
        now: Optional[datetime] = None,
    ) -> List[Challenge]:
        """Append to the feed, apply incrementally, top up. Returns changed and newly created challenges."""
        now = now or utc_now()
        if transaction.user_id != user_id:
            raise PermissionError("Transaction belongs to another user")
        with start_span("challenges.record_transaction", {"user_id": user_id, "transaction_id": transaction.id}):
            self.transactions.append(transaction)
            self.lifecycle.reconcile_rewards(user_id)
            changed = [c for c, _ in self.lifecycle.apply_transaction_event(user_id, transaction, now)]
            return changed + self._top_up(user_id, now)

    def record_goal_contribution_and_evaluate(
        self,
        user_id: str,
        goal_id: str,
        amount: int,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[SavingsGoal, List[Challenge]]:
        now = now or utc_now()
        self.get_goal(user_id, goal_id)
        with start_span("challenges.record_contribution", {"user_id": user_id, "goal_id": goal_id}):
            goal = self.goals.contribute(goal_id, amount, now, note=note)
            return goal, self._evaluate(user_id, now)

    def run_scheduled_evaluation(self, user_id: str, *, now: Optional[datetime] = None) -> List[Challenge]:
        """Full re-scan for one user; the entry point for external schedulers."""
        now = now or utc_now()
        with start_span("challenges.scheduled_evaluation", {"user_id": user_id}):
            return self._evaluate(user_id, now)

    # ------------------------------------------------------------------
    # Goals, transactions, points
    # ------------------------------------------------------------------

    def create_goal(self, user_id: str, req: CreateGoalRequest, *, now: Optional[datetime] = None) -> SavingsGoal:
        return self.goals.create(user_id, req.name, req.target_amount, req.deadline, now or utc_now())

    def get_goal(self, user_id: str, goal_id: str) -> SavingsGoal:
        goal = self.goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        if goal.user_id != user_id:
            raise PermissionError("Goal belongs to another user")
        return goal

    def list_transactions(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        return self.transactions.list_for_user(user_id, since=since)

    def get_points(self, user_id: str) -> dict:
        entries = self.ledger.entries(user_id)
        return {
            "balance": sum(e.amount for e in entries),
            "entries": [e.to_dict() for e in entries],
        }

    def build_context(self, user_id: str, now: datetime) -> UserContext:
        since = now - timedelta(days=self.context_lookback_days)
        return UserContext.from_activity(
            user_id,
            [t for t in self.transactions.list_for_user(user_id, since=since) if t.occurred_at <= now],
            self.goals.list_for_user(user_id),
            lookback_days=self.context_lookback_days,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evaluate(self, user_id: str, now: datetime) -> List[Challenge]:
        self.lifecycle.reconcile_rewards(user_id)
        active = self.repository.list_for_user(user_id, status="active")
        snapshot = self.lifecycle.snapshot_for(user_id, active)
        changed = [c for c, _ in self.lifecycle.evaluate_all(user_id, snapshot, now)]
        return changed + self._top_up(user_id, now)

    def _top_up(self, user_id: str, now: datetime) -> List[Challenge]:
        if self.repository.count_active(user_id) >= self.target_active_count:
            return []
        return self.lifecycle.maintain_population(
            user_id,
            self.build_context(user_id, now),
            now,
            target_active_count=self.target_active_count,
        )


def build_challenge_service(cfg: Optional[Settings] = None) -> ChallengeService:
    """Wire the default service: SQL stores when DATABASE_URL is set, in-memory otherwise."""
    cfg = cfg or settings
    if cfg.DATABASE_URL:
        repository, transactions, goals, ledger = (
            SqlChallengeRepository(), SqlTransactionFeed(), SqlGoalStore(), SqlPointsLedger()
        )
    else:
        repository, transactions, goals, ledger = (
            InMemoryChallengeRepository(), InMemoryTransactionFeed(), InMemoryGoalStore(), InMemoryPointsLedger()
        )

    content_model = None
    if cfg.GROQ_API_KEY:
        content_model = GroqContentModel(
            api_key=cfg.GROQ_API_KEY,
            model=cfg.GROQ_MODEL,
            temperature=cfg.GROQ_TEMPERATURE,
            timeout=cfg.CONTENT_MODEL_TIMEOUT_SECONDS,
        )

    return ChallengeService(
        repository=repository,
        transactions=transactions,
        goals=goals,
        ledger=ledger,
        generator=ChallengeGenerator(content_model),
        target_active_count=cfg.CHALLENGE_TARGET_ACTIVE_COUNT,
        max_conflict_retries=cfg.CHALLENGE_MAX_CONFLICT_RETRIES,
        default_reward_points=cfg.CHALLENGE_DEFAULT_REWARD_POINTS,
    )


_service: Optional[ChallengeService] = None


def get_challenge_service() -> ChallengeService:
    """Process-wide service (FastAPI dependency)."""
    global _service
    if _service is None:
        _service = build_challenge_service()
    return _service


def reset_challenge_service(service: Optional[ChallengeService] = None) -> None:
    """Replace (or drop) the process-wide service. Used by tests and the sweep worker."""
    global _service
    _service = service
