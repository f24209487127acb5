"""Challenge lifecycle: applies evaluations, transitions status, issues rewards.

Every status or progress change goes through ``_cycle``: under a per-challenge
lock, re-read the challenge, compute its next state, write it conditioned on
the version that was read, and award points if this write moved it into
COMPLETED. A lost version race is retried from a fresh read; after
``max_conflict_retries`` the challenge is skipped for this pass.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from finquest.core.errors import (
    ConcurrentModificationError,
    InvalidRuleError,
    NotFoundError,
    PermissionError,
    RewardIssuanceError,
)
from finquest.core.logging import log_event
from finquest.core.metrics import challenge_conflicts_total, challenge_transitions_total, reward_issuance_total
from finquest.features.challenges import evaluator
from finquest.features.challenges.evaluator import ActivitySnapshot, Evaluation, Tally
from finquest.features.challenges.generator import ChallengeGenerator, UserContext
from finquest.features.challenges.repository import ChallengeRepository
from finquest.features.challenges.validators import check_references
from finquest.features.goals.store import GoalStore
from finquest.features.rewards.ledger import PointsLedger
from finquest.features.transactions.store import TransactionFeed
from finquest.models.challenge import Challenge, ChallengeDraft, ChallengeStatus
from finquest.models.transaction import Transaction


class LifecycleManager:
    """Owns every mutation of a challenge after creation."""

    def __init__(
        self,
        repository: ChallengeRepository,
        ledger: PointsLedger,
        transactions: TransactionFeed,
        goals: GoalStore,
        generator: Optional[ChallengeGenerator] = None,
        *,
        max_conflict_retries: int = 3,
    ):
        self._repo = repository
        self._ledger = ledger
        self._transactions = transactions
        self._goals = goals
        self._generator = generator
        self._max_retries = max(1, max_conflict_retries)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, user_id: str, draft: ChallengeDraft, now: datetime) -> Challenge:
        check_references(user_id, draft, self._goals)
        challenge = Challenge.from_draft(draft, challenge_id=str(uuid.uuid4()), user_id=user_id, now=now)
        self._repo.add(challenge)
        log_event(
            "info",
            "challenge.created",
            user_id=user_id,
            challenge_id=challenge.id,
            event_type="created",
            extra={"type": challenge.type, "provenance": challenge.provenance},
        )
        if challenge.start_date < now:
            # Backdated window: fold existing history so the incremental path resumes from it
            seeded = self._cycle(
                challenge.id,
                lambda current: evaluator.evaluate(current, self.snapshot_for(user_id, [current]), now),
                now=now,
                trigger="created",
            )
            return seeded or challenge
        return challenge

    # ------------------------------------------------------------------
    # Evaluation paths
    # ------------------------------------------------------------------

    def evaluate_all(self, user_id: str, snapshot: ActivitySnapshot, now: datetime) -> List[Tuple[Challenge, ChallengeStatus]]:
        """Full re-scan of every active challenge. Returns the ones that changed."""
        changed = []
        for challenge in self._repo.list_for_user(user_id, status="active"):
            saved = self._cycle(
                challenge.id,
                lambda current: evaluator.evaluate(current, snapshot, now),
                now=now,
                trigger="batch",
            )
            if saved is not None:
                changed.append((saved, saved.status))
        return changed

    def apply_transaction_event(self, user_id: str, transaction: Transaction, now: datetime) -> List[Tuple[Challenge, ChallengeStatus]]:
        """Resume each active challenge's fold with the new transaction and any rows it missed, then settle at ``now``."""
        changed = []
        for challenge in self._repo.list_for_user(user_id, status="active"):
            saved = self._cycle(
                challenge.id,
                lambda current: self._resume(current, transaction, now),
                now=now,
                trigger="transaction",
            )
            if saved is not None:
                changed.append((saved, saved.status))
        return changed

    def snapshot_for(self, user_id: str, challenges: List[Challenge]) -> ActivitySnapshot:
        """Load the transactions and goal balances the given challenges can see."""
        if not challenges:
            return ActivitySnapshot()
        since = min(c.start_date for c in challenges)
        return ActivitySnapshot.build(
            self._transactions.list_for_user(user_id, since=since),
            self._goal_balances(challenges),
        )

    # ------------------------------------------------------------------
    # Population and rewards
    # ------------------------------------------------------------------

    def maintain_population(
        self,
        user_id: str,
        context: UserContext,
        now: datetime,
        target_active_count: int = 3,
    ) -> List[Challenge]:
        """Top the user's active challenges up to ``target_active_count``. Never removes any."""
        if self._generator is None:
            return []
        shortfall = target_active_count - self._repo.count_active(user_id)
        if shortfall <= 0:
            return []

        created = []
        for draft in self._generator.generate(context, shortfall, now=now)[:shortfall]:
            try:
                created.append(self.create(user_id, draft, now))
            except (InvalidRuleError, NotFoundError, PermissionError) as exc:
                log_event(
                    "warning",
                    "challenge.draft_skipped",
                    user_id=user_id,
                    event_type="population",
                    error_code=exc.code,
                    extra={"reason": exc.message, "type": draft.type},
                )
        return created

    def reconcile_rewards(self, user_id: str) -> int:
        """Finish awards for COMPLETED challenges whose reward was never confirmed."""
        reconciled = 0
        for challenge in self._repo.list_for_user(user_id, status="completed"):
            if challenge.reward_issued:
                continue
            with self._lock_for(challenge.id):
                current = self._repo.get(challenge.id)
                if current is None or current.reward_issued:
                    continue
                if self._ledger.has_award(current.id):
                    self._repo.mark_reward_issued(current.id)
                    reconciled += 1
                elif self._issue_reward(current, trigger="reconcile"):
                    reconciled += 1
        return reconciled

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, challenge_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(challenge_id)
            if lock is None:
                lock = self._locks[challenge_id] = threading.Lock()
            return lock

    def _cycle(
        self,
        challenge_id: str,
        compute: Callable[[Challenge], Evaluation],
        *,
        now: datetime,
        trigger: str,
    ) -> Optional[Challenge]:
        with self._lock_for(challenge_id):
            for attempt in range(1, self._max_retries + 1):
                current = self._repo.get(challenge_id)
                if current is None or current.is_terminal:
                    return None
                updated = self._next_state(current, compute(current), now)
                if updated is None:
                    return None
                try:
                    saved = self._repo.save(updated, expected_version=current.version)
                except ConcurrentModificationError:
                    challenge_conflicts_total.inc({"outcome": "retry"})
                    log_event(
                        "info",
                        "challenge.conflict",
                        user_id=current.user_id,
                        challenge_id=challenge_id,
                        event_type=trigger,
                        error_code=ConcurrentModificationError.code,
                        extra={"attempt": attempt},
                    )
                    continue

                if saved.status != current.status:
                    challenge_transitions_total.inc({"status": saved.status, "trigger": trigger})
                    log_event(
                        "info",
                        "challenge.transition",
                        user_id=saved.user_id,
                        challenge_id=saved.id,
                        event_type=trigger,
                        extra={"from": current.status, "to": saved.status},
                    )
                if saved.status == "completed":
                    self._issue_reward(saved, trigger=trigger)
                    saved = self._repo.get(challenge_id) or saved
                return saved

            challenge_conflicts_total.inc({"outcome": "skipped"})
            log_event(
                "warning",
                "challenge.conflict_skipped",
                challenge_id=challenge_id,
                event_type=trigger,
                error_code=ConcurrentModificationError.code,
                extra={"attempts": self._max_retries},
            )
            return None

    @staticmethod
    def _next_state(current: Challenge, evaluation: Evaluation, now: datetime) -> Optional[Challenge]:
        if evaluation.verdict == "complete":
            return current.transition("completed", evaluation.progress, now)
        if evaluation.verdict == "fail":
            return current.transition("failed", evaluation.progress, now)
        if now >= current.end_date:
            return current.transition("expired", evaluation.progress, now)
        if evaluation.progress.same_state(current.progress):
            return None
        return current.with_progress(evaluation.progress, now)

    def _resume(self, current: Challenge, transaction: Transaction, now: datetime) -> Evaluation:
        tally = Tally.from_progress(current.progress)
        history = ActivitySnapshot.build(
            list(self._transactions.list_for_user(current.user_id, since=current.start_date)) + [transaction]
        ).transactions
        # Rows the checkpoint has not seen: this event, plus any that were future-dated
        # when recorded or whose pass was skipped on conflict
        pending = [
            txn for txn in history
            if txn.id not in tally.counted_ids and evaluator.counts_toward(current, txn, now)
        ]
        out_of_order = tally.last_activity_at is not None and any(
            txn.occurred_at <= tally.last_activity_at for txn in pending
        )
        if out_of_order:
            # Backdated activity changes fold order; rebuild from the feed
            tally = evaluator.advance(current, Tally(), history, now)
        else:
            tally = evaluator.advance(current, tally, pending, now)
        return evaluator.settle(current, tally, self._goal_balances([current]), now)

    def _goal_balances(self, challenges: List[Challenge]) -> Dict[str, int]:
        balances = {}
        for challenge in challenges:
            if challenge.rules.kind != "goal_contribution":
                continue
            goal = self._goals.get(challenge.rules.goal_id)
            # A missing goal evaluates as an empty balance
            balances[challenge.rules.goal_id] = goal.current_amount if goal else 0
        return balances

    def _issue_reward(self, challenge: Challenge, *, trigger: str) -> bool:
        try:
            self._ledger.award_points(
                challenge.user_id,
                challenge.reward_points,
                f"challenge completed: {challenge.title}",
                idempotency_key=challenge.id,
            )
        except RewardIssuanceError as exc:
            reward_issuance_total.inc({"outcome": "failed"})
            log_event(
                "error",
                "challenge.reward_failed",
                user_id=challenge.user_id,
                challenge_id=challenge.id,
                event_type=trigger,
                error_code=exc.code,
                extra={"reason": exc.message},
            )
            return False
        self._repo.mark_reward_issued(challenge.id)
        reward_issuance_total.inc({"outcome": "issued"})
        log_event(
            "info",
            "challenge.reward_issued",
            user_id=challenge.user_id,
            challenge_id=challenge.id,
            event_type=trigger,
            extra={"points": challenge.reward_points},
        )
        return True
