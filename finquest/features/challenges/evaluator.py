"""Progress evaluation for challenges.

``evaluate(challenge, snapshot, now)`` is a pure function: no I/O, no clock,
no hidden state. It is built from two resumable steps so the per-transaction
path runs the exact same fold from a persisted checkpoint:

- ``advance`` folds in-window transactions in ``(occurred_at, id)`` order.
  Before each transaction at instant ``t`` the time-based verdicts are checked
  as of ``t``; after it, the event-based verdicts. The fold stops at the first
  terminal verdict so amounts freeze at the moment the challenge is decided.
- ``settle`` applies the time-based verdicts as of ``now`` and reads goal
  balances, then produces the progress record.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional, Tuple

from finquest.models.challenge import Challenge, ChallengeProgress, Verdict
from finquest.models.transaction import Transaction


DAY = timedelta(days=1)


@dataclass(frozen=True)
class ActivitySnapshot:
    """Transactions (sorted, de-duplicated) and goal balances visible to one evaluation."""

    transactions: Tuple[Transaction, ...] = ()
    goal_balances: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def build(cls, transactions: Iterable[Transaction], goal_balances: Optional[Mapping[str, int]] = None) -> "ActivitySnapshot":
        unique = {txn.id: txn for txn in transactions}
        ordered = tuple(sorted(unique.values(), key=lambda t: t.sort_key))
        return cls(transactions=ordered, goal_balances=dict(goal_balances or {}))

    def extended(self, transaction: Transaction) -> "ActivitySnapshot":
        return ActivitySnapshot.build(self.transactions + (transaction,), self.goal_balances)


@dataclass(frozen=True)
class Tally:
    """Checkpoint of the fold: what has been counted and whether it is decided."""

    current_amount: int = 0
    counted_ids: Tuple[str, ...] = ()
    last_activity_at: Optional[datetime] = None
    verdict: Verdict = "continue"
    decided_at: Optional[datetime] = None

    @classmethod
    def from_progress(cls, progress: ChallengeProgress) -> "Tally":
        return cls(
            current_amount=progress.current_amount,
            counted_ids=tuple(progress.counted_transaction_ids),
            last_activity_at=progress.last_activity_at,
        )

    @property
    def decided(self) -> bool:
        return self.verdict != "continue"


@dataclass(frozen=True)
class Evaluation:
    progress: ChallengeProgress
    verdict: Verdict


def evaluate(challenge: Challenge, snapshot: ActivitySnapshot, now: datetime) -> Evaluation:
    tally = advance(challenge, Tally(), snapshot.transactions, now)
    return settle(challenge, tally, snapshot.goal_balances, now)


def advance(challenge: Challenge, tally: Tally, transactions: Iterable[Transaction], now: datetime) -> Tally:
    """Fold transactions into ``tally``. Already-counted ids are skipped."""
    seen = set(tally.counted_ids)
    for txn in sorted(transactions, key=lambda t: t.sort_key):
        if tally.decided:
            break
        if txn.id in seen or not counts_toward(challenge, txn, now):
            continue
        tally = _check_time(challenge, tally, txn.occurred_at)
        if tally.decided:
            break
        tally = _fold(challenge, tally, txn)
        seen.add(txn.id)
    return tally


def settle(challenge: Challenge, tally: Tally, goal_balances: Mapping[str, int], now: datetime) -> Evaluation:
    if not tally.decided and challenge.rules.kind == "goal_contribution":
        balance = int(goal_balances.get(challenge.rules.goal_id, 0))
        tally = replace(tally, current_amount=balance)
        if balance >= challenge.rules.target_amount:
            tally = replace(tally, verdict="complete", decided_at=now)
    if not tally.decided:
        tally = _check_time(challenge, tally, now)

    progress = ChallengeProgress(
        current_amount=tally.current_amount,
        current_streak=_streak(challenge, tally, now),
        last_checked_at=now,
        completed_at=tally.decided_at if tally.verdict == "complete" else None,
        counted_transaction_ids=tuple(sorted(tally.counted_ids)),
        last_activity_at=tally.last_activity_at,
    )
    return Evaluation(progress=progress, verdict=tally.verdict)


def counts_toward(challenge: Challenge, txn: Transaction, now: datetime) -> bool:
    """Whether ``txn`` is inside the window and relevant to the challenge type."""
    if not (challenge.start_date <= txn.occurred_at < challenge.end_date):
        return False
    if txn.occurred_at > now:
        return False
    rules = challenge.rules
    if rules.kind in ("savings", "income_percentage"):
        return txn.type == "income"
    if rules.kind == "spending_limit":
        return txn.type == "expense" and (rules.category is None or txn.category == rules.category)
    if rules.kind in ("category_ban", "streak"):
        return txn.type == "expense" and txn.category == rules.category
    # Goal balances are not windowed transactions.
    return False


def days_elapsed(challenge: Challenge, as_of: datetime) -> int:
    """Whole days from start_date to ``as_of``, capped at end_date."""
    upto = min(as_of, challenge.end_date)
    if upto <= challenge.start_date:
        return 0
    return (upto - challenge.start_date) // DAY


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _fold(challenge: Challenge, tally: Tally, txn: Transaction) -> Tally:
    rules = challenge.rules
    counted = replace(
        tally,
        counted_ids=tally.counted_ids + (txn.id,),
        last_activity_at=txn.occurred_at,
    )
    if rules.kind in ("savings", "income_percentage"):
        amount = counted.current_amount + txn.amount
        if amount >= rules.target_amount:
            return replace(counted, current_amount=amount, verdict="complete", decided_at=txn.occurred_at)
        return replace(counted, current_amount=amount)
    if rules.kind == "spending_limit":
        amount = counted.current_amount + txn.amount
        if amount > rules.target_amount:
            return replace(counted, current_amount=amount, verdict="fail", decided_at=txn.occurred_at)
        return replace(counted, current_amount=amount)
    if rules.kind in ("category_ban", "streak"):
        return replace(counted, current_amount=counted.current_amount + txn.amount, verdict="fail", decided_at=txn.occurred_at)
    return counted


def _check_time(challenge: Challenge, tally: Tally, as_of: datetime) -> Tally:
    rules = challenge.rules
    if rules.kind == "spending_limit" and as_of >= challenge.end_date:
        return replace(tally, verdict="complete", decided_at=challenge.end_date)
    if rules.kind == "streak" and days_elapsed(challenge, as_of) >= rules.streak_days:
        reached = challenge.start_date + rules.streak_days * DAY
        return replace(tally, verdict="complete", decided_at=reached)
    return tally


def _streak(challenge: Challenge, tally: Tally, now: datetime) -> int:
    kind = challenge.rules.kind
    if kind not in ("streak", "category_ban"):
        return 0
    if tally.verdict == "fail":
        return 0
    if tally.verdict == "complete":
        return days_elapsed(challenge, tally.decided_at)
    return days_elapsed(challenge, now)
