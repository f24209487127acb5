"""Progress evaluator: per-type rules, freezing at the deciding moment, purity."""

from datetime import timedelta

from finquest.features.challenges.evaluator import ActivitySnapshot, Tally, advance, evaluate, settle
from finquest.tests.mocks import T0, make_challenge, txn


def test_savings_completes_when_income_reaches_target():
    """Scenario A: 250000 income against a 200000 target completes."""
    challenge = make_challenge("savings", {"target_amount": 200000})
    snapshot = ActivitySnapshot.build([txn("t1", 250000, "income", at=T0 + timedelta(hours=1))])

    result = evaluate(challenge, snapshot, T0 + timedelta(hours=2))

    assert result.verdict == "complete"
    assert result.progress.current_amount == 250000
    assert result.progress.completed_at == T0 + timedelta(hours=1)
    assert result.progress.counted_transaction_ids == ("t1",)


def test_spending_limit_fails_at_the_crossing_transaction():
    """Scenario B: FAIL the moment 60000 is reached, long before end_date."""
    challenge = make_challenge("spending_limit", {"target_amount": 50000})
    snapshot = ActivitySnapshot.build([
        txn("t1", 30000, at=T0 + timedelta(days=1)),
        txn("t2", 30000, at=T0 + timedelta(days=2)),
        txn("t3", 10000, at=T0 + timedelta(days=3)),
    ])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=4))

    assert result.verdict == "fail"
    # t3 came after the decision and is not folded
    assert result.progress.current_amount == 60000
    assert result.progress.counted_transaction_ids == ("t1", "t2")


def test_spending_limit_continues_under_budget_before_end():
    challenge = make_challenge("spending_limit", {"target_amount": 50000})
    snapshot = ActivitySnapshot.build([txn("t1", 20000, at=T0 + timedelta(days=1))])

    assert evaluate(challenge, snapshot, T0 + timedelta(days=3)).verdict == "continue"
    at_end = evaluate(challenge, snapshot, T0 + timedelta(days=7))
    assert at_end.verdict == "complete"
    assert at_end.progress.completed_at == challenge.end_date


def test_spending_limit_category_filter():
    challenge = make_challenge("spending_limit", {"target_amount": 1000, "category": "Delivery"})
    snapshot = ActivitySnapshot.build([
        txn("t1", 5000, at=T0 + timedelta(hours=1), category="rent"),
        txn("t2", 900, at=T0 + timedelta(hours=2), category="delivery"),
    ])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=1))

    assert result.verdict == "continue"
    assert result.progress.current_amount == 900


def test_category_ban_never_completes_and_fails_on_banned_expense():
    """Scenario C's evaluator half: a clean ban stays CONTINUE even after end_date."""
    challenge = make_challenge("category_ban", {"category": "delivery"})
    clean = ActivitySnapshot.build([txn("t1", 1000, at=T0 + timedelta(days=1), category="groceries")])

    after_end = evaluate(challenge, clean, T0 + timedelta(days=7, seconds=1))
    assert after_end.verdict == "continue"
    assert after_end.progress.current_streak == 7

    dirty = clean.extended(txn("t2", 1500, at=T0 + timedelta(days=2), category="delivery"))
    failed = evaluate(challenge, dirty, T0 + timedelta(days=3))
    assert failed.verdict == "fail"
    assert failed.progress.current_streak == 0


def test_streak_resets_and_fails_on_category_expense():
    """Scenario D: a delivery purchase on day 3 of a 7-day streak."""
    challenge = make_challenge("streak", {"category": "delivery", "streak_days": 7}, days=10)
    snapshot = ActivitySnapshot.build([txn("t1", 800, at=T0 + timedelta(days=3, hours=2), category="delivery")])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=4))

    assert result.verdict == "fail"
    assert result.progress.current_streak == 0


def test_streak_completed_before_a_later_violation_stays_complete():
    challenge = make_challenge("streak", {"category": "delivery", "streak_days": 3})
    snapshot = ActivitySnapshot.build([txn("t1", 800, at=T0 + timedelta(days=5), category="delivery")])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=6))

    assert result.verdict == "complete"
    assert result.progress.current_streak == 3
    assert result.progress.completed_at == T0 + timedelta(days=3)
    assert result.progress.counted_transaction_ids == ()


def test_streak_counts_whole_days():
    challenge = make_challenge("streak", {"category": "delivery", "streak_days": 5})

    result = evaluate(challenge, ActivitySnapshot(), T0 + timedelta(days=2, hours=23))

    assert result.verdict == "continue"
    assert result.progress.current_streak == 2


def test_goal_contribution_uses_unwindowed_balance():
    challenge = make_challenge("goal_contribution", {"goal_id": "g1", "target_amount": 10000})
    now = T0 + timedelta(days=1)

    below = evaluate(challenge, ActivitySnapshot.build([], {"g1": 9000}), now)
    reached = evaluate(challenge, ActivitySnapshot.build([], {"g1": 12000}), now)
    missing = evaluate(challenge, ActivitySnapshot(), now)

    assert below.verdict == "continue" and below.progress.current_amount == 9000
    assert reached.verdict == "complete" and reached.progress.completed_at == now
    assert missing.verdict == "continue" and missing.progress.current_amount == 0


def test_income_percentage_sums_income_in_window():
    challenge = make_challenge("income_percentage", {"percentage": 10, "target_amount": 30000})
    snapshot = ActivitySnapshot.build([
        txn("before", 90000, "income", at=T0 - timedelta(hours=1)),
        txn("t1", 20000, "income", at=T0 + timedelta(hours=1)),
        txn("t2", 5000, "expense", at=T0 + timedelta(hours=2)),
        txn("t3", 15000, "income", at=T0 + timedelta(hours=3)),
    ])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=1))

    assert result.verdict == "complete"
    assert result.progress.current_amount == 35000


def test_window_excludes_end_date_and_future_transactions():
    challenge = make_challenge("savings", {"target_amount": 100})
    snapshot = ActivitySnapshot.build([
        txn("at_end", 500, "income", at=challenge.end_date),
        txn("future", 500, "income", at=T0 + timedelta(days=2)),
    ])

    result = evaluate(challenge, snapshot, T0 + timedelta(days=1))

    assert result.verdict == "continue"
    assert result.progress.current_amount == 0


def test_evaluate_is_idempotent():
    challenge = make_challenge("spending_limit", {"target_amount": 50000})
    snapshot = ActivitySnapshot.build([
        txn("t2", 20000, at=T0 + timedelta(days=1)),
        txn("t1", 10000, at=T0 + timedelta(days=1)),
    ])
    now = T0 + timedelta(days=2)

    assert evaluate(challenge, snapshot, now) == evaluate(challenge, snapshot, now)


def test_resuming_from_progress_matches_a_full_fold():
    challenge = make_challenge("savings", {"target_amount": 100000})
    history = [
        txn("t1", 30000, "income", at=T0 + timedelta(hours=1)),
        txn("t2", 30000, "income", at=T0 + timedelta(hours=2)),
    ]
    newest = txn("t3", 50000, "income", at=T0 + timedelta(hours=3))
    now = T0 + timedelta(hours=4)

    partial = evaluate(challenge, ActivitySnapshot.build(history), T0 + timedelta(hours=2))
    tally = advance(challenge, Tally.from_progress(partial.progress), [newest], now)
    resumed = settle(challenge, tally, {}, now)

    assert resumed == evaluate(challenge, ActivitySnapshot.build(history + [newest]), now)


def test_already_counted_transaction_is_a_no_op():
    challenge = make_challenge("savings", {"target_amount": 100000})
    first = txn("t1", 30000, "income", at=T0 + timedelta(hours=1))
    now = T0 + timedelta(hours=2)

    tally = advance(challenge, Tally(), [first], now)
    again = advance(challenge, tally, [first], now)

    assert again == tally
    assert again.current_amount == 30000
