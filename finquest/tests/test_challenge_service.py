"""Challenge service: creation, evaluation entry points, population floor, stats."""

from datetime import timedelta

import pytest

from finquest.core.config import Settings
from finquest.core.errors import InvalidRuleError, NotFoundError, PermissionError
from finquest.features.challenges.generator import ChallengeGenerator
from finquest.features.challenges.repository import InMemoryChallengeRepository
from finquest.features.challenges.service import ChallengeService, build_challenge_service
from finquest.features.challenges.validators import CreateChallengeRequest, GenerateChallengesRequest
from finquest.features.goals.store import InMemoryGoalStore
from finquest.features.rewards.ledger import InMemoryPointsLedger
from finquest.features.transactions.store import InMemoryTransactionFeed
from finquest.models.goal import CreateGoalRequest
from finquest.models.transaction import CreateTransactionRequest
from finquest.tests.mocks import T0, txn


@pytest.fixture
def quiet_service():
    """Service that never tops up, so tests see only the challenges they create."""
    return ChallengeService(
        repository=InMemoryChallengeRepository(),
        transactions=InMemoryTransactionFeed(),
        goals=InMemoryGoalStore(),
        ledger=InMemoryPointsLedger(),
        generator=ChallengeGenerator(),
        target_active_count=0,
    )


def _savings(target=1000, **kwargs):
    return CreateChallengeRequest(type="savings", title="Save up", rules={"target_amount": target}, **kwargs)


class TestCreate:
    def test_manual_challenge_gets_default_window_and_reward(self, quiet_service):
        challenge = quiet_service.create_challenge("alice", _savings(), now=T0)

        assert challenge.status == "active"
        assert challenge.provenance == "manual"
        assert challenge.reward_points == 50
        assert challenge.start_date == T0
        assert challenge.end_date == T0 + timedelta(days=7)
        assert quiet_service.get_challenge(challenge.id, user_id="alice") == challenge

    def test_rules_that_do_not_fit_the_type_are_rejected(self, quiet_service):
        req = CreateChallengeRequest(type="savings", title="Bad", rules={"category": "delivery"})

        with pytest.raises(InvalidRuleError):
            quiet_service.create_challenge("alice", req, now=T0)
        assert quiet_service.list_challenges("alice") == []

    def test_end_before_start_is_rejected(self, quiet_service):
        with pytest.raises(InvalidRuleError):
            quiet_service.create_challenge("alice", _savings(start_date=T0, end_date=T0 - timedelta(days=1)), now=T0)

    def test_goal_challenge_must_reference_own_goal(self, quiet_service):
        bobs = quiet_service.create_goal("bob", CreateGoalRequest(name="Bike", target_amount=5000), now=T0)

        def goal_req(goal_id):
            return CreateChallengeRequest(
                type="goal_contribution", title="Fund it", rules={"goal_id": goal_id, "target_amount": 1000}
            )

        with pytest.raises(NotFoundError):
            quiet_service.create_challenge("alice", goal_req("missing"), now=T0)
        with pytest.raises(PermissionError):
            quiet_service.create_challenge("alice", goal_req(bobs.id), now=T0)

    def test_backdated_window_folds_existing_history(self, quiet_service):
        quiet_service.record_transaction_and_evaluate(
            "alice", txn("t1", 4000, "income", at=T0 + timedelta(hours=1)), now=T0 + timedelta(hours=1)
        )

        challenge = quiet_service.create_challenge(
            "alice", _savings(10000, start_date=T0), now=T0 + timedelta(hours=2)
        )

        assert challenge.progress.current_amount == 4000
        assert challenge.progress.counted_transaction_ids == ("t1",)

    def test_generate_creates_requested_count(self, quiet_service):
        created = quiet_service.generate_challenges(
            "alice", GenerateChallengesRequest(count=2, difficulty="easy"), now=T0
        )

        assert len(created) == 2
        assert all(c.provenance == "fallback" and c.difficulty == "easy" for c in created)
        assert len(quiet_service.list_challenges("alice", status="active")) == 2


class TestEvaluationEntryPoints:
    def test_transaction_completes_and_awards_once(self, quiet_service):
        challenge = quiet_service.create_challenge("alice", _savings(1000), now=T0)

        _, changed = quiet_service.record_transaction(
            "alice", CreateTransactionRequest(amount=1500, type="income"), now=T0 + timedelta(hours=1)
        )
        quiet_service.record_transaction(
            "alice", CreateTransactionRequest(amount=700, type="income"), now=T0 + timedelta(hours=2)
        )
        quiet_service.run_scheduled_evaluation("alice", now=T0 + timedelta(hours=3))

        assert [(c.id, c.status) for c in changed] == [(challenge.id, "completed")]
        stored = quiet_service.get_challenge(challenge.id)
        assert stored.progress.current_amount == 1500
        assert stored.reward_issued is True
        assert quiet_service.get_points("alice")["balance"] == 50

    def test_spending_over_limit_fails_without_points(self, quiet_service):
        req = CreateChallengeRequest(type="spending_limit", title="Budget", rules={"target_amount": 1000})
        challenge = quiet_service.create_challenge("alice", req, now=T0)

        _, changed = quiet_service.record_transaction(
            "alice", CreateTransactionRequest(amount=-1200, type="expense", category="Dining"), now=T0 + timedelta(hours=1)
        )

        assert [(c.id, c.status) for c in changed] == [(challenge.id, "failed")]
        assert quiet_service.get_points("alice")["balance"] == 0

    def test_goal_contribution_completes_goal_challenge(self, quiet_service):
        goal = quiet_service.create_goal("alice", CreateGoalRequest(name="Trip", target_amount=20000), now=T0)
        req = CreateChallengeRequest(
            type="goal_contribution", title="Trip fund", rules={"goal_id": goal.id, "target_amount": 5000}
        )
        challenge = quiet_service.create_challenge("alice", req, now=T0)

        goal_after, changed = quiet_service.record_goal_contribution_and_evaluate(
            "alice", goal.id, 5000, now=T0 + timedelta(hours=1)
        )

        assert goal_after.current_amount == 5000
        assert [(c.id, c.status) for c in changed] == [(challenge.id, "completed")]
        assert quiet_service.get_points("alice")["balance"] == 50

    def test_contribution_to_someone_elses_goal(self, quiet_service):
        goal = quiet_service.create_goal("bob", CreateGoalRequest(name="Bike", target_amount=5000), now=T0)

        with pytest.raises(PermissionError):
            quiet_service.record_goal_contribution_and_evaluate("alice", goal.id, 100, now=T0)

    def test_scheduled_evaluation_expires_a_clean_ban(self, quiet_service):
        req = CreateChallengeRequest(type="category_ban", title="No takeout", rules={"category": "Delivery"})
        challenge = quiet_service.create_challenge("alice", req, now=T0)

        changed = quiet_service.run_scheduled_evaluation("alice", now=challenge.end_date + timedelta(seconds=1))

        assert [(c.id, c.status) for c in changed] == [(challenge.id, "expired")]
        assert quiet_service.get_points("alice")["balance"] == 0

    def test_transaction_for_another_user_is_rejected(self, quiet_service):
        with pytest.raises(PermissionError):
            quiet_service.record_transaction_and_evaluate("alice", txn("t1", 10, at=T0, user_id="bob"), now=T0)


class TestPopulation:
    def test_evaluation_tops_up_to_target(self, service):
        service.create_challenge("alice", _savings(100000), now=T0)

        changed = service.run_scheduled_evaluation("alice", now=T0 + timedelta(hours=1))

        assert len(changed) == 2
        assert all(c.provenance == "fallback" for c in changed)
        assert len(service.list_challenges("alice", status="active")) == 3

    def test_completion_is_replaced_on_the_same_pass(self, service):
        for _ in range(3):
            service.create_challenge("alice", _savings(1000), now=T0)

        _, changed = service.record_transaction(
            "alice", CreateTransactionRequest(amount=1000, type="income"), now=T0 + timedelta(hours=1)
        )

        statuses = sorted(c.status for c in changed)
        assert statuses == ["active"] * 3 + ["completed"] * 3
        assert len(service.list_challenges("alice", status="active")) == 3
        assert service.get_points("alice")["balance"] == 150


class TestQueries:
    def test_get_enforces_ownership(self, quiet_service):
        challenge = quiet_service.create_challenge("alice", _savings(), now=T0)

        with pytest.raises(PermissionError):
            quiet_service.get_challenge(challenge.id, user_id="bob")
        with pytest.raises(NotFoundError):
            quiet_service.get_challenge("missing")

    def test_delete(self, quiet_service):
        challenge = quiet_service.create_challenge("alice", _savings(), now=T0)

        with pytest.raises(PermissionError):
            quiet_service.delete_challenge("bob", challenge.id)
        quiet_service.delete_challenge("alice", challenge.id)
        assert quiet_service.list_challenges("alice") == []

    def test_stats(self, quiet_service):
        won = quiet_service.create_challenge("alice", _savings(1000, reward_points=80), now=T0)
        quiet_service.create_challenge(
            "alice",
            CreateChallengeRequest(type="spending_limit", title="Budget", rules={"target_amount": 100}),
            now=T0,
        )
        quiet_service.create_challenge("alice", _savings(999999), now=T0)
        quiet_service.record_transaction("alice", CreateTransactionRequest(amount=1000, type="income"), now=T0)
        quiet_service.record_transaction("alice", CreateTransactionRequest(amount=500, type="expense"), now=T0)

        stats = quiet_service.get_stats("alice").to_dict()

        assert won.reward_points == 80
        assert stats == {
            "total": 3,
            "active": 1,
            "completed": 1,
            "failed": 1,
            "expired": 0,
            "total_points_earned": 80,
            "success_rate": 50.0,
            "current_streak": 0,
            "best_streak": 0,
        }

    def test_stats_report_streaks_from_clean_days(self, quiet_service):
        req = CreateChallengeRequest(type="category_ban", title="No takeout", rules={"category": "delivery"})
        quiet_service.create_challenge("alice", req, now=T0)

        quiet_service.run_scheduled_evaluation("alice", now=T0 + timedelta(days=3, hours=1))
        stats = quiet_service.get_stats("alice")

        assert stats.current_streak == 3
        assert stats.best_streak == 3

    def test_list_transactions_since(self, quiet_service):
        quiet_service.record_transaction_and_evaluate("alice", txn("old", 10, at=T0), now=T0)
        quiet_service.record_transaction_and_evaluate("alice", txn("new", 10, at=T0 + timedelta(days=2)), now=T0 + timedelta(days=2))

        rows = quiet_service.list_transactions("alice", since=T0 + timedelta(days=1))

        assert [t.id for t in rows] == ["new"]


def test_build_service_without_database_uses_memory_and_templates():
    built = build_challenge_service(Settings(DATABASE_URL=None, GROQ_API_KEY=None, CHALLENGE_TARGET_ACTIVE_COUNT=5))

    assert isinstance(built.repository, InMemoryChallengeRepository)
    assert built.target_active_count == 5
    assert built.generator._model is None
