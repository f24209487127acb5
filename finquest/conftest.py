# finquest/conftest.py
import pytest

from finquest.core.database import create_all_tables, dispose_engine, init_engine
from finquest.core.metrics import METRICS
from finquest.features.challenges.generator import ChallengeGenerator
from finquest.features.challenges.repository import InMemoryChallengeRepository
from finquest.features.challenges.service import ChallengeService, reset_challenge_service
from finquest.features.goals.store import InMemoryGoalStore
from finquest.features.rewards.ledger import InMemoryPointsLedger
from finquest.features.transactions.store import InMemoryTransactionFeed


@pytest.fixture(scope="function")
def sqlite_db(tmp_path):
    """Point the engine at a fresh SQLite file with all tables created."""
    init_engine(f"sqlite:///{tmp_path / 'finquest.db'}")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Counters are process-wide; each test starts from zero."""
    METRICS.reset()
    yield


@pytest.fixture
def service():
    """In-memory service with the template generator (no content model)."""
    return ChallengeService(
        repository=InMemoryChallengeRepository(),
        transactions=InMemoryTransactionFeed(),
        goals=InMemoryGoalStore(),
        ledger=InMemoryPointsLedger(),
        generator=ChallengeGenerator(),
        target_active_count=3,
    )


@pytest.fixture
def client(service):
    """TestClient bound to the app with the per-test service wired in."""
    from fastapi.testclient import TestClient

    from finquest.features.challenges.service import get_challenge_service
    from finquest.main import app

    app.dependency_overrides[get_challenge_service] = lambda: service
    reset_challenge_service(service)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    reset_challenge_service(None)
