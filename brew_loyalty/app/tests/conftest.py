import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from ..core.config import Settings, get_settings
from ..core.db import create_engine_for_url, get_session, init_db, set_engine
from ..core.dependencies import get_chain_client, get_reconciliation_poller
from ..main import app
from ..services import LoyaltyService, ReconciliationPoller
from .fakes import FakeChainLedger

WALLET = "0xAbC0000000000000000000000000000000000001"


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'loyalty.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def fake_chain() -> FakeChainLedger:
    return FakeChainLedger(reward_threshold=8)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def poller(fake_chain, sleeps) -> ReconciliationPoller:
    return ReconciliationPoller(fake_chain, sleep=sleeps.append)


@pytest.fixture
def settings() -> Settings:
    return Settings(reward_threshold=8, accrual_max_retries=5)


@pytest.fixture
def service(session, settings, fake_chain, poller) -> LoyaltyService:
    return LoyaltyService(session, settings, fake_chain, poller)


@pytest.fixture
def client(tmp_path, fake_chain, poller):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'api.db'}")
    original_engine = create_engine_for_url(get_settings().database_url)
    set_engine(engine)
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)

    def _get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override
    app.dependency_overrides[get_chain_client] = lambda: fake_chain
    app.dependency_overrides[get_reconciliation_poller] = lambda: poller
    init_db()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_engine(original_engine)
    engine.dispose()
