import pytest
import os
import tempfile
import atexit
from datetime import datetime, timedelta
from decimal import Decimal
import jwt

# Use file-based SQLite for testing (more reliable than :memory:)
_test_db_file = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
_test_db_file.close()
TEST_DATABASE_URL = f"sqlite:///{_test_db_file.name}"


def _cleanup_test_db():
    if os.path.exists(_test_db_file.name):
        os.unlink(_test_db_file.name)


atexit.register(_cleanup_test_db)

# Must be set before database/server are imported
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["SECRET_KEY"] = "test-secret-key"

from sqlalchemy.orm import sessionmaker
from database import build_engine
from database.models import Base, Auction, AuctionStatus, AuctionMode, Stream, StreamStatus
from server.config import AuctionRules
from server.events import EventBus
from server.identity import Actor, BUYER, SELLER
from server.services import build_services

SELLER_ID = "seller-1"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine backed by its own file."""
    test_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    test_db.close()
    engine = build_engine(f"sqlite:///{test_db.name}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    os.unlink(test_db.name)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def rules():
    return AuctionRules()


@pytest.fixture
def services(rules):
    """A freshly wired auction core with its own event bus."""
    return build_services(rules=rules, events=EventBus(history_size=50))


@pytest.fixture
def seller():
    return Actor(user_id=SELLER_ID, role=SELLER)


@pytest.fixture
def buyer():
    return Actor(user_id="buyer-1", role=BUYER)


@pytest.fixture
def make_auction(db_session):
    """Insert an auction directly; active with a 5 minute clock unless told otherwise."""
    def _make(**overrides):
        now = datetime.utcnow()
        values = dict(
            product_id="prod-1",
            seller_id=SELLER_ID,
            status=AuctionStatus.ACTIVE.value,
            mode=AuctionMode.STANDARD.value,
            starting_bid=Decimal("10.00"),
            current_bid=Decimal("10.00"),
            min_increment=Decimal("1.00"),
            reserve_met=True,
            duration_seconds=300,
            max_timer_extensions=10,
            started_at=now,
            ends_at=now + timedelta(minutes=5),
            version=1,
        )
        values.update(overrides)
        if "current_bid" not in overrides:
            values["current_bid"] = values["starting_bid"]
        if "reserve_met" not in overrides and values.get("reserve_price") is not None:
            values["reserve_met"] = False
        auction = Auction(**values)
        db_session.add(auction)
        db_session.commit()
        db_session.refresh(auction)
        return auction
    return _make


@pytest.fixture
def active_auction(make_auction):
    return make_auction()


@pytest.fixture
def live_stream(db_session):
    stream = Stream(seller_id=SELLER_ID, title="Friday drop", status=StreamStatus.LIVE.value,
                    started_at=datetime.utcnow())
    db_session.add(stream)
    db_session.commit()
    db_session.refresh(stream)
    return stream


@pytest.fixture(scope="function")
def override_get_db(db_engine, db_session, services, monkeypatch):
    """Override get_db and the shared services for FastAPI tests."""
    import server.api
    from server.api import app
    from database.session import get_db

    def _get_test_db():
        try:
            yield db_session
        finally:
            pass

    monkeypatch.setattr(server.api, "services", services)
    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = _get_test_db
    yield
    app.dependency_overrides.clear()


def make_token(user_id: str, role: str = BUYER) -> str:
    secret_key = os.getenv("SECRET_KEY", "test-secret-key")
    payload = {"sub": user_id, "role": role, "exp": datetime.utcnow() + timedelta(days=30)}
    return jwt.encode(payload, secret_key, algorithm="HS256")


@pytest.fixture
def headers_for():
    def _headers(user_id: str, role: str = BUYER):
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}
    return _headers


@pytest.fixture
def auth_headers():
    """Authorization headers for a buyer."""
    return {"Authorization": f"Bearer {make_token('buyer-1')}"}


@pytest.fixture
def other_buyer_headers():
    return {"Authorization": f"Bearer {make_token('buyer-2')}"}


@pytest.fixture
def seller_headers():
    return {"Authorization": f"Bearer {make_token(SELLER_ID, SELLER)}"}


@pytest.fixture
def client(override_get_db):
    """Create a test client with database override."""
    from fastapi.testclient import TestClient
    from server.api import app
    return TestClient(app)
