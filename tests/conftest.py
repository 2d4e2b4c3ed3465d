# Settings are read when the package is imported, so configure them first
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_tours.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

# Imports for testing tools
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from unittest.mock import AsyncMock

# Import your application code
from tour_service.main import app
from tour_service.database import Base, get_db
from tour_service.notifications import NotificationHub
from tour_service.routers import tour_router
from tour_service.service import SchedulingService

from helpers import FIXED_NOW, AGENT_ID, ADMIN_ID, REQUESTER_ID, create_test_token

# --- Test Database Setup ---
SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# --- Database Management Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def setup_db():
    """Creates and drops the test database tables."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function", autouse=True)
def clean_tables():
    """Service code commits for real, so every test starts from empty tables."""
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(scope="function")
def db_session():
    """Provides a database session for each test."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def test_hub():
    return NotificationHub(max_pending=50)


@pytest.fixture
def service(db_session, test_hub):
    """A scheduling service with a fixed clock and its own notification hub."""
    return SchedulingService(db_session, hub=test_hub, clock=lambda: FIXED_NOW)


@pytest.fixture
def service_factory(test_hub):
    """Builds services with their own sessions, e.g. one per thread."""
    sessions = []

    def make():
        session = TestingSessionLocal()
        sessions.append(session)
        return SchedulingService(session, hub=test_hub, clock=lambda: FIXED_NOW)

    yield make
    for session in sessions:
        session.close()


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the background tasks (poller and scheduler) and the rate limiter's
    Redis setup that run on app lifespan.
    """
    mocker.patch("tour_service.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("tour_service.main.run_tour_scheduler", new_callable=AsyncMock)
    mocker.patch("tour_service.main.FastAPILimiter.init", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session):
    """Provides a TestClient for the tour service."""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[tour_router.request_rate_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    """Authorization headers for the default requester."""
    return {"Authorization": create_test_token(REQUESTER_ID, "user")}


@pytest.fixture
def agent_headers():
    return {"Authorization": create_test_token(AGENT_ID, "agent")}


@pytest.fixture
def admin_headers():
    return {"Authorization": create_test_token(ADMIN_ID, "admin")}
