import os
import uuid
from collections.abc import Callable, Generator

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

# Settings are read once at import time, so the test environment goes first.
os.environ["DATABASE_URL"] = SQLALCHEMY_DATABASE_URL
os.environ["GRACE_PERIOD_SECONDS"] = "0"
os.environ["MAX_TRANSACTION_RETRIES"] = "10"
os.environ["PROGRESS_CACHE_TTL_SECONDS"] = "0"
os.environ["ADMIN_KEY"] = "test-admin"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from consensus.main import app  # noqa: E402
from consensus.api.v1 import participants as participants_api  # noqa: E402
from consensus.core.timeutil import utcnow  # noqa: E402
from consensus.db.base import Base  # noqa: E402
from consensus.db.session import build_engine  # noqa: E402
from consensus.models.deliberation import Deliberation  # noqa: E402
from consensus.models.participant import Participant  # noqa: E402
from consensus.services import deliberations  # noqa: E402


engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def override_get_db() -> Generator:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    # Every router shares participants.get_db, so one override covers the API.
    app.dependency_overrides[participants_api.get_db] = override_get_db

    yield

    Base.metadata.drop_all(bind=engine)
    app.dependency_overrides.clear()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def session_factory() -> sessionmaker:
    return TestingSessionLocal


@pytest.fixture()
def db() -> Generator:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_users(db: Session) -> Callable[[int], list[uuid.UUID]]:
    """Participants created straight in the database, bypassing key hashing."""

    def _make(count: int) -> list[uuid.UUID]:
        ids = []
        for index in range(count):
            participant = Participant(
                id=uuid.uuid4(),
                display_name=f"user-{index}",
                api_key_hash="unused",
                created_at=utcnow(),
            )
            db.add(participant)
            ids.append(participant.id)
        db.commit()
        return ids

    return _make


@pytest.fixture()
def make_deliberation(db: Session, make_users) -> Callable[..., Deliberation]:
    def _make(ideas: int = 0, **options) -> Deliberation:
        creator = make_users(1)[0]
        deliberation = deliberations.create_deliberation(db, creator, question="What should we do next?", **options)
        authors = make_users(ideas) if ideas else []
        for index, author in enumerate(authors):
            deliberations.submit_idea(db, deliberation.id, author, f"Idea number {index}")
        db.refresh(deliberation)
        return deliberation

    return _make
