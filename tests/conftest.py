import os
import sys
from unittest.mock import MagicMock

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from auth import get_current_user
from database import Base, get_db
from klap_api import KlapAPIService, get_klap_service
from main import app
from schemas import ProjectCreateRequest
from services import ProjectService

TEST_USER = "user_1"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def klap():
    """A Klap client whose every method is a mock."""
    return MagicMock(spec=KlapAPIService)


@pytest.fixture
def make_project(db):
    def _make(user_id=TEST_USER, video_url="https://cdn.example.com/talk.mp4", title="Weekly talk", **workflows):
        request = ProjectCreateRequest(title=title, video_url=video_url, workflows=workflows or None)
        return ProjectService(db).create_project(user_id, request)
    return _make


@pytest.fixture
def client(session_factory, klap):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_klap_service] = lambda: klap
    app.dependency_overrides[get_current_user] = lambda: TEST_USER
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
