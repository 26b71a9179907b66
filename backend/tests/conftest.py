"""Shared fixtures: in-memory database, authenticated clients, fake LLM committee, webhook sink."""

from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from neolingus.db import Base, get_db
from neolingus.main import app
from neolingus.models import AuthSession, AuthUser, ScoringRubric
from neolingus.routers import scoring as scoring_router
from neolingus.routers.auth import create_access_token


WRITING_RUBRIC: Dict[str, Any] = {
    "version": "v1",
    "provider": "Cambridge",
    "level": "B2",
    "task": "writing",
    "criteria": [
        {
            "id": "content",
            "name": "Content",
            "description": "Task achievement",
            "weight": 0.5,
            "bands": [{"score": s, "descriptor": f"band {s}"} for s in range(1, 6)],
        },
        {
            "id": "language",
            "name": "Language",
            "description": "Range and accuracy",
            "weight": 0.5,
            "bands": [{"score": s, "descriptor": f"band {s}"} for s in range(1, 6)],
        },
    ],
    "total_score": {"min": 0, "max": 10, "pass_threshold": 6},
}

READING_RUBRIC: Dict[str, Any] = {
    "version": "v1",
    "provider": "EOI",
    "level": "B1",
    "task": "reading",
    "criteria": [
        {
            "id": "comprehension",
            "name": "Comprehension",
            "description": "Correct answers",
            "weight": 1.0,
            "bands": [{"score": s, "descriptor": f"band {s}"} for s in range(1, 5)],
        },
    ],
    "total_score": {"min": 0, "max": 20, "pass_threshold": 10},
    "answer_key": {"q1": "B", "q2": "true", "q3": ["a", "c"], "q4": "the station"},
}

ESSAY = (
    "Public transport should be free for students because it widens access to education. "
    "Many learners travel long distances every day and the cost adds up quickly."
)


class FakeCommittee:
    """Stands in for the LLM committee; replies per model name, records every call."""

    def __init__(self) -> None:
        self.replies: Dict[str, Any] = {}
        self.default: Dict[str, Any] = {
            "criteria_scores": [
                {"criterion_id": "content", "score": 4, "band": 4, "evidence": ["clear position"]},
                {"criterion_id": "language", "score": 3, "band": 3, "evidence": ["some errors"]},
            ],
            "overall_feedback": "Solid answer.",
            "strengths": ["organisation"],
            "improvement_areas": ["accuracy"],
        }
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, member: Dict[str, Any], system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        self.calls.append({"member": member, "system": system_prompt, "user": user_prompt})
        reply = self.replies.get(member["name"], self.default)
        if isinstance(reply, Exception):
            raise reply
        return reply


class WebhookSink:
    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def committee():
    return FakeCommittee()


@pytest.fixture()
def webhook_sink():
    return WebhookSink()


@pytest.fixture()
def client(session_factory, committee, webhook_sink):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[scoring_router.get_session_factory] = lambda: session_factory
    app.dependency_overrides[scoring_router.get_model_call] = lambda: committee
    app.dependency_overrides[scoring_router.get_webhook_transport] = lambda: webhook_sink.transport
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, username: str, role: str = "student", tenant_id: str = "neolingus", requests_limit: int = 1000) -> Dict[str, str]:
    """Insert a user with a live session and return bearer headers for it."""
    db.add(AuthUser(username=username, password_hash="unused", role=role, tenant_id=tenant_id, requests_limit=requests_limit))
    session_id = f"sess-{username}"
    db.add(AuthSession(session_id=session_id, username=username))
    db.commit()
    token = create_access_token({"sub": username, "jti": session_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def student_headers(db):
    return make_user(db, "student1")


@pytest.fixture()
def admin_headers(db):
    return make_user(db, "admin1", role="admin")


def add_rubric(db, rubric: Dict[str, Any]) -> ScoringRubric:
    row = ScoringRubric(
        provider=rubric["provider"],
        level=rubric["level"],
        task=rubric["task"],
        version=rubric["version"],
        json=rubric,
        is_active=True,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def writing_rubric(db):
    return add_rubric(db, WRITING_RUBRIC)


@pytest.fixture()
def reading_rubric(db):
    return add_rubric(db, READING_RUBRIC)
