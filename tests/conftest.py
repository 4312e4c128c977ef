"""Pytest configuration and shared fixtures.

Provides:
- client: FastAPI TestClient against the app (in-memory SQLite)
- persist / make_user / auth_headers: seed rows and authenticate as them
- seed_tags: a session full of tagged messages for the training view
- sent_emails / llm_replies / fine_tune_fake: fakes for the outbound services
"""

import itertools
import os
import uuid

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["SENDGRID_API_KEY"] = "sg-test"
os.environ["SERVICE_ROLE_KEY"] = "test-service-key"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from therapy_chat.main import app  # noqa: E402
from therapy_chat.models.database import ChatSession, EmotionLog, Message, User  # noqa: E402
from therapy_chat.services.database import database_service  # noqa: E402
from therapy_chat.services.email import EmailError, email_service  # noqa: E402
from therapy_chat.services.exports import export_service  # noqa: E402
from therapy_chat.services.llm import llm_service  # noqa: E402
from therapy_chat.utils.auth import create_access_token  # noqa: E402

@pytest.fixture(autouse=True)
def reset_database():
    """Every test starts from empty tables."""
    database_service.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def service_headers() -> dict:
    """Headers the scheduler / workers send to the backend functions."""
    return {"x-service-key": "test-service-key"}


# ==================================================
# Seeding
# ==================================================
@pytest.fixture
def persist():
    def _persist(instance):
        with database_service.session() as session:
            session.add(instance)
            session.commit()
            session.refresh(instance)
        return instance

    return _persist


@pytest.fixture
def make_user(persist):
    def _make_user(role: str = "user", email: str = None, full_name: str = None, password: str = "") -> User:
        return persist(
            User(
                email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
                full_name=full_name,
                role=role,
                hashed_password=User.hash_password(password) if password else "",
            )
        )

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id).access_token}"}

    return _auth_headers


@pytest.fixture
def seed_tags(persist, make_user):
    """
    Create a session with one tagged message per entry of `tags`.
    Each entry is a dict with `emotion` and optionally tone, intensity,
    topic, alignment, role and content.
    """

    def _seed(tags, owner: User = None, shared_with=()):
        owner = owner or make_user()
        session = persist(
            ChatSession(user_id=owner.id, title="Seeded", goal="Sleep better", shared_with=list(shared_with))
        )
        logs = []
        for index, tag in enumerate(tags):
            message = persist(
                Message(
                    session_id=session.id,
                    role=tag.get("role", "user"),
                    content=tag.get("content", f"message number {index}"),
                )
            )
            logs.append(
                persist(
                    EmotionLog(
                        source_id=message.id,
                        session_id=session.id,
                        user_id=owner.id,
                        emotion=tag["emotion"],
                        tone=tag.get("tone", "neutral"),
                        intensity=tag.get("intensity", 0.5),
                        topic=tag.get("topic", "work"),
                        alignment_score=tag.get("alignment"),
                    )
                )
            )
        return session, logs

    return _seed


# ==================================================
# Fakes for outbound services
# ==================================================
@pytest.fixture
def sent_emails(monkeypatch):
    """Records every email instead of calling SendGrid. Set `.fail = True` to reject."""

    class Outbox(list):
        fail = False

    outbox = Outbox()

    async def fake_send(to, subject, html):
        if outbox.fail:
            raise EmailError("Email delivery failed: rejected")
        outbox.append({"to": to, "subject": subject, "html": html})

    monkeypatch.setattr(email_service, "send", fake_send)
    return outbox


@pytest.fixture
def llm_replies(monkeypatch):
    """Queue of canned model replies; the last one repeats once the queue is drained."""

    class Replies(list):
        prompts = []

    replies = Replies(["A calm reply."])

    async def fake_complete(messages, model_name=None, **kwargs):
        replies.prompts.append(messages)
        return replies.pop(0) if len(replies) > 1 else replies[0]

    monkeypatch.setattr(llm_service, "complete", fake_complete)
    return replies


class FakeFineTuneClient:
    def __init__(self):
        self.uploads = []
        self.statuses = {}
        self._job_ids = itertools.count(1)

    async def upload_training_file(self, file_name, content):
        self.uploads.append((file_name, content))
        return {"id": f"file-{len(self.uploads)}"}

    async def create_job(self, file_id, model=None):
        return {"id": f"ftjob-{next(self._job_ids)}", "status": "validating_files", "model": model}

    async def retrieve_job(self, job_id):
        return {"id": job_id, "status": self.statuses.get(job_id, "running"), "model": None, "error": None}


@pytest.fixture
def fine_tune_fake(monkeypatch):
    """Swap the OpenAI client and pollers used by the export service."""
    fake = FakeFineTuneClient()
    fake.kickoffs = []
    fake.polls = []
    monkeypatch.setattr(export_service, "client", fake)
    monkeypatch.setattr(export_service, "kickoff", lambda snapshot_id, job_id: fake.kickoffs.append((snapshot_id, job_id)))
    monkeypatch.setattr(export_service, "poller", lambda snapshot_id, job_id: fake.polls.append((snapshot_id, job_id)))
    return fake
