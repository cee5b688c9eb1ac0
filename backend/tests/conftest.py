import re
from datetime import timedelta

import pytest

from dutyhub import models
from dutyhub.config import Settings
from dutyhub.database import build_engine, build_session_factory, create_db_and_tables
from dutyhub.repositories import ProjectRepository, UserRepository
from dutyhub.results import ServiceMessage, ServiceResult
from dutyhub.security import PasswordHasher, TokenHandler
from dutyhub.utils.clock import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(anyio_backend, tmp_path):
    """Fresh SQLite file database per test."""
    async_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await create_db_and_tables(async_engine)
    yield async_engine
    await async_engine.dispose()


@pytest.fixture
async def session(engine):
    async with build_session_factory(engine)() as db_session:
        yield db_session


@pytest.fixture
def config():
    test_settings = Settings()
    test_settings.JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"
    return test_settings


@pytest.fixture
def tokens(config):
    return TokenHandler(config)


class RecordingMailer:
    """Keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return ServiceResult.success(True)

    def last_code(self):
        return re.search(r"\b(\d{6})\b", self.sent[-1][2]).group(1)


class FailingMailer:
    def __init__(self, code="MAIL-500101", description="relay unreachable"):
        self.code = code
        self.description = description

    def send(self, to, subject, body):
        return ServiceResult.failure(ServiceMessage.error(self.code, self.description))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def make_user(session):
    """Insert a user with a real password hash and return it."""
    users = UserRepository(session)
    hasher = PasswordHasher()

    async def _make(username="alice", password="secret1", email=None, use_mfa=False):
        password_hash, password_salt = hasher.create_hash(password)
        user = models.User(
            username=username,
            email=email or f"{username}@example.com",
            password_hash=password_hash,
            password_salt=password_salt,
            use_mfa=use_mfa,
        )
        return await users.add(user)

    return _make


@pytest.fixture
def make_project(session, make_user):
    projects = ProjectRepository(session)

    async def _make(name="Apollo", manager=None):
        manager = manager or await make_user(username=f"manager_{name.lower()}")
        project = models.Project(name=name, due_date=utcnow() + timedelta(days=30), manager_id=manager.id)
        return await projects.add(project)

    return _make


@pytest.fixture
def failing_mailer():
    return FailingMailer()
