"""
Shared fixtures for the CLO analysis backend tests.

Each test function gets its own SQLite database file (aiosqlite) under the
test's tmp_path, created with create_all, and its own upload directory.
The generative service is replaced by ``FakeGenerativeService`` so no test
ever talks to Ollama.
"""
from __future__ import annotations

import asyncio
import os
import tempfile
from typing import AsyncGenerator, Callable, List, Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Override DATABASE_URL *before* any app module is imported, so that
# settings.DATABASE_URL and the global engine never point at Postgres.
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.mkdtemp(prefix="clo-tests-"), "global.db"),
)

from app.config import settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.dependencies.services import get_generative_service  # noqa: E402
from app.main import app  # noqa: E402
from app.models import database_models  # noqa: E402,F401
from app.services.generative import GenerativeTextService  # noqa: E402
from app.services.run_registry import run_registry  # noqa: E402


# ---------------------------------------------------------------------------
# Fake generative service
# ---------------------------------------------------------------------------

Reply = Union[str, Exception, Callable[[str], str]]


class FakeGenerativeService(GenerativeTextService):
    """
    Returns canned replies in order; the last reply repeats.

    A reply may be a string, an exception instance (raised), or a callable
    taking the prompt.  If ``gate`` is set, every call waits for it first.
    """

    def __init__(self, *replies: Reply, gate: Optional[asyncio.Event] = None) -> None:
        self.replies: List[Reply] = list(replies) or ["{}"]
        self.prompts: List[str] = []
        self.gate = gate
        self.started = asyncio.Event()

    async def complete(self, prompt: str, max_tokens: int = 2000) -> str:
        self.prompts.append(prompt)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        index = min(len(self.prompts) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    @property
    def calls(self) -> int:
        return len(self.prompts)


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    """Fresh upload dir and an empty run registry for every test."""
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    run_registry.reset()
    yield
    run_registry.reset()


@pytest_asyncio.fixture
async def db_session(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session on a brand-new SQLite database for each test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False, poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    await engine.dispose()


@pytest.fixture
def fake_llm() -> FakeGenerativeService:
    return FakeGenerativeService()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, fake_llm: FakeGenerativeService
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the DB and generative
    service dependencies overridden.
    """

    async def _override_get_db():
        yield db_session
        await db_session.commit()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_generative_service] = lambda: fake_llm

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

AUTH_HEADERS = {
    "X-User-Id": "test-user-1",
    "X-User-Email": "test1@example.com",
    "X-User-Name": "Test User 1",
}

AUTH_HEADERS_USER2 = {
    "X-User-Id": "test-user-2",
    "X-User-Email": "test2@example.com",
    "X-User-Name": "Test User 2",
}

SAMPLE_CLOS = [
    ("CLO-1", "Explain the principles of relational database normalization"),
    ("CLO-2", "Design network protocols for reliable data transmission"),
]

SAMPLE_QUESTIONS = (
    "1. Explain the principles of database normalization with an example.\n"
    "2. Design a reliable protocol for data transmission over a lossy network.\n"
    "3. Describe the history of computing machines in Europe."
)


async def create_clo_set(db: AsyncSession, clos=SAMPLE_CLOS, user_id: str = "test-user-1"):
    """Insert a user, a CLO set and its CLOs directly; returns the CLOSet."""
    from app.models.database_models import CLO, CLOSet, User

    user = await db.get(User, user_id)
    if user is None:
        db.add(User(id=user_id, email=f"{user_id}@example.com"))
    clo_set = CLOSet(name="Databases & Networks", user_id=user_id)
    db.add(clo_set)
    await db.flush()
    for i, (code, description) in enumerate(clos):
        db.add(CLO(clo_set_id=clo_set.id, code=code, description=description, order_index=i))
    await db.commit()
    return clo_set
