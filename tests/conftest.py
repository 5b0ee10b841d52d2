"""Global pytest fixtures for the Vouchboard indexer.

This module provides shared fixtures for testing including:
- A file-backed SQLite database (aiosqlite) with the full schema
- Database sessions through the application's session factory
- An in-memory content source standing in for GitHub
"""

import hashlib
from collections.abc import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from vouchboard.config import get_settings
from vouchboard.database import configure_session_factory, create_schema, get_db_session
from vouchboard.services.github_source import ContentAbsence, FetchedContent


# ===========================================
# SETTINGS
# ===========================================


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch) -> Generator[None, None, None]:
    """Rebuild settings per test so monkeypatched VOUCHBOARD_* variables apply."""
    monkeypatch.delenv("VOUCHBOARD_GITHUB_TOKEN", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ===========================================
# DATABASE FIXTURES
# ===========================================


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite database with all tables and route sessions to it.

    A file rather than ``:memory:`` so that concurrent sessions get their own
    connections, as they would against PostgreSQL.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vouchboard.db'}")
    await create_schema(engine)

    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    configure_session_factory(factory)

    yield engine

    configure_session_factory(None)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A session on the test database. Commit before handing control to the indexer."""
    async with get_db_session() as session:
        yield session


# ===========================================
# CONTENT SOURCE FIXTURES
# ===========================================


class FakeContentSource:
    """In-memory stand-in for GitHub: publish text per slug, or mark it absent."""

    def __init__(self) -> None:
        self.files: dict[str, FetchedContent] = {}
        self.absences: dict[str, ContentAbsence] = {}
        self.errors: dict[str, Exception] = {}
        self.fetched: list[str] = []

    def publish(
        self,
        slug: str,
        text: str,
        file_path: str = ".github/VOUCHED.td",
        commit_sha: str | None = None,
    ) -> FetchedContent:
        content = FetchedContent(
            text=text,
            file_path=file_path,
            commit_sha=commit_sha or hashlib.sha1(text.encode()).hexdigest(),
            default_branch="main",
            commit_url=f"https://github.com/{slug}/commit/{commit_sha or 'head'}",
            source_url=f"https://github.com/{slug}/blob/main/{file_path}",
            commit_actor="maintainer",
            committed_at="2026-01-01T00:00:00Z",
        )
        self.absences.pop(slug, None)
        self.errors.pop(slug, None)
        self.files[slug] = content
        return content

    def mark_absent(self, slug: str, kind: str, message: str = "Not Found") -> None:
        self.files.pop(slug, None)
        self.absences[slug] = ContentAbsence(kind, message)

    def fail_with(self, slug: str, error: Exception) -> None:
        self.errors[slug] = error

    async def fetch(self, slug: str) -> FetchedContent | ContentAbsence:
        self.fetched.append(slug)
        if slug in self.errors:
            raise self.errors[slug]
        if slug in self.absences:
            return self.absences[slug]
        if slug in self.files:
            return self.files[slug]
        return ContentAbsence("missing_repo", "Not Found")


@pytest.fixture
def content_source() -> FakeContentSource:
    return FakeContentSource()
