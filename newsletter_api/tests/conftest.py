from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file unless a real database is provided.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="newsletter-api-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}")
os.environ.setdefault("EMAIL_BASE_URL", "http://email-api.local")

import pytest  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from newsletter_api.core.config import get_settings  # noqa: E402
from newsletter_api.domain.models import Base  # noqa: E402
from newsletter_api.persistence.db import SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
async def create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def reset_tables(create_schema) -> None:
    # Children first so foreign keys never block the cleanup.
    async with SessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(delete(table))
        await session.commit()
    yield


@pytest.fixture
def settings_env(monkeypatch):
    # Override settings through the environment and drop the cached instance around the test.
    def _apply(**values: object) -> None:
        for name, value in values.items():
            monkeypatch.setenv(name.upper(), str(value))
        get_settings.cache_clear()

    yield _apply
    get_settings.cache_clear()
