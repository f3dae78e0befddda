"""pytest fixtures for genledger tests.

Provides:
- test_env: Autouse fixture marking the settings environment as "test"
- session_factory: Function-scoped async SQLite session factory with tables created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- memory_store: In-process history store counting writes
- events: Event bus recording every published notification
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genledger.core.database import create_tables, setup_db_session
from genledger.services.events import EventBus
from genledger.services.history.store import MemoryHistoryStore
from genledger.uow import create_uow_factory


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Skip production config validation for every test."""
    monkeypatch.setenv("APP_ENV", "test")


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to a fresh SQLite database file.

    Each test gets its own database file, so no truncation is needed.
    """
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'genledger_test.db'}"
    factory = setup_db_session(db_url)
    engine = factory.kw["bind"]
    await create_tables(engine)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def memory_store() -> MemoryHistoryStore:
    return MemoryHistoryStore()


@pytest.fixture
def events() -> EventBus:
    bus = EventBus()
    bus.keep_history = True
    return bus
