"""
Test configuration and fixtures.
Every test gets its own in-memory SQLite database.
"""
from typing import AsyncGenerator, Dict, Generator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from branchchat.config import Settings
from branchchat.database import create_engine_for, create_session_factory, init_db
from branchchat.main import create_app
from branchchat.repository import MessageRepository, UserRepository

MEMORY_DB = "sqlite+aiosqlite://"


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=MEMORY_DB, log_level="WARNING")


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    """Create a test FastAPI application instance."""
    return create_app(settings)


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """Test client with the app lifespan (table creation) running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
async def session() -> AsyncGenerator[AsyncSession, None]:
    """A session on a fresh database, with users user-1, user-2 and user-3."""
    engine = create_engine_for(MEMORY_DB)
    await init_db(engine)
    factory = create_session_factory(engine)
    async with factory() as db:
        users = UserRepository(db)
        for user_id in ("user-1", "user-2", "user-3"):
            await users.create(user_id=user_id, name=user_id)
        await db.commit()
        yield db
    await engine.dispose()


async def get_message(session: AsyncSession, message_id: str):
    """Reload a message row (safe after a rollback expired the identity map)."""
    return await MessageRepository(session).get_by_id(message_id)


async def active_flags(session: AsyncSession, conversation_id: str) -> Dict[str, Optional[bool]]:
    """Snapshot of is_active_branch for every message of a conversation."""
    rows = await MessageRepository(session).query_by_conversation(conversation_id)
    return {row.id: row.is_active_branch for row in rows}


async def assert_single_active_path(session: AsyncSession, conversation_id: str) -> None:
    """No message has more than one live active child."""
    rows = await MessageRepository(session).query_by_conversation(conversation_id)
    active_children: Dict[str, int] = {}
    for row in rows:
        # Each root starts its own tree, so only parented rows compete
        if row.parent_id is None or row.deleted_at is not None or row.is_active_branch is False:
            continue
        active_children[row.parent_id] = active_children.get(row.parent_id, 0) + 1
    assert all(count <= 1 for count in active_children.values()), active_children
