"""Test fixtures — create/drop tables around each async test."""

import json
import os
from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any package import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_sequencer.db"
os.environ["NOTIFY_WEBHOOK_URL"] = ""
os.environ["CREATE_TABLES_ON_STARTUP"] = "false"

from sequencer.database import Base, async_session, engine  # noqa: E402
from sequencer.main import app  # noqa: E402
from sequencer.models import WorkflowDefinition  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def make_workflow(db):
    """Store a workflow definition directly: await make_workflow("wf-1", graph)."""

    async def _make(workflow_id: str, definition: dict, tenant_id: str = "t1", version: int = 1):
        row = WorkflowDefinition(
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            name=workflow_id,
            version=version,
            status="active",
            definition=json.dumps(definition),
        )
        db.add(row)
        await db.commit()
        return row

    return _make
