"""Pytest fixtures for ledgersync backend tests."""

import os
import tempfile

# Settings are read at import time; keep the app away from a real database
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'ledgersync-tests.db')}",
)
os.environ.setdefault("DAILY_SYNC_ENABLED", "false")

from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402
from datetime import datetime  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from ledgersync.database import build_engine, build_session_maker, get_db, init_db  # noqa: E402
from ledgersync.entities import ALL_ENTITY_TYPES, EntityType, get_entity_config  # noqa: E402
from ledgersync.main import app  # noqa: E402
from ledgersync.models import (  # noqa: E402
    SessionScope,
    SessionStatus,
    SessionType,
    SyncCheckpoint,
    SyncSession,
    SyncSessionLease,
)
from ledgersync.services.checkpoint_store import CheckpointStore  # noqa: E402
from ledgersync.services.context import SyncContext  # noqa: E402
from ledgersync.services.orchestrator import SyncOrchestrator, get_orchestrator  # noqa: E402
from ledgersync.services.staging_writer import StagingWriter  # noqa: E402
from ledgersync.services.xero_client import Page  # noqa: E402

TEST_TENANT = "test-tenant"


def xero_date(value: datetime) -> str:
    """Format a datetime the way Xero's JSON does."""
    return f"/Date({int(value.timestamp() * 1000)}+0000)/"


def xero_record(
    entity_type: EntityType | str, external_id: str, updated: datetime, **fields: Any
) -> dict[str, Any]:
    """Build a raw API record for an entity type."""
    config = get_entity_config(entity_type)
    return {config.id_field: external_id, "UpdatedDateUTC": xero_date(updated), **fields}


async def seed_running_session(
    session_maker: async_sessionmaker[AsyncSession], session_id: str, acquired_at: datetime
) -> None:
    """Insert a running session row that holds the test tenant's lease."""
    async with session_maker() as db:
        db.add(
            SyncSession(
                id=session_id,
                session_type=SessionType.MANUAL.value,
                scope=SessionScope.FULL.value,
                target_entities=[str(entity) for entity in ALL_ENTITY_TYPES],
                status=SessionStatus.RUNNING.value,
                tenant_id=TEST_TENANT,
                initiated_by="someone-else",
                started_at=acquired_at,
                total_records_processed=0,
                total_api_calls=0,
            )
        )
        db.add(
            SyncSessionLease(tenant_id=TEST_TENANT, session_id=session_id, acquired_at=acquired_at)
        )
        await db.commit()


class FakeXeroClient:
    """
    Stands in for XeroClient.fetch_page.

    Pages are queued per entity type; an Exception in the queue is raised
    when its page is requested. Page tokens are 1-based page numbers.
    """

    def __init__(self):
        self.pages: dict[str, list[list[dict[str, Any]] | Exception]] = {}
        self.calls: list[tuple[str, datetime, str | None]] = []
        self.before_fetch: Callable[[str, int, SyncContext], Awaitable[None]] | None = None

    def queue(self, entity_type: EntityType | str, *pages: list[dict[str, Any]] | Exception) -> None:
        self.pages[str(entity_type)] = list(pages)

    def cursors_for(self, entity_type: EntityType | str) -> list[datetime]:
        return [cursor for entity, cursor, _ in self.calls if entity == str(entity_type)]

    async def fetch_page(
        self,
        entity_type: EntityType | str,
        cursor: datetime,
        page_token: str | None,
        context: SyncContext,
    ) -> Page:
        entity = str(entity_type)
        self.calls.append((entity, cursor, page_token))
        context.raise_if_expired()

        index = int(page_token) - 1 if page_token else 0
        if self.before_fetch is not None:
            await self.before_fetch(entity, index, context)

        queued = self.pages.get(entity, [])
        if index >= len(queued):
            return Page(records=[], api_calls=1, page_number=index + 1)

        item = queued[index]
        if isinstance(item, Exception):
            raise item

        next_token = str(index + 2) if index + 1 < len(queued) else None
        return Page(
            records=item,
            next_page_token=next_token,
            api_calls=1,
            page_number=index + 1,
        )


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """File-backed SQLite engine so every session sees the same database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(async_engine)


@pytest.fixture
def checkpoint_store(session_maker) -> CheckpointStore:
    return CheckpointStore(session_maker)


@pytest.fixture
def staging_writer(session_maker) -> StagingWriter:
    return StagingWriter(session_maker)


@pytest.fixture
def fake_client() -> FakeXeroClient:
    return FakeXeroClient()


@pytest.fixture
def orchestrator(session_maker, fake_client) -> SyncOrchestrator:
    return SyncOrchestrator(session_maker, client=fake_client, tenant_id=TEST_TENANT)


@pytest.fixture
def set_cursor(session_maker) -> Callable[[EntityType | str, datetime], Awaitable[None]]:
    """Move an entity's stored cursor directly, bypassing the store."""

    async def _set(entity_type: EntityType | str, cursor: datetime) -> None:
        await CheckpointStore(session_maker).read(entity_type)
        async with session_maker() as db:
            await db.execute(
                update(SyncCheckpoint)
                .where(SyncCheckpoint.entity_type == str(entity_type))
                .values(cursor=cursor)
            )
            await db.commit()

    return _set


@pytest_asyncio.fixture
async def client(session_maker, orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database and orchestrator overrides."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()

