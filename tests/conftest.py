"""Common test fixtures: in-memory SQLite, fake blob store and fake Redis."""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.blob_store import get_blob_store
from app.core.database import Base, get_db
from app.core.redis_client import get_redis
from app.services.merge import MergeEngine
from app.services.notes import NoteRepository
from app.services.share import ShareCache
from app.services.tags import TagIndexer
from tests.fakes import TOKENS, FakeBlobStore, FakeRedis


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def kv():
    return FakeRedis()


@pytest.fixture
def notes(db, blobs, kv):
    return NoteRepository(db, blobs, kv)


@pytest.fixture
def merger(db, blobs, kv):
    return MergeEngine(db, blobs, kv)


@pytest.fixture
def shares(db, blobs, kv):
    return ShareCache(db, kv, blobs)


@pytest.fixture
def tags(db):
    return TagIndexer(db)


@pytest.fixture
async def client(session_factory, blobs, kv):
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_blob_store():
        return blobs

    async def override_get_redis():
        return kv

    for token, user in TOKENS.items():
        await kv.set(f"session:{token}", json.dumps({"id": user.id, "isAdmin": user.is_admin}))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = override_get_blob_store
    app.dependency_overrides[get_redis] = override_get_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
