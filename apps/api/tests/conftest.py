import uuid
from datetime import datetime
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from models.server import ManagedServer, ServerStatus
from models.user import User
import services.lifecycle_trigger as lifecycle_trigger


class FakeProvisioner:
    """Records provisioning commands; optionally fails them."""

    def __init__(self, fail_suspend: bool = False, fail_delete: bool = False):
        self.fail_suspend = fail_suspend
        self.fail_delete = fail_delete
        self.suspended: List[str] = []
        self.deleted: List[str] = []

    async def suspend_server(self, server):
        if self.fail_suspend:
            raise RuntimeError("panel unavailable")
        self.suspended.append(server.id)

    async def delete_server(self, server):
        if self.fail_delete:
            raise RuntimeError("panel unavailable")
        self.deleted.append(server.id)


class FakeRedis:
    """In-memory stand-in for the few redis.asyncio calls the lock uses."""

    def __init__(self):
        self.store = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def exists(self, key):
        return int(key in self.store)

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    async def ping(self):
        return True

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep lifecycle settings and the shared trigger deterministic between tests."""
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    monkeypatch.setattr(settings, "CRON_SECRET", "test-cron-secret-value")
    monkeypatch.setattr(settings, "LEDGER_ALLOW_NEGATIVE_BALANCE", False)
    monkeypatch.setattr(settings, "LEDGER_POST_MAX_RETRIES", 5)
    monkeypatch.setattr(settings, "LIFECYCLE_GRACE_PERIOD_HOURS", 24)
    monkeypatch.setattr(settings, "LIFECYCLE_BACKFILL_BATCH_SIZE", 1000)
    monkeypatch.setattr(settings, "LIFECYCLE_MAX_CYCLES_PER_PASS", 100)
    monkeypatch.setattr(settings, "LIFECYCLE_LOCK_BACKEND", "local")
    monkeypatch.setattr(settings, "PANEL_URL", "")
    monkeypatch.setattr(settings, "PANEL_API_KEY", "")
    monkeypatch.setattr(lifecycle_trigger, "_trigger", None)
    yield


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / f"billing-{uuid.uuid4().hex}.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def make_user(session_maker):
    async def _make_user(coins: int = 0, user_id: Optional[str] = None) -> str:
        user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"
        async with session_maker() as session:
            session.add(User(id=user_id, email=f"{user_id}@example.test", coins=coins))
            await session.commit()
        return user_id

    return _make_user


@pytest.fixture
def make_server(session_maker):
    async def _make_server(
        user_id: str,
        *,
        billing_cycle: str = "1d",
        price_per_cycle: int = 100,
        expiry_at: Optional[datetime] = None,
        status: ServerStatus = ServerStatus.ACTIVE,
        suspended_at: Optional[datetime] = None,
        panel_server_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        server = ManagedServer(
            user_id=user_id,
            name="survival",
            billing_cycle=billing_cycle,
            price_per_cycle=price_per_cycle,
            expiry_at=expiry_at,
            status=status,
            suspended_at=suspended_at,
            panel_server_id=panel_server_id,
        )
        if created_at is not None:
            server.created_at = created_at
        async with session_maker() as session:
            session.add(server)
            await session.commit()
            return server.id

    return _make_server


@pytest.fixture
def load_server(session_maker):
    async def _load_server(server_id: str) -> ManagedServer:
        async with session_maker() as session:
            return await session.get(ManagedServer, server_id)

    return _load_server


@pytest.fixture
def load_user(session_maker):
    async def _load_user(user_id: str) -> User:
        async with session_maker() as session:
            return await session.get(User, user_id)

    return _load_user


@pytest.fixture
def fake_redis(monkeypatch):
    """Route every redis.asyncio client in the app to one shared in-memory store."""
    client = FakeRedis()
    monkeypatch.setattr(settings, "LIFECYCLE_LOCK_BACKEND", "redis")
    monkeypatch.setattr(lifecycle_trigger.redis, "from_url", lambda *args, **kwargs: client)
    return client
