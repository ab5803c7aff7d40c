from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

import database
from config import settings
from main import app
from services.lifecycle_trigger import (
    LIFECYCLE_LOCK_KEY,
    LifecycleTrigger,
    RedisSingleFlightGuard,
    get_lifecycle_trigger,
)


@pytest.mark.asyncio
async def test_liveness_and_root():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        live = await client.get("/health/live")
        root = await client.get("/")

    assert live.json() == {"alive": True}
    assert root.json()["status"] == "running"


@pytest.mark.asyncio
async def test_readiness_requires_cron_secret(monkeypatch):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ready = await client.get("/health/ready")
        monkeypatch.setattr(settings, "CRON_SECRET", "")
        not_ready = await client.get("/health/ready")

    assert ready.status_code == 200
    assert not_ready.status_code == 503
    assert not_ready.json() == {"ready": False, "missing": ["CRON_SECRET"]}


@pytest.mark.asyncio
async def test_health_reports_lock_held_by_another_process(fake_redis, tmp_path, monkeypatch):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'health.db'}")
    monkeypatch.setattr(database, "engine", engine)
    trigger = LifecycleTrigger(RedisSingleFlightGuard(), provisioner=MagicMock())
    app.dependency_overrides[get_lifecycle_trigger] = lambda: trigger
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            idle = (await client.get("/health")).json()
            fake_redis.store[LIFECYCLE_LOCK_KEY] = "worker-token"
            busy = (await client.get("/health")).json()
    finally:
        app.dependency_overrides.pop(get_lifecycle_trigger, None)
        await engine.dispose()

    assert idle["redis"] == "up"
    assert idle["database"] == "up"
    assert idle["lifecycle_pass_in_progress"] is False
    assert trigger.guard.in_progress is False
    assert busy["lifecycle_pass_in_progress"] is True
