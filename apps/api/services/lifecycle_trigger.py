"""Single-flight entrypoint for server lifecycle reconciliation passes.

External schedulers (cron, the in-process loop, RQ jobs) may fire while a
previous pass is still running. Overlapping calls must not run a second pass,
so every caller goes through ``LifecycleTrigger.run_once`` which skips when the
guard is already held and always releases it when the pass ends.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import redis.asyncio as redis

from config import settings
from database import async_session_maker
from services.provisioning import Provisioner, get_provisioner
from services.server_lifecycle import PassSummary, run_reconciliation_pass

logger = logging.getLogger(__name__)

LIFECYCLE_LOCK_KEY = "gsb:lifecycle:pass"

# Deletes the key only when it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SingleFlightGuard(Protocol):
    @property
    def in_progress(self) -> bool: ...

    async def is_locked(self) -> bool: ...

    async def try_acquire(self) -> bool: ...

    async def release(self) -> None: ...


class LocalSingleFlightGuard:
    """Process-wide "pass in progress" flag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def is_locked(self) -> bool:
        return self._lock.locked()

    async def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisSingleFlightGuard:
    """Cross-process guard backed by a Redis ``SET NX EX`` lock.

    The TTL bounds how long a crashed holder can block later passes.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        key: str = LIFECYCLE_LOCK_KEY,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._client = client
        self.key = key
        self.ttl_seconds = max(int(ttl_seconds or settings.LIFECYCLE_LOCK_TTL_SECONDS), 1)
        self._token: Optional[str] = None

    def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        return self._client

    @property
    def in_progress(self) -> bool:
        """Whether this process holds the lock. Use ``is_locked`` for any holder."""
        return self._token is not None

    async def is_locked(self) -> bool:
        """Whether any process currently holds the lock."""
        return bool(await self._redis().exists(self.key))

    async def try_acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._redis().set(self.key, token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            return False
        self._token = token
        return True

    async def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        await self._redis().eval(_RELEASE_SCRIPT, 1, self.key, token)


def build_guard(backend: Optional[str] = None) -> SingleFlightGuard:
    backend = (backend or settings.LIFECYCLE_LOCK_BACKEND or "local").strip().lower()
    if backend == "redis":
        return RedisSingleFlightGuard()
    if backend != "local":
        raise ValueError(f"Unknown LIFECYCLE_LOCK_BACKEND: {backend}")
    return LocalSingleFlightGuard()


@dataclass
class TriggerResult:
    timestamp: datetime
    skipped: bool = False
    summary: Optional[PassSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "timestamp": self.timestamp.isoformat()}
        if self.skipped:
            payload["skipped"] = True
            return payload
        if self.summary is not None:
            payload.update(self.summary.to_dict())
        return payload


class LifecycleTrigger:
    """Run at most one reconciliation pass at a time."""

    def __init__(
        self,
        guard: Optional[SingleFlightGuard] = None,
        *,
        session_factory: Optional[Callable[[], Any]] = None,
        provisioner: Optional[Provisioner] = None,
    ) -> None:
        self.guard = guard or build_guard()
        self._session_factory = session_factory
        self._provisioner = provisioner

    async def run_once(self, now: Optional[datetime] = None) -> TriggerResult:
        now = now or datetime.now(timezone.utc)
        if not await self.guard.try_acquire():
            logger.info("lifecycle_trigger_skipped reason=pass_in_progress")
            return TriggerResult(timestamp=now, skipped=True)

        try:
            session_factory = self._session_factory or async_session_maker
            provisioner = self._provisioner or get_provisioner()
            async with session_factory() as db:
                summary = await run_reconciliation_pass(db, now=now, provisioner=provisioner)
        finally:
            await self.guard.release()

        return TriggerResult(timestamp=summary.now, summary=summary)


_trigger: Optional[LifecycleTrigger] = None


def get_lifecycle_trigger() -> LifecycleTrigger:
    """Return the process-wide trigger (FastAPI dependency)."""
    global _trigger
    if _trigger is None:
        _trigger = LifecycleTrigger()
    return _trigger
