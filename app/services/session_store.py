# =============================================================================
# Clarification Session Store — Suspended Searches Keyed by Session Id
# =============================================================================
#
# When the search loop asks the user a clarifying question it parks its
# state here. The next turn for the same session id pops it and resumes.
#
# DESIGN DECISION: Protocol with get/put/delete/pop/sweep.
# The orchestrator never touches a concrete dict. Two implementations:
#   - InMemoryClarificationStore: single process, asyncio.Lock, expiry
#     timestamps, swept by a background task started in the app lifespan
#   - RedisClarificationStore: multi-instance, JSON payload, native key TTL
#     (sweep is a no-op; Redis expires keys itself)
#
# DESIGN DECISION: pop() is the resume primitive. Reading and deleting in
# one step means two concurrent resumes of the same session cannot both
# continue the same suspended loop.
#
# CONCURRENCY: one writer per active session (the request that suspended
# it), plus the sweeper deleting expired entries. The lock makes each
# operation atomic with respect to the sweeper.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

from app.config import settings
from app.models.session import ClarificationSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ClarificationStore(Protocol):
    async def get(self, session_id: str) -> ClarificationSession | None: ...

    async def put(self, session: ClarificationSession) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def pop(self, session_id: str) -> ClarificationSession | None: ...

    async def sweep(self) -> int: ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Process Memory
# ---------------------------------------------------------------------------


class InMemoryClarificationStore:
    """
    Process-local store with a fixed TTL per entry.

    Expired entries are invisible to get/pop even before the sweeper
    removes them.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.clarification_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, ClarificationSession]] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> ClarificationSession | None:
        async with self._lock:
            return self._live_entry(session_id)

    async def put(self, session: ClarificationSession) -> None:
        async with self._lock:
            self._entries[session.session_id] = (self._clock() + self._ttl, session)
        logger.info("Stored clarification session %s", session.session_id[:16])

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._entries.pop(session_id, None)

    async def pop(self, session_id: str) -> ClarificationSession | None:
        async with self._lock:
            session = self._live_entry(session_id)
            self._entries.pop(session_id, None)
            return session

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Swept %d expired clarification sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, session_id: str) -> ClarificationSession | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        expires_at, session = entry
        if expires_at <= self._clock():
            return None
        return session


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisClarificationStore:
    """
    Shared store for multi-instance deployments.

    Sessions are stored as JSON under `clarification:<session_id>` with a
    key TTL; Redis handles expiry.
    """

    key_prefix = "clarification:"

    def __init__(self, client=None, ttl_seconds: int | None = None) -> None:
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.from_url(settings.redis_url, decode_responses=True)
        self._redis = client
        self._ttl = ttl_seconds or settings.clarification_ttl_seconds

    async def get(self, session_id: str) -> ClarificationSession | None:
        payload = await self._redis.get(self._key(session_id))
        return self._decode(payload)

    async def put(self, session: ClarificationSession) -> None:
        await self._redis.set(
            self._key(session.session_id), session.model_dump_json(), ex=self._ttl,
        )

    async def delete(self, session_id: str) -> None:
        await self._redis.delete(self._key(session_id))

    async def pop(self, session_id: str) -> ClarificationSession | None:
        payload = await self._redis.getdel(self._key(session_id))
        return self._decode(payload)

    async def sweep(self) -> int:
        return 0

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    @staticmethod
    def _decode(payload: str | None) -> ClarificationSession | None:
        if payload is None:
            return None
        return ClarificationSession.model_validate_json(payload)


# ---------------------------------------------------------------------------
# Factory & Sweeper
# ---------------------------------------------------------------------------

_store: InMemoryClarificationStore | RedisClarificationStore | None = None


def get_clarification_store() -> InMemoryClarificationStore | RedisClarificationStore:
    """Lazy singleton chosen by settings.session_store_backend."""
    global _store
    if _store is None:
        if settings.session_store_backend == "redis":
            _store = RedisClarificationStore()
        else:
            _store = InMemoryClarificationStore()
        logger.info("Clarification store: %s", type(_store).__name__)
    return _store


async def run_sweeper(store: ClarificationStore, interval_seconds: float) -> None:
    """
    Periodically drop expired sessions until cancelled.

    A failing sweep is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.sweep()
        except Exception as e:
            logger.warning("Clarification sweep failed: %s", e)
