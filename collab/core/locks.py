"""Per-key mutual exclusion for conversations and wallets.

Two backends share one interface:

* ``memory``: an ``asyncio.Lock`` per key, valid for a single API process.
* ``redis``: a Redis lease (``SET NX PX`` based lock) for multi-instance
  deployments.

Locks are reentrant per task: a transition that already holds
``wallet:<id>`` may call ledger functions that acquire it again. Callers
that need both a conversation and a wallet always take the conversation
first.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar

import redis.asyncio as aioredis

from collab.core.config import settings

logger = logging.getLogger(__name__)

# Keys held by the current task (and tasks it spawned with a copied context)
_held: ContextVar[frozenset[str]] = ContextVar("held_locks", default=frozenset())


class _MemoryBackend:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)


class _RedisBackend:
    def __init__(self) -> None:
        self._redis: aioredis.Redis | None = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(settings.redis_url)
        return self._redis

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lease = self._client().lock(
            f"lock:{key}",
            timeout=settings.lock_lease_seconds,
            blocking_timeout=settings.transition_timeout_seconds,
        )
        acquired = await lease.acquire()
        if not acquired:
            raise TimeoutError(f"Could not acquire lease for {key}")
        try:
            yield
        finally:
            try:
                await lease.release()
            except Exception:
                logger.exception("Lease release failed for %s", key)


class KeyedLock:
    """Reentrant keyed mutex over a pluggable backend."""

    def __init__(self, backend: str | None = None) -> None:
        kind = backend or settings.lock_backend
        if kind == "redis":
            self._backend: _MemoryBackend | _RedisBackend = _RedisBackend()
        else:
            self._backend = _MemoryBackend()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        held = _held.get()
        if key in held:
            yield
            return
        async with self._backend.acquire(key):
            token = _held.set(held | {key})
            try:
                yield
            finally:
                _held.reset(token)


locks = KeyedLock()


def conversation_lock(conversation_id: int):
    return locks.hold(f"conversation:{conversation_id}")


def wallet_lock(user_id: int):
    return locks.hold(f"wallet:{user_id}")


@asynccontextmanager
async def wallet_locks(*user_ids: int) -> AsyncIterator[None]:
    """Hold several wallet locks, always in ascending user id order."""
    ordered = sorted(set(user_ids))
    if not ordered:
        yield
        return
    async with wallet_lock(ordered[0]):
        async with wallet_locks(*ordered[1:]):
            yield
