"""Redis-backed stores for the input buffer and context layers.

Input buffer (per character):
  ``recollect:buffer:{character}`` sorted set of fragment ids (score = created_at)
  ``recollect:buffer:{character}:data`` hash of fragment id -> fragment JSON
Both keys share the buffer TTL, refreshed on every push.  The set is trimmed
to ``max_size`` by evicting the oldest entries.

Context (per character):
  ``recollect:context:{character}`` JSON ``ContextSnapshot`` with the context
  TTL.  Expired fragments are purged whenever the snapshot is read.  Every
  read-modify-write of the snapshot runs under ``WATCH``/``MULTI``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.asyncio.client import Pipeline  # type: ignore[import-untyped]

from recollect._redis import decode
from recollect._redis import PREFIX
from recollect._redis import redis_errors
from recollect.memory.schemas import ContextSnapshot
from recollect.memory.schemas import MemoryFragment
from recollect.memory.schemas import utcnow

logger = logging.getLogger(__name__)

_BUFFER_KEY = f"{PREFIX}:buffer"
_CONTEXT_KEY = f"{PREFIX}:context"


def _buffer_keys(character_id: str) -> tuple[str, str]:
    order_key = f"{_BUFFER_KEY}:{character_id}"
    return order_key, f"{order_key}:data"


def _context_key(character_id: str) -> str:
    return f"{_CONTEXT_KEY}:{character_id}"


# ---------------------------------------------------------------------------
# Input buffer
# ---------------------------------------------------------------------------


class RedisInputBuffer:
    """Bounded, TTL-refreshed sensory buffer."""

    def __init__(self, redis: Redis, *, ttl: int = 10, max_size: int = 100) -> None:
        self._redis = redis
        self._ttl = ttl
        self._max_size = max_size

    async def push(self, fragment: MemoryFragment) -> None:
        """Append *fragment*, trim the oldest overflow and refresh the TTL."""
        order_key, data_key = _buffer_keys(fragment.character_id)
        with redis_errors("buffer push"):
            pipe = self._redis.pipeline()
            pipe.hset(data_key, fragment.id, fragment.model_dump_json())
            pipe.zadd(order_key, {fragment.id: fragment.created_at.timestamp()})
            pipe.expire(order_key, self._ttl)
            pipe.expire(data_key, self._ttl)
            await pipe.execute()
            await self._trim(order_key, data_key)

    async def get_all(self, character_id: str) -> list[MemoryFragment]:
        """Return all live fragments, newest first."""
        return await self._read(character_id, limit=None)

    async def get_recent(self, character_id: str, limit: int) -> list[MemoryFragment]:
        """Return up to *limit* live fragments, newest first."""
        if limit <= 0:
            return []
        return await self._read(character_id, limit=limit)

    async def update(self, fragment: MemoryFragment) -> bool:
        """Overwrite a buffered fragment in place.

        Returns ``False`` when the fragment is no longer buffered (trimmed,
        expired or removed); nothing is written in that case.
        """
        order_key, data_key = _buffer_keys(fragment.character_id)
        with redis_errors("buffer update"):
            if await self._redis.zscore(order_key, fragment.id) is None:
                return False
            await self._redis.hset(data_key, fragment.id, fragment.model_dump_json())
        return True

    async def remove(self, character_id: str, fragment_id: str) -> None:
        order_key, data_key = _buffer_keys(character_id)
        with redis_errors("buffer remove"):
            pipe = self._redis.pipeline()
            pipe.zrem(order_key, fragment_id)
            pipe.hdel(data_key, fragment_id)
            await pipe.execute()

    async def clear(self, character_id: str) -> None:
        with redis_errors("buffer clear"):
            await self._redis.delete(*_buffer_keys(character_id))

    # -- internal --

    async def _read(
        self, character_id: str, *, limit: int | None
    ) -> list[MemoryFragment]:
        order_key, data_key = _buffer_keys(character_id)
        end = -1 if limit is None else limit - 1
        with redis_errors("buffer read"):
            ids = [decode(raw) for raw in await self._redis.zrevrange(order_key, 0, end)]
            if not ids:
                return []
            raw_results = await self._redis.hmget(data_key, ids)

        now = utcnow()
        stale_ids: list[str] = []
        results: list[MemoryFragment] = []
        for fid, raw in zip(ids, raw_results):
            if raw is None:
                stale_ids.append(fid)
                continue
            try:
                fragment = MemoryFragment.model_validate_json(raw)
            except ValidationError:
                logger.warning("Dropping unreadable buffer entry %s", fid)
                stale_ids.append(fid)
                continue
            if fragment.is_expired(now):
                stale_ids.append(fid)
                continue
            results.append(fragment)

        if stale_ids:
            with redis_errors("buffer prune"):
                cleanup = self._redis.pipeline()
                cleanup.zrem(order_key, *stale_ids)
                cleanup.hdel(data_key, *stale_ids)
                await cleanup.execute()
        return results

    async def _trim(self, order_key: str, data_key: str) -> None:
        current = await self._redis.zcard(order_key)
        if current <= self._max_size:
            return
        excess = current - self._max_size
        oldest = [decode(raw) for raw in await self._redis.zrange(order_key, 0, excess - 1)]
        if oldest:
            pipe = self._redis.pipeline()
            pipe.zrem(order_key, *oldest)
            pipe.hdel(data_key, *oldest)
            await pipe.execute()


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class RedisContextStore:
    """One JSON context snapshot per character."""

    def __init__(self, redis: Redis, *, ttl: int = 3600) -> None:
        self._redis = redis
        self._ttl = ttl

    async def save(self, snapshot: ContextSnapshot) -> None:
        with redis_errors("context save"):
            await self._redis.set(
                _context_key(snapshot.character_id),
                snapshot.model_dump_json(),
                ex=self._ttl,
            )

    async def get(self, character_id: str) -> ContextSnapshot:
        """Return the snapshot, empty when absent, without expired fragments."""
        with redis_errors("context get"):
            data = await self._redis.get(_context_key(character_id))
        if data is None:
            return ContextSnapshot(character_id=character_id)

        snapshot = ContextSnapshot.model_validate_json(data)
        if any(f.is_expired() for f in snapshot.fragments):
            snapshot, _ = await self._modify(character_id, lambda s: False)
        return snapshot

    async def update(
        self,
        character_id: str,
        *,
        summary: str | None = None,
        metadata: dict | None = None,
    ) -> ContextSnapshot:
        """Overwrite only the fields that were supplied."""

        def patch(snapshot: ContextSnapshot) -> bool:
            if summary is not None:
                snapshot.summary = summary
            if metadata is not None:
                snapshot.metadata = metadata
            snapshot.updated_at = utcnow()
            return True

        snapshot, _ = await self._modify(character_id, patch)
        return snapshot

    async def delete(self, character_id: str) -> None:
        with redis_errors("context delete"):
            await self._redis.delete(_context_key(character_id))

    async def add_fragment(self, fragment: MemoryFragment) -> None:
        def add(snapshot: ContextSnapshot) -> bool:
            if not snapshot.replace_fragment(fragment):
                snapshot.add_fragment(fragment)
            return True

        await self._modify(fragment.character_id, add)

    async def update_fragment(self, fragment: MemoryFragment) -> bool:
        _, changed = await self._modify(
            fragment.character_id, lambda s: s.replace_fragment(fragment)
        )
        return changed

    async def remove_fragment(self, character_id: str, fragment_id: str) -> bool:
        _, changed = await self._modify(
            character_id, lambda s: s.remove_fragment(fragment_id)
        )
        return changed

    async def _modify(
        self,
        character_id: str,
        change: Callable[[ContextSnapshot], bool],
    ) -> tuple[ContextSnapshot, bool]:
        """Apply *change* to the stored snapshot inside a ``WATCH`` transaction.

        A concurrent write to the key aborts the ``MULTI`` block and redis-py
        reruns the whole read-change-write.  Returns the resulting snapshot
        and what *change* reported.
        """
        key = _context_key(character_id)

        async def attempt(pipe: Pipeline) -> tuple[ContextSnapshot, bool]:
            data = await pipe.get(key)
            snapshot = (
                ContextSnapshot(character_id=character_id)
                if data is None
                else ContextSnapshot.model_validate_json(data)
            )
            purged = snapshot.remove_expired()
            changed = change(snapshot)
            pipe.multi()
            if changed or purged:
                pipe.set(key, snapshot.model_dump_json(), ex=self._ttl)
            return snapshot, changed

        with redis_errors("context write"):
            return await self._redis.transaction(attempt, key, value_from_callable=True)
