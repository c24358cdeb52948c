"""Redis-backed access statistics.

One hash per fragment, keyed ``recollect:access:{character}:{fragment}``, with
fields ``count``, ``first`` and ``last`` (Unix epoch seconds).
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from datetime import UTC

from redis.asyncio import Redis  # type: ignore[import-untyped]

from recollect._redis import decode
from recollect._redis import PREFIX
from recollect._redis import redis_errors
from recollect.memory.schemas import utcnow
from recollect.retrieval.schemas import AccessInfo

_ACCESS_KEY = f"{PREFIX}:access"
_DELETE_BATCH_SIZE = 100


def _access_key(character_id: str, fragment_id: str) -> str:
    return f"{_ACCESS_KEY}:{character_id}:{fragment_id}"


def _to_datetime(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    try:
        return datetime.fromtimestamp(float(raw), tz=UTC)
    except ValueError:
        return None


def _to_info(character_id: str, fragment_id: str, raw: dict) -> AccessInfo | None:
    if not raw:
        return None
    fields = {decode(k): decode(v) for k, v in raw.items()}
    try:
        count = int(fields.get("count", 0))
    except ValueError:
        count = 0
    return AccessInfo(
        character_id=character_id,
        fragment_id=fragment_id,
        access_count=max(count, 0),
        first_accessed_at=_to_datetime(fields.get("first")),
        last_accessed_at=_to_datetime(fields.get("last")),
    )


class RedisAccessStore:
    """Access counters used by the retrieval rescoring step."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def increment_access_count(self, character_id: str, fragment_id: str) -> None:
        key = _access_key(character_id, fragment_id)
        now = utcnow().timestamp()
        with redis_errors("access increment"):
            pipe = self._redis.pipeline()
            pipe.hincrby(key, "count", 1)
            pipe.hset(key, "last", now)
            pipe.hsetnx(key, "first", now)
            await pipe.execute()

    async def get_access_info(
        self, character_id: str, fragment_id: str
    ) -> AccessInfo | None:
        with redis_errors("access get"):
            raw = await self._redis.hgetall(_access_key(character_id, fragment_id))
        return _to_info(character_id, fragment_id, raw)

    async def get_batch_access_info(
        self, character_id: str, fragment_ids: Sequence[str]
    ) -> dict[str, AccessInfo]:
        """Fetch statistics for many fragments in one round-trip.

        Fragments without statistics are absent from the returned map.
        """
        if not fragment_ids:
            return {}
        with redis_errors("access batch get"):
            pipe = self._redis.pipeline()
            for fid in fragment_ids:
                pipe.hgetall(_access_key(character_id, fid))
            raw_results = await pipe.execute()

        result: dict[str, AccessInfo] = {}
        for fid, raw in zip(fragment_ids, raw_results):
            info = _to_info(character_id, fid, raw)
            if info is not None:
                result[fid] = info
        return result

    async def init_access_info(
        self, character_id: str, fragment_id: str, now: datetime
    ) -> None:
        """Reset statistics of a freshly stored fragment to zero accesses."""
        ts = now.timestamp()
        with redis_errors("access init"):
            await self._redis.hset(
                _access_key(character_id, fragment_id),
                mapping={"count": 0, "first": ts, "last": ts},
            )

    async def delete_access_info(self, character_id: str, fragment_id: str) -> None:
        with redis_errors("access delete"):
            await self._redis.delete(_access_key(character_id, fragment_id))

    async def delete_character(self, character_id: str) -> None:
        """Remove every access hash of *character_id*, in batches."""
        batch: list = []
        with redis_errors("access delete character"):
            async for key in self._redis.scan_iter(
                match=f"{_ACCESS_KEY}:{character_id}:*"
            ):
                batch.append(key)
                if len(batch) >= _DELETE_BATCH_SIZE:
                    await self._redis.delete(*batch)
                    batch.clear()
            if batch:
                await self._redis.delete(*batch)
