"""Redis-backed character registry.

``recollect:character:{id}`` holds the character JSON and the set
``recollect:characters`` indexes every known id.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from recollect._redis import decode
from recollect._redis import PREFIX
from recollect._redis import redis_errors
from recollect.characters.schemas import Character

logger = logging.getLogger(__name__)

_CHARACTER_KEY = f"{PREFIX}:character"
_INDEX_KEY = f"{PREFIX}:characters"


def _character_key(character_id: str) -> str:
    return f"{_CHARACTER_KEY}:{character_id}"


class RedisCharacterStore:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def save(self, character: Character) -> None:
        with redis_errors("character save"):
            pipe = self._redis.pipeline()
            pipe.set(_character_key(character.id), character.model_dump_json())
            pipe.sadd(_INDEX_KEY, character.id)
            await pipe.execute()

    async def get(self, character_id: str) -> Character | None:
        with redis_errors("character get"):
            raw = await self._redis.get(_character_key(character_id))
        if raw is None:
            return None
        return Character.model_validate_json(raw)

    async def list(self) -> list[Character]:
        """All characters, oldest first."""
        with redis_errors("character list"):
            ids = sorted(decode(raw) for raw in await self._redis.smembers(_INDEX_KEY))
            if not ids:
                return []
            raw_items = await self._redis.mget([_character_key(cid) for cid in ids])

        characters: list[Character] = []
        for cid, raw in zip(ids, raw_items):
            if raw is None:
                continue
            try:
                characters.append(Character.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping unreadable character record %s", cid)
        characters.sort(key=lambda c: (c.created_at, c.id))
        return characters

    async def delete(self, character_id: str) -> bool:
        with redis_errors("character delete"):
            pipe = self._redis.pipeline()
            pipe.delete(_character_key(character_id))
            pipe.srem(_INDEX_KEY, character_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)
