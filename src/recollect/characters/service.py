"""Character registry service."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from recollect.characters.schemas import Character
from recollect.errors import InvalidInputError
from recollect.errors import NotFoundError
from recollect.ids import require_id
from recollect.memory.schemas import utcnow

logger = logging.getLogger(__name__)


class CharacterStore(Protocol):
    async def save(self, character: Character) -> None: ...

    async def get(self, character_id: str) -> Character | None: ...

    async def list(self) -> list[Character]: ...

    async def delete(self, character_id: str) -> bool: ...


class CharacterScopedStore(Protocol):
    """Anything holding per-character data that must go with the character."""

    async def delete_character(self, character_id: str) -> object: ...


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidInputError("name is required")
    return cleaned


class CharacterService:
    """Creates and removes characters along with their memory."""

    def __init__(
        self,
        store: CharacterStore,
        *,
        scoped_stores: Sequence[CharacterScopedStore] = (),
    ) -> None:
        self._store = store
        self._scoped = list(scoped_stores)

    async def create(self, name: str) -> Character:
        character = Character(name=_clean_name(name))
        await self._store.save(character)
        logger.info("Created character %s (%s)", character.id, character.name)
        return character

    async def get(self, character_id: str) -> Character:
        character_id = require_id(character_id, field="character_id")
        character = await self._store.get(character_id)
        if character is None:
            raise NotFoundError(f"character not found: {character_id}")
        return character

    async def list(self) -> list[Character]:
        return await self._store.list()

    async def rename(self, character_id: str, name: str) -> Character:
        character = await self.get(character_id)
        character.name = _clean_name(name)
        character.updated_at = utcnow()
        await self._store.save(character)
        return character

    async def delete(self, character_id: str) -> None:
        """Delete the character, then every store's data for it.

        Scoped stores are cleared even when the registry entry is already
        gone, so a half-finished earlier delete can be completed.
        """
        character_id = require_id(character_id, field="character_id")
        existed = await self._store.delete(character_id)
        for scoped in self._scoped:
            await scoped.delete_character(character_id)
        if not existed:
            raise NotFoundError(f"character not found: {character_id}")
        logger.info("Deleted character %s", character_id)
