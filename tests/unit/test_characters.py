"""Unit tests for the character registry service."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field

import pytest

from recollect.characters.schemas import Character
from recollect.characters.service import CharacterService
from recollect.errors import InvalidInputError
from recollect.errors import NotFoundError
from recollect.ids import new_id
from recollect.memory.layers import MemoryTierManager
from recollect.retrieval.engine import RetrievalEngine


@dataclass
class FakeCharacterStore:
    characters: dict[str, Character] = field(default_factory=dict)

    async def save(self, character: Character) -> None:
        self.characters[character.id] = character.model_copy(deep=True)

    async def get(self, character_id: str) -> Character | None:
        character = self.characters.get(character_id)
        return character.model_copy(deep=True) if character else None

    async def list(self) -> list[Character]:
        return sorted(self.characters.values(), key=lambda c: (c.created_at, c.id))

    async def delete(self, character_id: str) -> bool:
        return self.characters.pop(character_id, None) is not None


@pytest.fixture()
def store() -> FakeCharacterStore:
    return FakeCharacterStore()


@pytest.fixture()
def service(store) -> CharacterService:
    return CharacterService(store)


class TestCreate:
    async def test_create_and_get(self, service):
        created = await service.create("  Mira  ")
        fetched = await service.get(created.id)

        assert fetched.name == "Mira"
        assert fetched.id == created.id

    async def test_blank_name_rejected(self, service, store):
        with pytest.raises(InvalidInputError, match="name"):
            await service.create("   ")
        assert store.characters == {}

    async def test_list_oldest_first(self, service):
        first = await service.create("a")
        second = await service.create("b")
        listed = [c.id for c in await service.list()]
        assert set(listed) == {first.id, second.id}
        assert len(listed) == 2


class TestLookup:
    async def test_unknown_character(self, service):
        with pytest.raises(NotFoundError):
            await service.get(new_id())

    async def test_malformed_id(self, service):
        with pytest.raises(InvalidInputError):
            await service.get("mira")

    async def test_rename_touches_updated_at(self, service):
        created = await service.create("Mira")
        renamed = await service.rename(created.id, "Mirabel")
        assert renamed.name == "Mirabel"
        assert renamed.updated_at >= created.updated_at


class TestDelete:
    async def test_delete_clears_every_scoped_store(
        self,
        store,
        input_buffer,
        context_store,
        vector_store,
        access_store,
        task_queue,
    ):
        memory = MemoryTierManager(input_buffer, context_store)
        retrieval = RetrievalEngine(vector_store, access_store)
        service = CharacterService(store, scoped_stores=[retrieval, memory, task_queue])
        character = await service.create("Mira")

        await memory.add_to_input_buffer(character.id, "hello")
        await retrieval.store(character.id, "durable", [1.0])

        await service.delete(character.id)

        assert character.id not in store.characters
        assert character.id not in input_buffer.items
        assert character.id not in vector_store.points
        assert access_store.infos == {}
        with pytest.raises(NotFoundError):
            await service.get(character.id)

    async def test_missing_character_still_clears_scoped_data(
        self, store, vector_store, access_store
    ):
        retrieval = RetrievalEngine(vector_store, access_store)
        service = CharacterService(store, scoped_stores=[retrieval])
        orphan = new_id()
        await retrieval.store(orphan, "left behind", [1.0])

        with pytest.raises(NotFoundError):
            await service.delete(orphan)
        assert orphan not in vector_store.points
