"""Character registry."""

from recollect.characters.schemas import Character
from recollect.characters.service import CharacterScopedStore
from recollect.characters.service import CharacterService
from recollect.characters.service import CharacterStore
from recollect.characters.store import RedisCharacterStore

__all__ = [
    "Character",
    "CharacterScopedStore",
    "CharacterService",
    "CharacterStore",
    "RedisCharacterStore",
]
