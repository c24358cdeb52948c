"""Memory domain: input buffer, context and layer promotion."""

from __future__ import annotations

from recollect.memory.layers import ContextStore
from recollect.memory.layers import EmbeddingTaskCreator
from recollect.memory.layers import InputBufferStore
from recollect.memory.layers import MemoryTierManager
from recollect.memory.schemas import ContextSnapshot
from recollect.memory.schemas import MemoryFragment
from recollect.memory.schemas import MemoryLayer
from recollect.memory.schemas import ProcessBufferResult
from recollect.memory.schemas import PromotionResult
from recollect.memory.store import RedisContextStore
from recollect.memory.store import RedisInputBuffer

__all__ = [
    "ContextSnapshot",
    "ContextStore",
    "EmbeddingTaskCreator",
    "InputBufferStore",
    "MemoryFragment",
    "MemoryLayer",
    "MemoryTierManager",
    "ProcessBufferResult",
    "PromotionResult",
    "RedisContextStore",
    "RedisInputBuffer",
]
