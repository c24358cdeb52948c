"""Memory tier manager: fragment lifecycle and layer promotion.

Fragments move forward only::

    input_buffer --(access_count >= T1)--> context --(access_count >= T2)--> working

Promotion to ``working`` only relabels the fragment.  Durable storage needs
vectors, so when a task creator is wired an ``embedding`` task is enqueued
and the worker stores the fragment once the embedding exists.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from recollect.config import LayerConfig
from recollect.errors import InvalidInputError
from recollect.errors import NotFoundError
from recollect.ids import require_id
from recollect.memory.schemas import ContextSnapshot
from recollect.memory.schemas import MemoryFragment
from recollect.memory.schemas import MemoryLayer
from recollect.memory.schemas import ProcessBufferResult
from recollect.memory.schemas import PromotionResult

logger = logging.getLogger(__name__)


class InputBufferStore(Protocol):
    async def push(self, fragment: MemoryFragment) -> None: ...

    async def get_all(self, character_id: str) -> list[MemoryFragment]: ...

    async def get_recent(
        self, character_id: str, limit: int
    ) -> list[MemoryFragment]: ...

    async def update(self, fragment: MemoryFragment) -> bool: ...

    async def remove(self, character_id: str, fragment_id: str) -> None: ...

    async def clear(self, character_id: str) -> None: ...


class ContextStore(Protocol):
    async def save(self, snapshot: ContextSnapshot) -> None: ...

    async def get(self, character_id: str) -> ContextSnapshot: ...

    async def update(
        self,
        character_id: str,
        *,
        summary: str | None = None,
        metadata: dict | None = None,
    ) -> ContextSnapshot: ...

    async def delete(self, character_id: str) -> None: ...

    async def add_fragment(self, fragment: MemoryFragment) -> None: ...

    async def update_fragment(self, fragment: MemoryFragment) -> bool: ...

    async def remove_fragment(self, character_id: str, fragment_id: str) -> bool: ...


class EmbeddingTaskCreator(Protocol):
    """Anything that can enqueue an embedding task for a promoted fragment."""

    async def enqueue_embedding(
        self,
        character_id: str,
        text: str,
        *,
        store_in_db: bool = True,
        metadata: dict | None = None,
    ) -> str: ...


class MemoryTierManager:
    """Owns the input buffer and context layers of every character."""

    def __init__(
        self,
        input_buffer: InputBufferStore,
        context_store: ContextStore,
        *,
        config: LayerConfig | None = None,
        task_creator: EmbeddingTaskCreator | None = None,
    ) -> None:
        self._buffer = input_buffer
        self._context = context_store
        self._config = config or LayerConfig()
        self._tasks = task_creator

    # -- input buffer --

    async def add_to_input_buffer(
        self,
        character_id: str,
        content: str,
        metadata: dict | None = None,
    ) -> MemoryFragment:
        """Create a fragment in the input buffer and append it."""
        character_id = require_id(character_id, field="character_id")
        if not content or not content.strip():
            raise InvalidInputError("content is required")
        fragment = MemoryFragment(
            character_id=character_id,
            content=content,
            metadata=metadata or {},
        )
        fragment.expires_at = fragment.created_at + timedelta(
            seconds=self._config.input_buffer_ttl_seconds
        )
        await self._buffer.push(fragment)
        return fragment

    async def get_recent_input(
        self, character_id: str, limit: int = 10
    ) -> list[MemoryFragment]:
        character_id = require_id(character_id, field="character_id")
        return await self._buffer.get_recent(character_id, limit)

    async def clear_input_buffer(self, character_id: str) -> None:
        character_id = require_id(character_id, field="character_id")
        await self._buffer.clear(character_id)

    async def process_input_buffer(self, character_id: str) -> ProcessBufferResult:
        """Sweep the buffer: record one access per entry and promote.

        Safe to re-run: expired and already-promoted entries are skipped.
        A failure to read the buffer propagates; a failure to promote a
        single entry is logged and the sweep moves on.
        """
        character_id = require_id(character_id, field="character_id")
        fragments = await self._buffer.get_all(character_id)

        result = ProcessBufferResult()
        for fragment in fragments:
            if fragment.layer != MemoryLayer.input_buffer or fragment.is_expired():
                continue

            fragment.increment_access()
            try:
                outcome = await self.promote_if_eligible(fragment)
                if outcome.promoted:
                    await self._buffer.remove(character_id, fragment.id)
                else:
                    await self._buffer.update(fragment)
            except Exception:
                logger.exception(
                    "Promotion failed for fragment %s (character %s)",
                    fragment.id,
                    character_id,
                )
                continue

            result.processed += 1
            if outcome.promoted:
                result.promoted += 1

        logger.debug(
            "Input buffer sweep character=%s processed=%d promoted=%d",
            character_id,
            result.processed,
            result.promoted,
        )
        return result

    # -- promotion --

    async def promote_if_eligible(self, fragment: MemoryFragment) -> PromotionResult:
        """Apply the threshold rule to *fragment*.

        The caller's fragment is only relabelled once the target layer has
        accepted it, so a failed write leaves it at its prior layer.
        """
        if (
            fragment.layer == MemoryLayer.input_buffer
            and fragment.should_promote(self._config.buffer_to_context_threshold)
        ):
            return await self._promote_to_context(fragment)

        if (
            fragment.layer == MemoryLayer.context
            and fragment.should_promote(self._config.context_to_working_threshold)
        ):
            return await self._promote_to_working(fragment)

        return PromotionResult(promoted_to=fragment.layer, fragment=fragment)

    async def touch_context_fragment(
        self, character_id: str, fragment_id: str
    ) -> PromotionResult:
        """Record an access on a context fragment and promote when eligible."""
        character_id = require_id(character_id, field="character_id")
        snapshot = await self._context.get(character_id)
        fragment = snapshot.get_fragment(fragment_id)
        if fragment is None:
            raise NotFoundError(
                f"fragment {fragment_id} not in context of character {character_id}"
            )

        fragment.increment_access()
        outcome = await self.promote_if_eligible(fragment)
        if not outcome.promoted:
            await self._context.update_fragment(fragment)
        return outcome

    async def _promote_to_context(self, fragment: MemoryFragment) -> PromotionResult:
        promoted = fragment.moved_to(
            MemoryLayer.context,
            ttl=timedelta(seconds=self._config.context_ttl_seconds),
        )
        await self._context.add_fragment(promoted)

        fragment.layer = promoted.layer
        fragment.expires_at = promoted.expires_at
        logger.info(
            "Promoted fragment %s to context (access_count=%d)",
            fragment.id,
            fragment.access_count,
        )
        return PromotionResult(
            promoted_to=MemoryLayer.context, fragment=fragment, promoted=True
        )

    async def _promote_to_working(self, fragment: MemoryFragment) -> PromotionResult:
        promoted = fragment.moved_to(MemoryLayer.working)

        task_id: str | None = None
        if self._tasks is not None:
            task_id = await self._tasks.enqueue_embedding(
                fragment.character_id,
                fragment.content,
                store_in_db=True,
                metadata={**fragment.metadata, "source_fragment_id": fragment.id},
            )
            await self._context.remove_fragment(fragment.character_id, fragment.id)

        fragment.layer = promoted.layer
        fragment.expires_at = None
        logger.info(
            "Promoted fragment %s to working (embedding task=%s)",
            fragment.id,
            task_id,
        )
        return PromotionResult(
            promoted_to=MemoryLayer.working,
            fragment=fragment,
            promoted=True,
            task_id=task_id,
        )

    # -- context --

    async def get_context(self, character_id: str) -> ContextSnapshot:
        character_id = require_id(character_id, field="character_id")
        return await self._context.get(character_id)

    async def update_context(
        self,
        character_id: str,
        *,
        summary: str | None = None,
        metadata: dict | None = None,
    ) -> ContextSnapshot:
        """Patch the context; ``None`` means "leave unchanged"."""
        character_id = require_id(character_id, field="character_id")
        return await self._context.update(
            character_id, summary=summary, metadata=metadata
        )

    async def clear_context(self, character_id: str) -> None:
        character_id = require_id(character_id, field="character_id")
        await self._context.delete(character_id)

    async def delete_character(self, character_id: str) -> None:
        """Forget every short-lived fragment of a character."""
        await self.clear_input_buffer(character_id)
        await self.clear_context(character_id)
