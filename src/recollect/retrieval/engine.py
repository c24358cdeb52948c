"""Retrieval engine: hybrid search, rescoring and access accounting."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime
from time import perf_counter
from typing import Protocol

from recollect.errors import InvalidInputError
from recollect.ids import require_id
from recollect.memory.schemas import utcnow
from recollect.observability import record_latency
from recollect.retrieval.schemas import AccessInfo
from recollect.retrieval.schemas import DType
from recollect.retrieval.schemas import SearchResult
from recollect.retrieval.schemas import SparseVector
from recollect.retrieval.schemas import StoredFragment
from recollect.retrieval.scorer import Scorer

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
_CANDIDATE_FACTOR = 3


def _require_dense(dense_vector: Sequence[float]) -> None:
    if not dense_vector:
        raise InvalidInputError("dense_vector must not be empty")


class VectorStore(Protocol):
    """Per-character vector namespace with hybrid search."""

    async def ensure_namespace(self, character_id: str) -> None: ...

    async def upsert(
        self,
        fragment: StoredFragment,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
    ) -> None: ...

    async def hybrid_search(
        self,
        character_id: str,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
        limit: int = 10,
    ) -> list[SearchResult]: ...

    async def delete(self, fragment_id: str, *, character_id: str | None) -> None: ...

    async def delete_namespace(self, character_id: str | None) -> None: ...


class AccessStore(Protocol):
    """Per-fragment access statistics."""

    async def increment_access_count(
        self, character_id: str, fragment_id: str
    ) -> None: ...

    async def get_batch_access_info(
        self, character_id: str, fragment_ids: Sequence[str]
    ) -> Mapping[str, AccessInfo]: ...

    async def init_access_info(
        self, character_id: str, fragment_id: str, now: datetime
    ) -> None: ...

    async def delete_access_info(self, character_id: str, fragment_id: str) -> None: ...

    async def delete_character(self, character_id: str) -> None: ...


class RetrievalEngine:
    """Ranks durable fragments by semantic match, popularity and recency."""

    def __init__(
        self,
        vector_store: VectorStore,
        access_store: AccessStore,
        *,
        scorer: Scorer | None = None,
    ) -> None:
        self._vectors = vector_store
        self._access = access_store
        self._scorer = scorer or Scorer()
        self._background: set[asyncio.Task] = set()

    @property
    def scorer(self) -> Scorer:
        return self._scorer

    async def retrieve(
        self,
        character_id: str,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchResult]:
        """Return at most *limit* fragments ordered by final score.

        Over-fetches ``limit * 3`` candidates so rescoring can reorder them,
        then schedules one access increment per returned fragment.  The
        increments run detached; their failures are only logged.
        """
        character_id = require_id(character_id, field="character_id")
        _require_dense(dense_vector)
        if limit <= 0:
            limit = DEFAULT_LIMIT

        start = perf_counter()
        ok = False
        try:
            candidates = await self._vectors.hybrid_search(
                character_id,
                dense_vector,
                sparse_vector,
                limit * _CANDIDATE_FACTOR,
            )
            if not candidates:
                ok = True
                return []

            access_info = await self._access.get_batch_access_info(
                character_id, [c.fragment.id for c in candidates]
            )
            self._scorer.rescore(candidates, access_info, now=utcnow())
            candidates.sort(key=lambda r: (-r.score, r.fragment.id))
            results = candidates[:limit]

            for result in results:
                self._spawn_increment(character_id, result.fragment.id)
            ok = True
            return results
        finally:
            record_latency(
                operation="retrieval.retrieve",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def store(
        self,
        character_id: str,
        content: str,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
        *,
        dtype: DType = DType.text,
        metadata: dict | None = None,
        fragment_id: str | None = None,
    ) -> StoredFragment:
        """Persist a fragment with caller-supplied vectors.

        Steps run in order (namespace, upsert, access init) and are not
        rolled back on failure.
        """
        character_id = require_id(character_id, field="character_id")
        _require_dense(dense_vector)
        now = utcnow()
        fragment = StoredFragment(
            character_id=character_id,
            content=content,
            dtype=dtype,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        if fragment_id is not None:
            fragment.id = require_id(fragment_id, field="fragment_id")

        start = perf_counter()
        ok = False
        try:
            await self._vectors.ensure_namespace(character_id)
            await self._vectors.upsert(fragment, dense_vector, sparse_vector)
            await self._access.init_access_info(character_id, fragment.id, now)
            ok = True
        finally:
            record_latency(
                operation="retrieval.store",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
        logger.debug("Stored fragment %s for character %s", fragment.id, character_id)
        return fragment

    async def delete(self, character_id: str, fragment_id: str) -> None:
        character_id = require_id(character_id, field="character_id")
        fragment_id = require_id(fragment_id, field="fragment_id")
        await self._vectors.delete(fragment_id, character_id=character_id)
        await self._access.delete_access_info(character_id, fragment_id)

    async def delete_character(self, character_id: str) -> None:
        """Drop the character's whole vector namespace and access stats."""
        character_id = require_id(character_id, field="character_id")
        await self._vectors.delete_namespace(character_id)
        await self._access.delete_character(character_id)

    async def drain(self) -> None:
        """Wait for outstanding background increments."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn_increment(self, character_id: str, fragment_id: str) -> None:
        task = asyncio.create_task(
            self._access.increment_access_count(character_id, fragment_id)
        )
        self._background.add(task)
        task.add_done_callback(self._on_increment_done)

    def _on_increment_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Access increment failed: %s", exc)
