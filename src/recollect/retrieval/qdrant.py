"""Qdrant-backed vector store.

Each character owns one collection (``{prefix}{character_id}``) holding a
named dense vector ``dense`` (cosine) and a named sparse vector ``text``.
Hybrid search runs a dense and a sparse prefetch and fuses them with
Reciprocal Rank Fusion; the fused score becomes the semantic score.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime

from qdrant_client import AsyncQdrantClient
from qdrant_client import models
from qdrant_client.http.exceptions import ResponseHandlingException
from qdrant_client.http.exceptions import UnexpectedResponse

from recollect.config import VectorStoreConfig
from recollect.errors import DependencyError
from recollect.errors import InvalidInputError
from recollect.retrieval.schemas import DType
from recollect.retrieval.schemas import SearchResult
from recollect.retrieval.schemas import SparseVector
from recollect.retrieval.schemas import StoredFragment

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"
SPARSE_VECTOR = "text"

_QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException, ValueError, OSError)


@contextmanager
def _qdrant_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _QDRANT_ERRORS as exc:
        raise DependencyError(f"qdrant {operation} failed: {exc}") from exc


def _to_sparse(vector: SparseVector | None) -> models.SparseVector | None:
    if not vector:
        return None
    indices = sorted(vector)
    return models.SparseVector(
        indices=[int(i) for i in indices],
        values=[float(vector[i]) for i in indices],
    )


def build_qdrant_client(config: VectorStoreConfig) -> AsyncQdrantClient:
    """Create an async client from ``VectorStoreConfig``."""
    if config.location is not None:
        return AsyncQdrantClient(location=config.location)
    return AsyncQdrantClient(url=config.url, api_key=config.api_key)


class QdrantVectorStore:
    """Per-character collections with dense + sparse hybrid search."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        *,
        vector_size: int = 768,
        collection_prefix: str = "character_",
    ) -> None:
        self._client = client
        self._vector_size = vector_size
        self._prefix = collection_prefix

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def collection_name(self, character_id: str) -> str:
        return f"{self._prefix}{character_id}"

    def _check_dense(self, dense_vector: Sequence[float]) -> list[float]:
        if len(dense_vector) != self._vector_size:
            raise InvalidInputError(
                f"dense_vector has {len(dense_vector)} dimensions, expected {self._vector_size}"
            )
        return [float(v) for v in dense_vector]

    async def close(self) -> None:
        await self._client.close()

    async def ensure_namespace(self, character_id: str) -> None:
        """Create the character's collection unless it already exists."""
        name = self.collection_name(character_id)
        with _qdrant_errors("ensure collection"):
            if await self._client.collection_exists(name):
                return
            await self._client.create_collection(
                collection_name=name,
                vectors_config={
                    DENSE_VECTOR: models.VectorParams(
                        size=self._vector_size,
                        distance=models.Distance.COSINE,
                    )
                },
                sparse_vectors_config={SPARSE_VECTOR: models.SparseVectorParams()},
            )
        logger.info("Created vector collection %s", name)

    async def upsert(
        self,
        fragment: StoredFragment,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
    ) -> None:
        vectors: dict = {DENSE_VECTOR: self._check_dense(dense_vector)}
        sparse = _to_sparse(sparse_vector)
        if sparse is not None:
            vectors[SPARSE_VECTOR] = sparse

        point = models.PointStruct(
            id=fragment.id,
            vector=vectors,
            payload={
                "id": fragment.id,
                "character_id": fragment.character_id,
                "content": fragment.content,
                "dtype": fragment.dtype.value,
                "metadata": fragment.metadata,
                "created_at": fragment.created_at.isoformat(),
                "updated_at": fragment.updated_at.isoformat(),
            },
        )
        with _qdrant_errors("upsert"):
            await self._client.upsert(
                collection_name=self.collection_name(fragment.character_id),
                points=[point],
            )

    async def hybrid_search(
        self,
        character_id: str,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Return up to *limit* candidates ranked by fused similarity.

        A character without a collection simply has no candidates.
        """
        name = self.collection_name(character_id)
        dense = self._check_dense(dense_vector)
        sparse = _to_sparse(sparse_vector)

        with _qdrant_errors("hybrid search"):
            if not await self._client.collection_exists(name):
                return []

            if sparse is None:
                response = await self._client.query_points(
                    collection_name=name,
                    query=dense,
                    using=DENSE_VECTOR,
                    limit=limit,
                    with_payload=True,
                )
            else:
                response = await self._client.query_points(
                    collection_name=name,
                    prefetch=[
                        models.Prefetch(query=dense, using=DENSE_VECTOR, limit=limit * 2),
                        models.Prefetch(query=sparse, using=SPARSE_VECTOR, limit=limit * 2),
                    ],
                    query=models.FusionQuery(fusion=models.Fusion.RRF),
                    limit=limit,
                    with_payload=True,
                )

        results: list[SearchResult] = []
        for point in response.points:
            fragment = _point_to_fragment(point)
            if fragment is None:
                logger.warning("Skipping malformed point %s in %s", point.id, name)
                continue
            results.append(
                SearchResult(
                    fragment=fragment,
                    semantic_score=float(point.score),
                    score=float(point.score),
                )
            )
        return results

    async def delete(self, fragment_id: str, *, character_id: str | None) -> None:
        """Delete one point.  The owning character is mandatory."""
        if not character_id:
            raise InvalidInputError("character_id is required to delete a fragment")
        name = self.collection_name(character_id)
        with _qdrant_errors("delete"):
            if not await self._client.collection_exists(name):
                return
            await self._client.delete(
                collection_name=name,
                points_selector=models.PointIdsList(points=[fragment_id]),
            )

    async def delete_namespace(self, character_id: str | None) -> None:
        """Drop every fragment of a character."""
        if not character_id:
            raise InvalidInputError("character_id is required to delete a namespace")
        name = self.collection_name(character_id)
        with _qdrant_errors("delete collection"):
            if await self._client.collection_exists(name):
                await self._client.delete_collection(name)
        logger.info("Dropped vector collection %s", name)


def _point_to_fragment(point: models.ScoredPoint) -> StoredFragment | None:
    payload = point.payload or {}
    try:
        return StoredFragment(
            id=str(payload.get("id") or point.id),
            character_id=payload["character_id"],
            content=payload["content"],
            dtype=DType(payload.get("dtype", DType.text.value)),
            metadata=payload.get("metadata") or {},
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
