"""Unit test fixtures: in-memory fakes for every collaborator protocol."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

import pytest

from recollect.errors import DependencyError
from recollect.errors import InvalidInputError
from recollect.errors import NotFoundError
from recollect.ids import new_id
from recollect.memory.schemas import ContextSnapshot
from recollect.memory.schemas import MemoryFragment
from recollect.memory.schemas import utcnow
from recollect.observability import reset_metrics
from recollect.retrieval.schemas import AccessInfo
from recollect.retrieval.schemas import SearchResult
from recollect.retrieval.schemas import SparseVector
from recollect.retrieval.schemas import StoredFragment
from recollect.tasks.schemas import Task


# ---------------------------------------------------------------------------
# Memory layers
# ---------------------------------------------------------------------------


@dataclass
class FakeInputBuffer:
    max_size: int = 100
    items: dict[str, list[MemoryFragment]] = field(default_factory=dict)
    fail_reads: bool = False

    async def push(self, fragment: MemoryFragment) -> None:
        bucket = self.items.setdefault(fragment.character_id, [])
        bucket.append(fragment.model_copy(deep=True))
        del bucket[: max(len(bucket) - self.max_size, 0)]

    async def get_all(self, character_id: str) -> list[MemoryFragment]:
        if self.fail_reads:
            raise DependencyError("buffer unavailable")
        live = [f for f in self.items.get(character_id, []) if not f.is_expired()]
        return [f.model_copy(deep=True) for f in reversed(live)]

    async def get_recent(self, character_id: str, limit: int) -> list[MemoryFragment]:
        return (await self.get_all(character_id))[:limit]

    async def update(self, fragment: MemoryFragment) -> bool:
        bucket = self.items.get(fragment.character_id, [])
        for idx, existing in enumerate(bucket):
            if existing.id == fragment.id:
                bucket[idx] = fragment.model_copy(deep=True)
                return True
        return False

    async def remove(self, character_id: str, fragment_id: str) -> None:
        bucket = self.items.get(character_id, [])
        self.items[character_id] = [f for f in bucket if f.id != fragment_id]

    async def clear(self, character_id: str) -> None:
        self.items.pop(character_id, None)


@dataclass
class FakeContextStore:
    snapshots: dict[str, ContextSnapshot] = field(default_factory=dict)
    fail_writes: bool = False

    async def save(self, snapshot: ContextSnapshot) -> None:
        if self.fail_writes:
            raise DependencyError("context unavailable")
        self.snapshots[snapshot.character_id] = snapshot.model_copy(deep=True)

    async def get(self, character_id: str) -> ContextSnapshot:
        snapshot = self.snapshots.get(character_id)
        if snapshot is None:
            return ContextSnapshot(character_id=character_id)
        snapshot = snapshot.model_copy(deep=True)
        snapshot.remove_expired()
        return snapshot

    async def update(
        self,
        character_id: str,
        *,
        summary: str | None = None,
        metadata: dict | None = None,
    ) -> ContextSnapshot:
        snapshot = await self.get(character_id)
        if summary is not None:
            snapshot.summary = summary
        if metadata is not None:
            snapshot.metadata = metadata
        await self.save(snapshot)
        return snapshot

    async def delete(self, character_id: str) -> None:
        self.snapshots.pop(character_id, None)

    async def add_fragment(self, fragment: MemoryFragment) -> None:
        snapshot = await self.get(fragment.character_id)
        if not snapshot.replace_fragment(fragment):
            snapshot.add_fragment(fragment)
        await self.save(snapshot)

    async def update_fragment(self, fragment: MemoryFragment) -> bool:
        snapshot = await self.get(fragment.character_id)
        if not snapshot.replace_fragment(fragment):
            return False
        await self.save(snapshot)
        return True

    async def remove_fragment(self, character_id: str, fragment_id: str) -> bool:
        snapshot = await self.get(character_id)
        if not snapshot.remove_fragment(fragment_id):
            return False
        await self.save(snapshot)
        return True


@dataclass
class FakeTaskCreator:
    calls: list[dict] = field(default_factory=list)

    async def enqueue_embedding(
        self,
        character_id: str,
        text: str,
        *,
        store_in_db: bool = True,
        metadata: dict | None = None,
    ) -> str:
        task_id = new_id()
        self.calls.append(
            {
                "task_id": task_id,
                "character_id": character_id,
                "text": text,
                "store_in_db": store_in_db,
                "metadata": metadata,
            }
        )
        return task_id


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


@dataclass
class FakeVectorStore:
    points: dict[str, dict[str, tuple[StoredFragment, list[float]]]] = field(
        default_factory=dict
    )
    canned: list[SearchResult] | None = None
    calls: list[str] = field(default_factory=list)
    search_limits: list[int] = field(default_factory=list)

    async def ensure_namespace(self, character_id: str) -> None:
        self.calls.append("ensure_namespace")
        self.points.setdefault(character_id, {})

    async def upsert(
        self,
        fragment: StoredFragment,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
    ) -> None:
        self.calls.append("upsert")
        self.points[fragment.character_id][fragment.id] = (
            fragment.model_copy(deep=True),
            list(dense_vector),
        )

    async def hybrid_search(
        self,
        character_id: str,
        dense_vector: Sequence[float],
        sparse_vector: SparseVector | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        self.calls.append("hybrid_search")
        self.search_limits.append(limit)
        if self.canned is not None:
            return [r.model_copy(deep=True) for r in self.canned[:limit]]
        scored = [
            SearchResult(
                fragment=fragment.model_copy(deep=True),
                semantic_score=_cosine(dense_vector, vector),
            )
            for fragment, vector in self.points.get(character_id, {}).values()
        ]
        scored.sort(key=lambda r: r.semantic_score, reverse=True)
        return scored[:limit]

    async def delete(self, fragment_id: str, *, character_id: str | None) -> None:
        if not character_id:
            raise InvalidInputError("character_id is required to delete a fragment")
        self.points.get(character_id, {}).pop(fragment_id, None)

    async def delete_namespace(self, character_id: str | None) -> None:
        if not character_id:
            raise InvalidInputError("character_id is required to delete a namespace")
        self.points.pop(character_id, None)


@dataclass
class FakeAccessStore:
    infos: dict[tuple[str, str], AccessInfo] = field(default_factory=dict)
    batch_calls: int = 0
    increments: list[str] = field(default_factory=list)
    fail_increments: bool = False
    calls: list[str] = field(default_factory=list)

    async def increment_access_count(self, character_id: str, fragment_id: str) -> None:
        if self.fail_increments:
            raise DependencyError("access store unavailable")
        self.increments.append(fragment_id)
        now = utcnow()
        info = self.infos.get((character_id, fragment_id))
        if info is None:
            info = AccessInfo(
                character_id=character_id,
                fragment_id=fragment_id,
                first_accessed_at=now,
            )
        info.access_count += 1
        info.last_accessed_at = now
        self.infos[(character_id, fragment_id)] = info

    async def get_access_info(self, character_id: str, fragment_id: str) -> AccessInfo | None:
        return self.infos.get((character_id, fragment_id))

    async def get_batch_access_info(
        self, character_id: str, fragment_ids: Sequence[str]
    ) -> dict[str, AccessInfo]:
        self.batch_calls += 1
        return {
            fid: self.infos[(character_id, fid)]
            for fid in fragment_ids
            if (character_id, fid) in self.infos
        }

    async def init_access_info(self, character_id: str, fragment_id: str, now: datetime) -> None:
        self.calls.append("init_access_info")
        self.infos[(character_id, fragment_id)] = AccessInfo(
            character_id=character_id,
            fragment_id=fragment_id,
            access_count=0,
            first_accessed_at=now,
            last_accessed_at=now,
        )

    async def delete_access_info(self, character_id: str, fragment_id: str) -> None:
        self.infos.pop((character_id, fragment_id), None)

    async def delete_character(self, character_id: str) -> None:
        for key in [k for k in self.infos if k[0] == character_id]:
            del self.infos[key]


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass
class FakeTaskQueue:
    tasks: dict[str, Task] = field(default_factory=dict)
    queue: list[str] = field(default_factory=list)
    enqueued: list[str] = field(default_factory=list)

    async def enqueue(self, task: Task) -> None:
        self.tasks[task.id] = task.model_copy(deep=True)
        if task.id in self.queue:
            self.queue.remove(task.id)
        self.queue.append(task.id)
        self.enqueued.append(task.id)

    async def dequeue(self) -> Task | None:
        if not self.queue:
            return None
        return self.tasks[self.queue.pop(0)].model_copy(deep=True)

    async def claim(self, task_id: str) -> bool:
        if task_id not in self.queue:
            return False
        self.queue.remove(task_id)
        return True

    async def get(self, task_id: str) -> Task:
        if task_id not in self.tasks:
            raise NotFoundError(f"task not found: {task_id}")
        return self.tasks[task_id].model_copy(deep=True)

    async def update(self, task: Task) -> None:
        self.tasks[task.id] = task.model_copy(deep=True)

    async def list_by_character(self, character_id: str, limit: int = 100) -> list[Task]:
        order = {tid: i for i, tid in enumerate(dict.fromkeys(self.enqueued))}
        owned = [t for t in self.tasks.values() if t.character_id == character_id]
        owned.sort(key=lambda t: (t.created_at, order.get(t.id, -1)), reverse=True)
        return [t.model_copy(deep=True) for t in owned[:limit]]

    async def delete(self, task_id: str) -> None:
        await self.get(task_id)
        self.tasks.pop(task_id)
        if task_id in self.queue:
            self.queue.remove(task_id)

    async def delete_character(self, character_id: str) -> int:
        owned = [tid for tid, t in self.tasks.items() if t.character_id == character_id]
        for tid in owned:
            await self.delete(tid)
        return len(owned)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def character_id() -> str:
    return new_id()


@pytest.fixture()
def input_buffer() -> FakeInputBuffer:
    return FakeInputBuffer()


@pytest.fixture()
def context_store() -> FakeContextStore:
    return FakeContextStore()


@pytest.fixture()
def task_creator() -> FakeTaskCreator:
    return FakeTaskCreator()


@pytest.fixture()
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture()
def access_store() -> FakeAccessStore:
    return FakeAccessStore()


@pytest.fixture()
def task_queue() -> FakeTaskQueue:
    return FakeTaskQueue()
