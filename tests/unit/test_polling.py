"""Unit tests for the external-processor polling protocol."""

from __future__ import annotations

import logging

import pytest

from recollect.errors import DependencyError
from recollect.errors import InvalidInputError
from recollect.ids import new_id
from recollect.observability import metrics_snapshot
from recollect.retrieval.engine import RetrievalEngine
from recollect.tasks.embeddings import MockEmbeddingGenerator
from recollect.tasks.polling import PollingService
from recollect.tasks.schemas import CompletedTaskItem
from recollect.tasks.schemas import TaskOwner
from recollect.tasks.schemas import TaskStatus
from recollect.tasks.service import TaskService
from recollect.tasks.worker import TaskWorker


@pytest.fixture()
def service(task_queue) -> TaskService:
    return TaskService(task_queue)


@pytest.fixture()
def engine(vector_store, access_store) -> RetrievalEngine:
    return RetrievalEngine(vector_store, access_store)


@pytest.fixture()
def polling(task_queue, engine) -> PollingService:
    return PollingService(task_queue, engine)


def _embedding_result(task_id: str, size: int = 4) -> CompletedTaskItem:
    return CompletedTaskItem(
        task_id=task_id,
        data={"denseVector": [0.5] * size, "sparseVector": {"7": 1.0}, "tokenCount": 2},
    )


class TestPendingHandout:
    async def test_returns_pending_oldest_first_and_claims(
        self, polling, service, task_queue, character_id
    ):
        first = await service.create_task(character_id, "embedding", {"text": "a"})
        second = await service.create_task(character_id, "embedding", {"text": "b"})

        items = await polling.handle_polling(character_id)

        assert [i.task_id for i in items] == [first.id, second.id]
        assert items[0].data["text"] == "a"
        assert items[0].dtype == "text"
        assert items[0].meta["character_id"] == character_id
        assert task_queue.queue == []
        assert task_queue.tasks[first.id].status == TaskStatus.processing

    async def test_claimed_tasks_are_not_handed_out_twice(self, polling, service, character_id):
        await service.create_task(character_id, "embedding", {"text": "a"})
        assert len(await polling.handle_polling(character_id)) == 1
        assert await polling.handle_polling(character_id) == []

    async def test_only_own_character(self, polling, service, character_id):
        await service.create_task(new_id(), "embedding", {"text": "other"})
        assert await polling.handle_polling(character_id) == []

    async def test_claimed_task_never_reaches_worker(self, polling, service, task_queue, character_id):
        await service.create_task(character_id, "embedding", {"text": "a"})
        await polling.handle_polling(character_id)

        worker = TaskWorker(task_queue, MockEmbeddingGenerator(4))
        assert await worker.process_next() is None

    async def test_rejects_malformed_character(self, polling):
        with pytest.raises(InvalidInputError):
            await polling.handle_polling("nobody")


class TestReportedResults:
    async def test_completes_and_stores_handed_out_task(
        self, polling, service, task_queue, vector_store, character_id
    ):
        task = await service.create_task(
            character_id, "embedding", {"text": "hello", "storeInDb": True}
        )
        await polling.handle_polling(character_id)

        pending = await polling.handle_polling(character_id, [_embedding_result(task.id)])

        stored = task_queue.tasks[task.id]
        assert pending == []
        assert stored.status == TaskStatus.completed
        assert stored.output["token_count"] == 2
        fragment_id = stored.output["fragment_id"]
        assert fragment_id in vector_store.points[character_id]
        assert metrics_snapshot().task_outcomes == {"completed": 1}

    async def test_result_for_queued_task_claims_it(
        self, polling, service, task_queue, character_id
    ):
        task = await service.create_task(character_id, "embedding", {"text": "hello"})

        pending = await polling.handle_polling(character_id, [_embedding_result(task.id)])

        assert pending == []
        assert task_queue.queue == []
        assert task_queue.tasks[task.id].status == TaskStatus.completed
        assert task_queue.tasks[task.id].output["fragment_id"] is None

    async def test_invalid_result_counts_as_failed_attempt(
        self, polling, service, task_queue, character_id
    ):
        task = await service.create_task(character_id, "embedding", {"text": "hello"})
        await polling.handle_polling(character_id)

        bad = CompletedTaskItem(task_id=task.id, data={"denseVector": []})
        pending = await polling.handle_polling(character_id, [bad])

        stored = task_queue.tasks[task.id]
        assert stored.retry_count == 1
        assert "invalid embedding" in stored.error
        assert [i.task_id for i in pending] == [task.id]
        assert metrics_snapshot().task_outcomes == {"retried": 1}

    async def test_finished_task_result_is_ignored(
        self, polling, service, task_queue, character_id, caplog
    ):
        task = await service.create_task(character_id, "embedding", {"text": "hello"})
        await polling.handle_polling(character_id, [_embedding_result(task.id)])
        output = task_queue.tasks[task.id].output

        with caplog.at_level(logging.WARNING, logger="recollect.tasks.polling"):
            await polling.handle_polling(character_id, [_embedding_result(task.id, size=8)])

        assert task_queue.tasks[task.id].output == output
        assert "already completed" in caplog.text

    @pytest.mark.parametrize("task_id", ["garbage", new_id()])
    async def test_unknown_task_is_skipped(self, polling, character_id, caplog, task_id):
        with caplog.at_level(logging.WARNING, logger="recollect.tasks.polling"):
            pending = await polling.handle_polling(
                character_id, [_embedding_result(task_id)]
            )
        assert pending == []
        assert "unknown task" in caplog.text

class TestClaimOwnership:
    async def test_handed_out_task_is_held_by_external(
        self, polling, service, task_queue, character_id
    ):
        task = await service.create_task(character_id, "embedding", {"text": "a"})
        await polling.handle_polling(character_id)
        assert task_queue.tasks[task.id].claimed_by == TaskOwner.external

    async def test_result_for_task_held_by_worker_is_rejected(
        self, polling, service, task_queue, character_id, caplog
    ):
        task = await service.create_task(character_id, "embedding", {"text": "a"})
        held = await task_queue.dequeue()
        held.mark_processing(TaskOwner.worker)
        await task_queue.update(held)

        with caplog.at_level(logging.WARNING, logger="recollect.tasks.polling"):
            await polling.handle_polling(character_id, [_embedding_result(task.id)])

        stored = task_queue.tasks[task.id]
        assert stored.status == TaskStatus.processing
        assert stored.claimed_by == TaskOwner.worker
        assert stored.output is None
        assert "held by the worker" in caplog.text
        assert metrics_snapshot().task_outcomes == {}

    async def test_result_for_task_popped_elsewhere_is_rejected(
        self, polling, service, task_queue, character_id, caplog
    ):
        task = await service.create_task(character_id, "embedding", {"text": "a"})
        await task_queue.dequeue()

        with caplog.at_level(logging.WARNING, logger="recollect.tasks.polling"):
            await polling.handle_polling(character_id, [_embedding_result(task.id)])

        assert task_queue.tasks[task.id].status == TaskStatus.pending
        assert "held by another consumer" in caplog.text

    async def test_failed_handout_write_returns_task_to_queue(
        self, polling, service, task_queue, character_id, monkeypatch
    ):
        task = await service.create_task(character_id, "embedding", {"text": "a"})

        async def down(t) -> None:
            raise DependencyError("redis down")

        monkeypatch.setattr(task_queue, "update", down)
        with pytest.raises(DependencyError):
            await polling.handle_polling(character_id)
        assert task_queue.queue == [task.id]
