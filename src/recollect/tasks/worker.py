"""Background task worker.

A single coroutine pops one task at a time, dispatches it through a handler
table keyed by ``TaskType`` and applies the retry rule:

* success: ``completed`` with the handler output;
* failure: ``retry_count += 1``; while ``retry_count < max_retries`` the task
  goes back to ``pending`` at the end of the queue, otherwise it ends
  ``failed``.  Invalid payloads fail immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Sequence
from time import perf_counter
from typing import Any
from typing import Protocol

from pydantic import ValidationError

from recollect.config import WorkerConfig
from recollect.errors import InvalidInputError
from recollect.errors import RetriesExhaustedError
from recollect.observability import record_latency
from recollect.observability import record_task_outcome
from recollect.retrieval.schemas import DType
from recollect.retrieval.schemas import SparseVector
from recollect.retrieval.schemas import StoredFragment
from recollect.tasks.embeddings import EmbeddingGenerator
from recollect.tasks.schemas import EmbeddingTaskInput
from recollect.tasks.schemas import EmbeddingTaskOutput
from recollect.tasks.schemas import Task
from recollect.tasks.schemas import TaskOwner
from recollect.tasks.schemas import TaskStatus
from recollect.tasks.schemas import TaskType
from recollect.tasks.service import TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[dict[str, Any]]]


class FragmentWriter(Protocol):
    """The storage path of the retrieval engine."""

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
    ) -> StoredFragment: ...


def parse_embedding_input(task: Task) -> EmbeddingTaskInput:
    try:
        return EmbeddingTaskInput.model_validate(task.input)
    except ValidationError as exc:
        raise InvalidInputError(f"task {task.id} has invalid embedding input") from exc


async def store_embedding_result(
    task: Task,
    result: EmbeddingTaskOutput,
    writer: FragmentWriter | None,
) -> EmbeddingTaskOutput:
    """Store the embedded text as a fragment when the task asks for it."""
    data = parse_embedding_input(task)
    if not data.store_in_db or writer is None:
        return result
    fragment = await writer.store(
        task.character_id,
        data.text,
        result.dense_vector,
        result.sparse_vector or None,
        dtype=data.dtype,
        metadata=data.metadata,
    )
    logger.info("Embedding of task %s stored as fragment %s", task.id, fragment.id)
    return result.model_copy(update={"fragment_id": fragment.id})


async def complete_task(queue: TaskQueue, task: Task, output: dict[str, Any]) -> None:
    task.mark_completed(output)
    await queue.update(task)
    record_task_outcome("completed")
    logger.info("Task %s completed", task.id)


async def fail_or_requeue(queue: TaskQueue, task: Task, error: BaseException) -> bool:
    """Apply the retry rule to a failed attempt; ``True`` if requeued."""
    task.retry_count += 1
    message = str(error) or type(error).__name__

    if not isinstance(error, InvalidInputError) and task.can_retry():
        task.reset_for_retry()
        task.error = message
        await queue.enqueue(task)
        record_task_outcome("retried")
        logger.warning(
            "Task %s failed (attempt %d/%d), requeued: %s",
            task.id,
            task.retry_count,
            task.max_retries,
            message,
        )
        return True

    if isinstance(error, InvalidInputError):
        reason = message
    else:
        reason = str(RetriesExhaustedError(task.id, task.retry_count, message))
    task.mark_failed(reason)
    await queue.update(task)
    record_task_outcome("failed")
    logger.error("Task %s failed permanently: %s", task.id, reason)
    return False


class TaskWorker:
    """Single-consumer polling loop over a ``TaskQueue``."""

    def __init__(
        self,
        queue: TaskQueue,
        generator: EmbeddingGenerator,
        writer: FragmentWriter | None = None,
        *,
        config: WorkerConfig | None = None,
    ) -> None:
        self._queue = queue
        self._generator = generator
        self._writer = writer
        self._config = config or WorkerConfig()
        self._handlers: dict[TaskType, TaskHandler] = {
            TaskType.embedding: self._handle_embedding,
        }

    async def run(self, stop_event: asyncio.Event) -> None:
        """Process tasks until *stop_event* is set.

        The stop signal is only observed between tasks; a task in flight
        always runs to its outcome.
        """
        logger.info(
            "Task worker started (poll interval %.1fs)",
            self._config.poll_interval_seconds,
        )
        while not stop_event.is_set():
            try:
                await self.process_next()
            except Exception:
                logger.exception("Task worker iteration failed")
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self._config.poll_interval_seconds
                )
            except TimeoutError:
                pass
        logger.info("Task worker stopped")

    async def process_next(self) -> Task | None:
        """Process the oldest queued task; ``None`` when the queue is empty.

        Once dequeued, every failure (including failed writes of the task
        record) goes through the retry rule, so a popped task always ends
        completed, failed or back in the queue.
        """
        task = await self._queue.dequeue()
        if task is None:
            return None
        if task.status in (TaskStatus.completed, TaskStatus.failed):
            logger.info("Skipping task %s already %s", task.id, task.status.value)
            return task

        start = perf_counter()
        ok = False
        try:
            task.mark_processing(TaskOwner.worker)
            await self._queue.update(task)
            logger.info(
                "Processing task %s type=%s character=%s",
                task.id,
                task.type.value,
                task.character_id,
            )
            handler = self._handlers.get(task.type)
            if handler is None:
                raise InvalidInputError(f"unknown task type: {task.type.value}")
            output = await handler(task)
            await complete_task(self._queue, task, output)
            ok = True
        except Exception as exc:
            await self._settle_failure(task, exc)
        finally:
            record_latency(
                operation="worker.process",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
        return task

    async def _settle_failure(self, task: Task, error: Exception) -> None:
        try:
            await fail_or_requeue(self._queue, task, error)
        except Exception:
            logger.exception(
                "Could not record the outcome of task %s, returning it to the queue",
                task.id,
            )
            task.reset_for_retry()
            await self._queue.enqueue(task)

    async def _handle_embedding(self, task: Task) -> dict[str, Any]:
        data = parse_embedding_input(task)
        embedding = await self._generator.generate(data.text, data.model)
        result = EmbeddingTaskOutput(
            dense_vector=embedding.dense,
            sparse_vector=embedding.sparse,
            model=data.model,
            token_count=embedding.token_count,
        )
        result = await store_embedding_result(task, result, self._writer)
        return result.model_dump(mode="json")
