"""Polling protocol for external task processors.

An external processor reports the results it computed and receives the
character's pending tasks in one call.  Handed-out tasks are claimed
(removed from the queue and marked ``processing`` by ``external``) so the
in-process worker never runs them too, and results for tasks the worker holds
are rejected.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from recollect.errors import DependencyError
from recollect.errors import InvalidInputError
from recollect.errors import NotFoundError
from recollect.ids import require_id
from recollect.tasks.schemas import CompletedTaskItem
from recollect.tasks.schemas import EmbeddingTaskOutput
from recollect.tasks.schemas import PendingTaskItem
from recollect.tasks.schemas import Task
from recollect.tasks.schemas import TaskOwner
from recollect.tasks.schemas import TaskStatus
from recollect.tasks.schemas import TaskType
from recollect.tasks.service import TaskQueue
from recollect.tasks.worker import complete_task
from recollect.tasks.worker import fail_or_requeue
from recollect.tasks.worker import FragmentWriter
from recollect.tasks.worker import store_embedding_result

logger = logging.getLogger(__name__)

_PENDING_SCAN_LIMIT = 100


class PollingService:
    def __init__(self, queue: TaskQueue, writer: FragmentWriter | None = None) -> None:
        self._queue = queue
        self._writer = writer

    async def handle_polling(
        self,
        character_id: str,
        completed_tasks: Sequence[CompletedTaskItem] = (),
    ) -> list[PendingTaskItem]:
        """Apply reported results, then claim and return pending tasks."""
        character_id = require_id(character_id, field="character_id")
        for item in completed_tasks:
            await self._apply_result(item)
        return await self._claim_pending(character_id)

    async def _apply_result(self, item: CompletedTaskItem) -> None:
        try:
            task = await self._queue.get(require_id(item.task_id, field="task_id"))
        except (InvalidInputError, NotFoundError):
            logger.warning("Ignoring result for unknown task %r", item.task_id)
            return
        if task.status in (TaskStatus.completed, TaskStatus.failed):
            logger.warning(
                "Ignoring result for task %s already %s", task.id, task.status.value
            )
            return

        # Results are accepted for tasks handed out by polling, or for queued
        # tasks this call manages to claim before the worker pops them.
        if await self._queue.claim(task.id):
            task.mark_processing(TaskOwner.external)
        elif task.claimed_by != TaskOwner.external:
            holder = f"the {task.claimed_by.value}" if task.claimed_by else "another consumer"
            logger.warning(
                "Ignoring result for task %s, it is held by %s", task.id, holder
            )
            return

        try:
            output = await self._result_output(task, item.data)
            await complete_task(self._queue, task, output)
        except Exception as exc:
            await fail_or_requeue(self._queue, task, exc)

    async def _result_output(self, task: Task, data: Any) -> dict[str, Any]:
        if task.type != TaskType.embedding:
            return data if isinstance(data, dict) else {"result": data}
        try:
            result = EmbeddingTaskOutput.model_validate(data)
        except ValidationError as exc:
            raise DependencyError(
                f"external processor returned an invalid embedding for task {task.id}"
            ) from exc
        result = await store_embedding_result(task, result, self._writer)
        return result.model_dump(mode="json")

    async def _claim_pending(self, character_id: str) -> list[PendingTaskItem]:
        tasks = await self._queue.list_by_character(character_id, _PENDING_SCAN_LIMIT)
        pending = sorted(
            (t for t in reversed(tasks) if t.status == TaskStatus.pending),
            key=lambda t: t.created_at,
        )

        claimed: list[PendingTaskItem] = []
        for task in pending:
            if not await self._queue.claim(task.id):
                continue
            task.mark_processing(TaskOwner.external)
            try:
                await self._queue.update(task)
            except DependencyError:
                task.reset_for_retry()
                await self._queue.enqueue(task)
                raise
            claimed.append(
                PendingTaskItem(
                    task_id=task.id,
                    type=task.type,
                    dtype=task.input.get("dType", "text"),
                    data=task.input,
                    meta={
                        "created_at": task.created_at.isoformat(),
                        "character_id": task.character_id,
                    },
                )
            )
        return claimed
