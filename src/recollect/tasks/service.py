"""Task creation and lookup."""

from __future__ import annotations

import logging
from typing import Any
from typing import Protocol

from pydantic import ValidationError

from recollect.config import WorkerConfig
from recollect.errors import InvalidInputError
from recollect.ids import require_id
from recollect.tasks.schemas import EmbeddingTaskInput
from recollect.tasks.schemas import Task
from recollect.tasks.schemas import TaskType

logger = logging.getLogger(__name__)


class TaskQueue(Protocol):
    async def enqueue(self, task: Task) -> None: ...

    async def dequeue(self) -> Task | None: ...

    async def claim(self, task_id: str) -> bool: ...

    async def get(self, task_id: str) -> Task: ...

    async def update(self, task: Task) -> None: ...

    async def list_by_character(self, character_id: str, limit: int = 100) -> list[Task]: ...

    async def delete(self, task_id: str) -> None: ...


def _parse_task_type(value: str | TaskType) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as exc:
        supported = ", ".join(t.value for t in TaskType)
        raise InvalidInputError(
            f"unsupported task type {value!r}; supported: {supported}"
        ) from exc


def _validate_input(task_type: TaskType, payload: dict[str, Any]) -> dict[str, Any]:
    if task_type == TaskType.embedding:
        try:
            parsed = EmbeddingTaskInput.model_validate(payload)
        except ValidationError as exc:
            raise InvalidInputError(f"invalid embedding input: {exc}") from exc
        if not parsed.text.strip():
            raise InvalidInputError("text is required")
        return parsed.model_dump(mode="json", by_alias=True)
    return payload


class TaskService:
    """Validates, enqueues and looks up tasks."""

    def __init__(self, queue: TaskQueue, *, config: WorkerConfig | None = None) -> None:
        self._queue = queue
        self._config = config or WorkerConfig()

    async def create_task(
        self,
        character_id: str,
        task_type: str | TaskType,
        payload: dict[str, Any] | None = None,
    ) -> Task:
        """Validate and enqueue a new ``pending`` task.

        Nothing is enqueued when the type is unsupported or the payload is
        invalid for it.
        """
        character_id = require_id(character_id, field="character_id")
        resolved = _parse_task_type(task_type)
        normalized = _validate_input(resolved, payload or {})

        task = Task(
            character_id=character_id,
            type=resolved,
            input=normalized,
            max_retries=self._config.max_retries,
        )
        await self._queue.enqueue(task)
        logger.info(
            "Created task %s type=%s character=%s",
            task.id,
            task.type.value,
            character_id,
        )
        return task

    async def get_task(self, task_id: str) -> Task:
        return await self._queue.get(require_id(task_id, field="task_id"))

    async def list_tasks(self, character_id: str, limit: int | None = None) -> list[Task]:
        """Tasks of a character, newest first."""
        character_id = require_id(character_id, field="character_id")
        if limit is None or limit <= 0:
            limit = self._config.list_limit
        return await self._queue.list_by_character(character_id, limit)

    async def enqueue_embedding(
        self,
        character_id: str,
        text: str,
        *,
        store_in_db: bool = True,
        metadata: dict | None = None,
    ) -> str:
        task = await self.create_task(
            character_id,
            TaskType.embedding,
            {"text": text, "storeInDb": store_in_db, "metadata": metadata or {}},
        )
        return task.id
