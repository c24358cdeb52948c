"""Redis-backed task queue.

Keys:
  ``recollect:task:queue``               sorted set of pending task ids (score = enqueue time)
  ``recollect:task:{id}``                task JSON, expires after the task TTL
  ``recollect:tasks:character:{char}``   sorted set of a character's task ids (score = creation time)

``ZPOPMIN`` is the only point of mutual exclusion between workers: a task id
popped by one worker is never handed to another.
"""

from __future__ import annotations

import logging
import time

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from recollect._redis import decode
from recollect._redis import PREFIX
from recollect._redis import redis_errors
from recollect.errors import DependencyError
from recollect.errors import NotFoundError
from recollect.tasks.schemas import Task

logger = logging.getLogger(__name__)

QUEUE_KEY = f"{PREFIX}:task:queue"
_TASK_KEY = f"{PREFIX}:task"
_CHARACTER_TASKS_KEY = f"{PREFIX}:tasks:character"
DEFAULT_LIST_LIMIT = 100


def _task_key(task_id: str) -> str:
    return f"{_TASK_KEY}:{task_id}"


def _character_key(character_id: str) -> str:
    return f"{_CHARACTER_TASKS_KEY}:{character_id}"


class RedisTaskQueue:
    """Persistent FIFO of tasks with per-character listing."""

    def __init__(self, redis: Redis, *, ttl: int = 7 * 24 * 3600) -> None:
        self._redis = redis
        self._ttl = ttl

    async def enqueue(self, task: Task) -> None:
        """Persist *task* and put it at the back of the queue.

        Re-enqueueing a retried task moves it to the back again; its position
        in the character listing keeps the original creation time.
        """
        with redis_errors("task enqueue"):
            pipe = self._redis.pipeline()
            pipe.set(_task_key(task.id), task.model_dump_json(), ex=self._ttl)
            pipe.zadd(QUEUE_KEY, {task.id: time.time()})
            pipe.zadd(
                _character_key(task.character_id),
                {task.id: task.created_at.timestamp()},
                nx=True,
            )
            await pipe.execute()

    async def dequeue(self) -> Task | None:
        """Pop the oldest queued task, or ``None`` when the queue is empty.

        Ids whose task record has expired are discarded.
        """
        while True:
            with redis_errors("task dequeue"):
                popped = await self._redis.zpopmin(QUEUE_KEY, 1)
            if not popped:
                return None
            task_id = decode(popped[0][0])
            task = await self._load(task_id)
            if task is not None:
                return task
            logger.warning("Discarding queued task %s with no stored record", task_id)

    async def claim(self, task_id: str) -> bool:
        """Remove *task_id* from the queue; ``True`` if this caller got it."""
        with redis_errors("task claim"):
            removed = await self._redis.zrem(QUEUE_KEY, task_id)
        return bool(removed)

    async def get(self, task_id: str) -> Task:
        task = await self._load(task_id)
        if task is None:
            raise NotFoundError(f"task not found: {task_id}")
        return task

    async def update(self, task: Task) -> None:
        with redis_errors("task update"):
            await self._redis.set(
                _task_key(task.id), task.model_dump_json(), ex=self._ttl
            )

    async def list_by_character(
        self, character_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Task]:
        """Return up to *limit* tasks of a character, newest first."""
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        key = _character_key(character_id)
        with redis_errors("task list"):
            ids = [decode(raw) for raw in await self._redis.zrevrange(key, 0, limit - 1)]
            if not ids:
                return []
            raw_tasks = await self._redis.mget([_task_key(tid) for tid in ids])

        tasks: list[Task] = []
        expired: list[str] = []
        for tid, raw in zip(ids, raw_tasks):
            if raw is None:
                expired.append(tid)
                continue
            try:
                tasks.append(Task.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping unreadable task record %s", tid)
        if expired:
            with redis_errors("task list prune"):
                await self._redis.zrem(key, *expired)
        return tasks

    async def delete(self, task_id: str) -> None:
        task = await self.get(task_id)
        with redis_errors("task delete"):
            pipe = self._redis.pipeline()
            pipe.zrem(QUEUE_KEY, task_id)
            pipe.zrem(_character_key(task.character_id), task_id)
            pipe.delete(_task_key(task_id))
            await pipe.execute()

    async def delete_character(self, character_id: str) -> int:
        """Delete every task of a character; returns how many were removed."""
        key = _character_key(character_id)
        with redis_errors("task delete character"):
            ids = [decode(raw) for raw in await self._redis.zrange(key, 0, -1)]
            pipe = self._redis.pipeline()
            if ids:
                pipe.zrem(QUEUE_KEY, *ids)
                pipe.delete(*[_task_key(tid) for tid in ids])
            pipe.delete(key)
            await pipe.execute()
        return len(ids)

    async def _load(self, task_id: str) -> Task | None:
        with redis_errors("task get"):
            raw = await self._redis.get(_task_key(task_id))
        if raw is None:
            return None
        try:
            return Task.model_validate_json(raw)
        except ValidationError as exc:
            raise DependencyError(f"task {task_id} record is unreadable") from exc
