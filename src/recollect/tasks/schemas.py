"""Task domain data models and state transitions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from recollect.ids import new_id
from recollect.memory.schemas import utcnow
from recollect.retrieval.schemas import DType

DEFAULT_MAX_RETRIES = 3


class TaskType(str, Enum):
    """Kinds of asynchronous work."""

    embedding = "embedding"


class TaskStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class TaskOwner(str, Enum):
    """Who took a task off the queue: the in-process worker or a poller."""

    worker = "worker"
    external = "external"


class Task(BaseModel):
    """A unit of asynchronous work owned by one character.

    Lifecycle::

        pending -> processing -> completed
                       |
                       +-> pending (retry) ... -> failed
    """

    id: str = Field(default_factory=new_id)
    character_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.pending
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    claimed_by: TaskOwner | None = Field(
        default=None,
        description="Holder of the claim while the task is processing.",
    )
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    def mark_processing(self, owner: TaskOwner, now: datetime | None = None) -> None:
        self.status = TaskStatus.processing
        self.claimed_by = owner
        self.started_at = now or utcnow()

    def mark_completed(self, output: dict[str, Any], now: datetime | None = None) -> None:
        self.status = TaskStatus.completed
        self.output = output
        self.error = None
        self.completed_at = now or utcnow()

    def mark_failed(self, error: str, now: datetime | None = None) -> None:
        self.status = TaskStatus.failed
        self.error = error
        self.completed_at = now or utcnow()

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def reset_for_retry(self) -> None:
        self.status = TaskStatus.pending
        self.started_at = None
        self.claimed_by = None
        self.output = None


class EmbeddingTaskInput(BaseModel):
    """Payload of an ``embedding`` task."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1, description="Text to embed.")
    model: str = Field(default="", description="Provider model; empty uses the default.")
    store_in_db: bool = Field(
        default=False,
        alias="storeInDb",
        description="Store the text and its vectors as a durable fragment.",
    )
    dtype: DType = Field(default=DType.text, alias="dType")
    metadata: dict[str, Any] = Field(default_factory=dict)


class EmbeddingTaskOutput(BaseModel):
    """Result of an ``embedding`` task."""

    model_config = ConfigDict(populate_by_name=True)

    dense_vector: list[float] = Field(alias="denseVector", min_length=1)
    sparse_vector: dict[int, float] = Field(default_factory=dict, alias="sparseVector")
    fragment_id: str | None = Field(
        default=None,
        alias="fragmentId",
        description="Set when the result was stored as a durable fragment.",
    )
    model: str = ""
    token_count: int = Field(default=0, ge=0, alias="tokenCount")


class CompletedTaskItem(BaseModel):
    """A result computed outside the worker and reported by polling."""

    task_id: str
    dtype: DType = DType.text
    data: Any = None


class PendingTaskItem(BaseModel):
    """A pending task handed out to an external processor."""

    task_id: str
    type: TaskType
    dtype: DType = DType.text
    data: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] = Field(default_factory=dict)
