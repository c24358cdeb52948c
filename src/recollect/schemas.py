"""Result models returned by the MCP tools.

Every result carries ``status`` (``ok`` or ``error``); on error,
``error_code`` is one of ``not_found``, ``validation_error`` or
``dependency_error`` and ``message`` explains the failure.
"""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import Field

from recollect.characters.schemas import Character
from recollect.memory.schemas import ContextSnapshot
from recollect.memory.schemas import MemoryFragment
from recollect.observability import MetricsSnapshot
from recollect.retrieval.schemas import SearchResult
from recollect.retrieval.schemas import StoredFragment
from recollect.tasks.schemas import PendingTaskItem
from recollect.tasks.schemas import Task


class ToolResult(BaseModel):
    status: str = Field(
        default="ok",
        description="Outcome status (ok, error).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable error family when status is 'error'.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable error detail.",
    )


class CharacterResult(ToolResult):
    character: Character | None = None


class CharacterListResult(ToolResult):
    characters: list[Character] = Field(default_factory=list)


class PutMemoryResult(ToolResult):
    fragment: StoredFragment | None = Field(
        default=None,
        description="The stored fragment when vectors were supplied.",
    )
    task_id: str | None = Field(
        default=None,
        description="Embedding task enqueued when no vectors were supplied.",
    )


class GetMemoryResult(ToolResult):
    results: list[SearchResult] = Field(default_factory=list)


class InputResult(ToolResult):
    fragment: MemoryFragment | None = None


class BufferSweepResult(ToolResult):
    processed: int = 0
    promoted: int = 0


class ContextResult(ToolResult):
    context: ContextSnapshot | None = None


class TaskResult(ToolResult):
    task: Task | None = None


class TaskListResult(ToolResult):
    tasks: list[Task] = Field(default_factory=list)


class MetricsResult(ToolResult):
    metrics: MetricsSnapshot | None = None


class PollResult(ToolResult):
    tasks: list[PendingTaskItem] = Field(
        default_factory=list,
        description="Pending tasks claimed for the caller, oldest first.",
    )
