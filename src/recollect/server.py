"""recollect MCP server.

Tools delegate to the memory tier manager, the retrieval engine, the task
service and the character registry.  Call ``configure(...)`` before using
the server and ``shutdown()`` to stop the background worker.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from time import perf_counter
from typing import TypeVar

from fastmcp import FastMCP
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from recollect.characters import CharacterService
from recollect.characters import RedisCharacterStore
from recollect.config import EmbeddingConfig
from recollect.config import LayerConfig
from recollect.config import ScoreConfig
from recollect.config import VectorStoreConfig
from recollect.config import WorkerConfig
from recollect.errors import error_code
from recollect.errors import InvalidInputError
from recollect.errors import RecollectError
from recollect.memory import MemoryTierManager
from recollect.memory import RedisContextStore
from recollect.memory import RedisInputBuffer
from recollect.observability import metrics_snapshot
from recollect.observability import record_latency
from recollect.retrieval import build_qdrant_client
from recollect.retrieval import QdrantVectorStore
from recollect.retrieval import RedisAccessStore
from recollect.retrieval import RetrievalEngine
from recollect.retrieval import Scorer
from recollect.schemas import BufferSweepResult
from recollect.schemas import CharacterListResult
from recollect.schemas import CharacterResult
from recollect.schemas import ContextResult
from recollect.schemas import GetMemoryResult
from recollect.schemas import InputResult
from recollect.schemas import MetricsResult
from recollect.schemas import PollResult
from recollect.schemas import PutMemoryResult
from recollect.schemas import TaskListResult
from recollect.schemas import TaskResult
from recollect.schemas import ToolResult
from recollect.tasks import build_embedding_generator
from recollect.tasks import CompletedTaskItem
from recollect.tasks import EmbeddingGenerator
from recollect.tasks import PollingService
from recollect.tasks import RedisTaskQueue
from recollect.tasks import TaskService
from recollect.tasks import TaskWorker

logger = logging.getLogger(__name__)

mcp = FastMCP("recollect")

R = TypeVar("R", bound=ToolResult)

# ---------------------------------------------------------------------------
# Service instances (set via configure())
# ---------------------------------------------------------------------------

_redis: Redis | None = None
_vector_store: QdrantVectorStore | None = None
_generator: EmbeddingGenerator | None = None
_memory: MemoryTierManager | None = None
_retrieval: RetrievalEngine | None = None
_tasks: TaskService | None = None
_polling: PollingService | None = None
_characters: CharacterService | None = None
_worker_task: asyncio.Task | None = None
_worker_stop: asyncio.Event | None = None


async def configure(
    redis_url: str = "redis://localhost:6379",
    *,
    vector_store_config: VectorStoreConfig | None = None,
    embedding_config: EmbeddingConfig | None = None,
    embedding_generator: EmbeddingGenerator | None = None,
    layer_config: LayerConfig | None = None,
    score_config: ScoreConfig | None = None,
    worker_config: WorkerConfig | None = None,
    start_worker: bool = True,
) -> None:
    """Build every collaborator and, optionally, start the task worker.

    Must be called before the MCP tools can function.  Calling it again
    replaces the previous configuration.
    """
    global _redis, _vector_store, _generator, _memory, _retrieval
    global _tasks, _polling, _characters, _worker_task, _worker_stop

    if _redis is not None:
        try:
            await shutdown()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass

    vs_cfg = vector_store_config or VectorStoreConfig()
    layer_cfg = layer_config or LayerConfig()
    worker_cfg = worker_config or WorkerConfig()
    generator = embedding_generator or build_embedding_generator(
        embedding_config or EmbeddingConfig(vector_size=vs_cfg.vector_size)
    )

    _redis = Redis.from_url(redis_url)
    _vector_store = QdrantVectorStore(
        build_qdrant_client(vs_cfg),
        vector_size=vs_cfg.vector_size,
        collection_prefix=vs_cfg.collection_prefix,
    )
    _generator = generator

    queue = RedisTaskQueue(_redis, ttl=worker_cfg.task_ttl_seconds)
    _tasks = TaskService(queue, config=worker_cfg)
    _retrieval = RetrievalEngine(
        _vector_store,
        RedisAccessStore(_redis),
        scorer=Scorer(score_config),
    )
    _memory = MemoryTierManager(
        RedisInputBuffer(
            _redis,
            ttl=layer_cfg.input_buffer_ttl_seconds,
            max_size=layer_cfg.input_buffer_max_size,
        ),
        RedisContextStore(_redis, ttl=layer_cfg.context_ttl_seconds),
        config=layer_cfg,
        task_creator=_tasks,
    )
    _polling = PollingService(queue, _retrieval)
    _characters = CharacterService(
        RedisCharacterStore(_redis),
        scoped_stores=[_retrieval, _memory, queue],
    )

    if start_worker:
        worker = TaskWorker(queue, _generator, _retrieval, config=worker_cfg)
        _worker_stop = asyncio.Event()
        _worker_task = asyncio.create_task(worker.run(_worker_stop))


async def shutdown() -> None:
    """Stop the worker and close backend clients."""
    global _redis, _vector_store, _generator, _memory, _retrieval
    global _tasks, _polling, _characters, _worker_task, _worker_stop

    if _worker_task is not None and _worker_stop is not None:
        _worker_stop.set()
        await _worker_task
    _worker_task = None
    _worker_stop = None

    if _retrieval is not None:
        await _retrieval.drain()
    if _vector_store is not None:
        await _vector_store.close()
    if _redis is not None:
        await _redis.aclose()

    _redis = None
    _vector_store = None
    _generator = None
    _memory = None
    _retrieval = None
    _tasks = None
    _polling = None
    _characters = None


def _require(service: object | None, name: str):
    if service is None:
        raise RuntimeError(f"{name} not configured. Call configure() first.")
    return service


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


async def _run_tool(
    name: str,
    result_type: type[R],
    action: Callable[[], Awaitable[R]],
) -> R:
    """Run *action*, mapping domain errors onto an ``error`` result."""
    start = perf_counter()
    ok = False
    try:
        result = await action()
        ok = True
        return result
    except ValidationError as exc:
        return result_type(
            status="error",
            error_code="validation_error",
            message=_validation_message(exc),
        )
    except RecollectError as exc:
        code = error_code(exc)
        if code == "dependency_error":
            logger.warning("Tool %s failed: %s", name, exc)
        return result_type(status="error", error_code=code, message=str(exc))
    finally:
        record_latency(
            operation=f"mcp.{name}",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


# ---------------------------------------------------------------------------
# Tools: characters
# ---------------------------------------------------------------------------


@mcp.tool
async def create_character(name: str) -> CharacterResult:
    """Register a new character with its own memory namespace.

    Args:
        name: Display name of the character.
    """
    service: CharacterService = _require(_characters, "Character registry")

    async def action() -> CharacterResult:
        return CharacterResult(character=await service.create(name))

    return await _run_tool("create_character", CharacterResult, action)


@mcp.tool
async def get_character(character_id: str) -> CharacterResult:
    """Look up a character by id."""
    service: CharacterService = _require(_characters, "Character registry")

    async def action() -> CharacterResult:
        return CharacterResult(character=await service.get(character_id))

    return await _run_tool("get_character", CharacterResult, action)


@mcp.tool
async def list_characters() -> CharacterListResult:
    """List every registered character, oldest first."""
    service: CharacterService = _require(_characters, "Character registry")

    async def action() -> CharacterListResult:
        return CharacterListResult(characters=await service.list())

    return await _run_tool("list_characters", CharacterListResult, action)


@mcp.tool
async def delete_character(character_id: str) -> ToolResult:
    """Delete a character together with all of its memory."""
    service: CharacterService = _require(_characters, "Character registry")

    async def action() -> ToolResult:
        await service.delete(character_id)
        return ToolResult()

    return await _run_tool("delete_character", ToolResult, action)


# ---------------------------------------------------------------------------
# Tools: durable memory
# ---------------------------------------------------------------------------


@mcp.tool
async def put_memory(
    character_id: str,
    content: str,
    dense_vector: list[float] | None = None,
    sparse_vector: dict[int, float] | None = None,
    metadata: dict | None = None,
) -> PutMemoryResult:
    """Store a durable memory fragment.

    With ``dense_vector`` the fragment is stored immediately.  Without it an
    embedding task is enqueued and the worker stores the fragment later.

    Args:
        character_id: Owner of the memory.
        content: Text of the memory.
        dense_vector: Precomputed dense embedding.
        sparse_vector: Precomputed sparse embedding (index -> weight).
        metadata: Arbitrary key-value metadata.
    """
    retrieval: RetrievalEngine = _require(_retrieval, "Retrieval engine")
    tasks: TaskService = _require(_tasks, "Task service")

    async def action() -> PutMemoryResult:
        if not content or not content.strip():
            raise InvalidInputError("content is required")
        if dense_vector is None:
            task_id = await tasks.enqueue_embedding(
                character_id, content, store_in_db=True, metadata=metadata
            )
            return PutMemoryResult(task_id=task_id)
        fragment = await retrieval.store(
            character_id,
            content,
            dense_vector,
            sparse_vector,
            metadata=metadata,
        )
        return PutMemoryResult(fragment=fragment)

    return await _run_tool("put_memory", PutMemoryResult, action)


@mcp.tool
async def get_memory(
    character_id: str,
    query: str | None = None,
    dense_vector: list[float] | None = None,
    sparse_vector: dict[int, float] | None = None,
    limit: int = 10,
) -> GetMemoryResult:
    """Retrieve a character's most relevant durable memories.

    Args:
        character_id: Owner of the memories.
        query: Natural language query, embedded when no vector is given.
        dense_vector: Precomputed dense query embedding.
        sparse_vector: Precomputed sparse query embedding.
        limit: Max results returned (defaults to 10 when <= 0).
    """
    retrieval: RetrievalEngine = _require(_retrieval, "Retrieval engine")
    generator: EmbeddingGenerator = _require(_generator, "Embedding generator")

    async def action() -> GetMemoryResult:
        dense = dense_vector
        sparse = sparse_vector
        if dense is None:
            if not query or not query.strip():
                raise InvalidInputError("query or dense_vector is required")
            embedding = await generator.generate(query)
            dense = embedding.dense
            sparse = sparse if sparse is not None else embedding.sparse
        results = await retrieval.retrieve(character_id, dense, sparse, limit)
        return GetMemoryResult(results=results)

    return await _run_tool("get_memory", GetMemoryResult, action)


@mcp.tool
async def delete_memory(character_id: str, fragment_id: str) -> ToolResult:
    """Delete one durable memory fragment and its access statistics."""
    retrieval: RetrievalEngine = _require(_retrieval, "Retrieval engine")

    async def action() -> ToolResult:
        await retrieval.delete(character_id, fragment_id)
        return ToolResult()

    return await _run_tool("delete_memory", ToolResult, action)


# ---------------------------------------------------------------------------
# Tools: short-lived layers
# ---------------------------------------------------------------------------


@mcp.tool
async def add_input(
    character_id: str,
    content: str,
    metadata: dict | None = None,
) -> InputResult:
    """Append raw input to a character's input buffer."""
    memory: MemoryTierManager = _require(_memory, "Memory tier manager")

    async def action() -> InputResult:
        fragment = await memory.add_to_input_buffer(character_id, content, metadata)
        return InputResult(fragment=fragment)

    return await _run_tool("add_input", InputResult, action)


@mcp.tool
async def process_input_buffer(character_id: str) -> BufferSweepResult:
    """Record an access on every buffered input and promote eligible ones."""
    memory: MemoryTierManager = _require(_memory, "Memory tier manager")

    async def action() -> BufferSweepResult:
        swept = await memory.process_input_buffer(character_id)
        return BufferSweepResult(processed=swept.processed, promoted=swept.promoted)

    return await _run_tool("process_input_buffer", BufferSweepResult, action)


@mcp.tool
async def get_context(character_id: str) -> ContextResult:
    """Return the character's current context (expired fragments excluded)."""
    memory: MemoryTierManager = _require(_memory, "Memory tier manager")

    async def action() -> ContextResult:
        return ContextResult(context=await memory.get_context(character_id))

    return await _run_tool("get_context", ContextResult, action)


@mcp.tool
async def update_context(
    character_id: str,
    summary: str | None = None,
    metadata: dict | None = None,
) -> ContextResult:
    """Patch the context summary and/or metadata; omitted fields are kept."""
    memory: MemoryTierManager = _require(_memory, "Memory tier manager")

    async def action() -> ContextResult:
        snapshot = await memory.update_context(
            character_id, summary=summary, metadata=metadata
        )
        return ContextResult(context=snapshot)

    return await _run_tool("update_context", ContextResult, action)


# ---------------------------------------------------------------------------
# Tools: tasks
# ---------------------------------------------------------------------------


@mcp.tool
async def create_task(
    character_id: str,
    type: str,
    input: dict | None = None,
) -> TaskResult:
    """Enqueue an asynchronous task.

    Args:
        character_id: Owner of the task.
        type: Task type (currently only ``embedding``).
        input: Type-specific payload, e.g. ``{"text": ..., "storeInDb": true}``.
    """
    tasks: TaskService = _require(_tasks, "Task service")

    async def action() -> TaskResult:
        return TaskResult(task=await tasks.create_task(character_id, type, input))

    return await _run_tool("create_task", TaskResult, action)


@mcp.tool
async def get_task(task_id: str) -> TaskResult:
    """Return a task and its current status."""
    tasks: TaskService = _require(_tasks, "Task service")

    async def action() -> TaskResult:
        return TaskResult(task=await tasks.get_task(task_id))

    return await _run_tool("get_task", TaskResult, action)


@mcp.tool
async def list_tasks(character_id: str, limit: int = 100) -> TaskListResult:
    """List a character's tasks, newest first."""
    tasks: TaskService = _require(_tasks, "Task service")

    async def action() -> TaskListResult:
        return TaskListResult(tasks=await tasks.list_tasks(character_id, limit))

    return await _run_tool("list_tasks", TaskListResult, action)


@mcp.tool
async def poll_tasks(
    character_id: str,
    completed_tasks: list[dict] | None = None,
) -> PollResult:
    """Report externally computed results and claim pending tasks.

    Args:
        character_id: Character whose pending tasks are claimed.
        completed_tasks: Items of ``{"task_id", "dtype", "data"}``.
    """
    polling: PollingService = _require(_polling, "Polling service")

    async def action() -> PollResult:
        items = [CompletedTaskItem.model_validate(raw) for raw in completed_tasks or []]
        return PollResult(tasks=await polling.handle_polling(character_id, items))

    return await _run_tool("poll_tasks", PollResult, action)


# ---------------------------------------------------------------------------
# Tools: metrics
# ---------------------------------------------------------------------------


@mcp.tool
async def get_metrics() -> MetricsResult:
    """Return per-operation latency and task outcome counts of this process."""
    return MetricsResult(metrics=metrics_snapshot())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _serve() -> None:
    await configure()
    try:
        await mcp.run_async()
    finally:
        await shutdown()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_serve())
