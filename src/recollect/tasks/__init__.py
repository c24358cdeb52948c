"""Asynchronous tasks: queue, worker, embedding generation and polling."""

from recollect.tasks.embeddings import build_embedding_generator
from recollect.tasks.embeddings import Embedding
from recollect.tasks.embeddings import EmbeddingGenerator
from recollect.tasks.embeddings import MockEmbeddingGenerator
from recollect.tasks.embeddings import OpenAICompatibleEmbeddingGenerator
from recollect.tasks.polling import PollingService
from recollect.tasks.queue import RedisTaskQueue
from recollect.tasks.schemas import CompletedTaskItem
from recollect.tasks.schemas import EmbeddingTaskInput
from recollect.tasks.schemas import EmbeddingTaskOutput
from recollect.tasks.schemas import PendingTaskItem
from recollect.tasks.schemas import Task
from recollect.tasks.schemas import TaskOwner
from recollect.tasks.schemas import TaskStatus
from recollect.tasks.schemas import TaskType
from recollect.tasks.service import TaskQueue
from recollect.tasks.service import TaskService
from recollect.tasks.worker import FragmentWriter
from recollect.tasks.worker import TaskWorker

__all__ = [
    "CompletedTaskItem",
    "Embedding",
    "EmbeddingGenerator",
    "EmbeddingTaskInput",
    "EmbeddingTaskOutput",
    "FragmentWriter",
    "MockEmbeddingGenerator",
    "OpenAICompatibleEmbeddingGenerator",
    "PendingTaskItem",
    "PollingService",
    "RedisTaskQueue",
    "Task",
    "TaskOwner",
    "TaskQueue",
    "TaskService",
    "TaskStatus",
    "TaskType",
    "TaskWorker",
    "build_embedding_generator",
]
