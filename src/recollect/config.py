"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing, just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

from recollect.errors import InvalidInputError

_WEIGHT_SUM_TOLERANCE = 0.01


@dataclass(frozen=True)
class ScoreConfig:
    """Weights for hybrid rescoring.

    ``alpha`` weighs semantic similarity, ``beta`` popularity and ``gamma``
    recency.  The three weights must sum to 1.0 (within 0.01).  ``epsilon``
    controls how quickly popularity saturates with access count.
    """

    alpha: float = 0.5
    beta: float = 0.3
    gamma: float = 0.2
    epsilon: float = 0.1

    def __post_init__(self) -> None:
        if min(self.alpha, self.beta, self.gamma) < 0:
            raise InvalidInputError("score weights must be non-negative")
        total = self.alpha + self.beta + self.gamma
        if abs(total - 1.0) > _WEIGHT_SUM_TOLERANCE:
            raise InvalidInputError(
                "score weights (alpha + beta + gamma) must sum to 1.0, "
                f"got: {total:.4f}"
            )
        if self.epsilon <= 0:
            raise InvalidInputError("epsilon must be > 0")


@dataclass(frozen=True)
class LayerConfig:
    """Promotion thresholds and lifetimes of the short-lived memory layers."""

    buffer_to_context_threshold: int = 2
    context_to_working_threshold: int = 5
    input_buffer_ttl_seconds: int = 10
    input_buffer_max_size: int = 100
    context_ttl_seconds: int = 3600


@dataclass(frozen=True)
class WorkerConfig:
    """Task queue and worker loop settings."""

    poll_interval_seconds: float = 5.0
    max_retries: int = 3
    task_ttl_seconds: int = 7 * 24 * 3600
    list_limit: int = 100


@dataclass(frozen=True)
class VectorStoreConfig:
    """Qdrant connection settings.

    ``location=":memory:"`` runs Qdrant in-process (tests, local dev);
    otherwise ``url`` is used.
    """

    location: str | None = None
    url: str = "http://localhost:6333"
    api_key: str | None = None
    vector_size: int = 768
    collection_prefix: str = "character_"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings used by the task worker."""

    provider: str = "mock"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    vector_size: int = 768
    timeout_seconds: float = 30.0
