"""Embedding generators and factory helpers."""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
import re
import zlib
from collections import Counter
from dataclasses import dataclass
from dataclasses import field
from typing import Protocol
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from recollect.config import EmbeddingConfig
from recollect.errors import EmbeddingError
from recollect.retrieval.schemas import SparseVector

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class Embedding:
    """Vectors produced for one text."""

    dense: list[float]
    sparse: SparseVector = field(default_factory=dict)
    token_count: int = 0


class EmbeddingGenerator(Protocol):
    """Turns text into dense and sparse vectors."""

    async def generate(self, text: str, model: str = "") -> Embedding:
        """Return the embedding of *text*; raise ``EmbeddingError`` on failure."""


def sparse_from_text(text: str) -> SparseVector:
    """Term-frequency sparse vector keyed by the CRC32 of each token."""
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return {}
    counts = Counter(zlib.crc32(tok.encode("utf-8")) for tok in tokens)
    total = len(tokens)
    return {index: count / total for index, count in counts.items()}


def estimate_tokens(text: str) -> int:
    return len(text) // 4


class MockEmbeddingGenerator:
    """Deterministic generator: the same text always yields the same vectors."""

    def __init__(self, vector_size: int = 768) -> None:
        self._vector_size = vector_size

    @property
    def vector_size(self) -> int:
        return self._vector_size

    async def generate(self, text: str, model: str = "") -> Embedding:
        del model
        if not text:
            raise EmbeddingError("text is empty")
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = random.Random(seed)
        dense = [rng.uniform(-1.0, 1.0) for _ in range(self._vector_size)]
        return Embedding(
            dense=dense,
            sparse=sparse_from_text(text),
            token_count=estimate_tokens(text),
        )


class OpenAICompatibleEmbeddingGenerator:
    """OpenAI-compatible ``/embeddings`` client.

    Dense vectors come from the provider; the sparse vector is computed
    locally from token frequencies.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        vector_size: int = 768,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._vector_size = vector_size
        self._timeout = timeout_seconds

    async def generate(self, text: str, model: str = "") -> Embedding:
        if not text:
            raise EmbeddingError("text is empty")
        dense, tokens = await asyncio.to_thread(
            self._generate_sync, text, model or self._model
        )
        if len(dense) != self._vector_size:
            raise EmbeddingError(
                f"provider returned {len(dense)} dimensions, "
                f"expected {self._vector_size}"
            )
        return Embedding(
            dense=dense,
            sparse=sparse_from_text(text),
            token_count=tokens if tokens is not None else estimate_tokens(text),
        )

    def _generate_sync(self, text: str, model: str) -> tuple[list[float], int | None]:
        payload = {
            "model": model,
            "input": text,
            "dimensions": self._vector_size,
        }
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmbeddingError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise EmbeddingError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise EmbeddingError(f"provider IO error: {exc}") from exc

        try:
            data = json.loads(raw)
            vector = [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingError("provider response missing data[0].embedding") from exc

        usage = data.get("usage") if isinstance(data, dict) else None
        tokens = usage.get("prompt_tokens") if isinstance(usage, dict) else None
        return vector, tokens if isinstance(tokens, int) else None


def build_embedding_generator(config: EmbeddingConfig) -> EmbeddingGenerator:
    """Create a concrete generator from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbeddingGenerator(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            vector_size=config.vector_size,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "mock":
        return MockEmbeddingGenerator(vector_size=config.vector_size)
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, mock."
    )
