"""Shared helpers for the Redis-backed stores."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from redis.exceptions import RedisError  # type: ignore[import-untyped]

from recollect.errors import DependencyError

PREFIX = "recollect"


def decode(raw: bytes | str) -> str:
    """Return *raw* as ``str`` whether or not the client decodes responses."""
    return raw.decode() if isinstance(raw, bytes) else raw


@contextmanager
def redis_errors(operation: str) -> Iterator[None]:
    """Re-raise Redis client failures as ``DependencyError``."""
    try:
        yield
    except RedisError as exc:
        raise DependencyError(f"redis {operation} failed: {exc}") from exc
