"""Error taxonomy shared by every recollect component.

Callers distinguish three families: nothing was found (``NotFoundError``),
the request itself was invalid (``InvalidInputError``), or a downstream
store/queue/generator failed (``DependencyError``).  Tasks that ran out of
retries carry ``RetriesExhaustedError`` as their terminal reason.
"""

from __future__ import annotations


class RecollectError(Exception):
    """Base class for all recollect errors."""


class NotFoundError(RecollectError, LookupError):
    """A fragment, task or character does not exist."""


class InvalidInputError(RecollectError, ValueError):
    """A request is malformed: missing field, bad identifier, bad weights."""


class DependencyError(RecollectError):
    """A backing store, queue or generator call failed."""


class EmbeddingError(DependencyError):
    """Raised by embedding generators when a provider call fails."""


class RetriesExhaustedError(RecollectError):
    """A task failed on its last allowed attempt."""

    def __init__(self, task_id: str, attempts: int, last_error: str) -> None:
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"task {task_id} failed after {attempts} attempt(s): {last_error}"
        )


def error_code(exc: BaseException) -> str:
    """Map an exception onto the public ``error_code`` vocabulary."""
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, InvalidInputError):
        return "validation_error"
    return "dependency_error"
