"""Identifier helpers."""

from __future__ import annotations

import uuid

from recollect.errors import InvalidInputError


def new_id() -> str:
    """Return a fresh random identifier (UUID4, canonical text form)."""
    return str(uuid.uuid4())


def require_id(value: object, *, field: str = "id") -> str:
    """Validate that *value* is a UUID and return its canonical form.

    Raises ``InvalidInputError`` for missing or malformed identifiers so that
    callers never reach a store with a key they could not have written.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidInputError(f"{field} is required")
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as exc:
        raise InvalidInputError(f"{field} is not a valid UUID: {value!r}") from exc
