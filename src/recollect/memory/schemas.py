"""Memory domain data models."""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import UTC
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from recollect.ids import new_id


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class MemoryLayer(str, Enum):
    """Stages of the memory lifecycle, in promotion order."""

    input_buffer = "input_buffer"
    context = "context"
    working = "working"
    day = "day"
    summary = "summary"


# Layers whose fragments carry an ``expires_at`` and their lifetimes.
LAYER_TTL: dict[MemoryLayer, timedelta] = {
    MemoryLayer.input_buffer: timedelta(seconds=10),
    MemoryLayer.context: timedelta(hours=1),
}

_LAYER_ORDER = list(MemoryLayer)


def layer_rank(layer: MemoryLayer) -> int:
    """Position of *layer* in the forward-only promotion order."""
    return _LAYER_ORDER.index(layer)


class MemoryFragment(BaseModel):
    """A single memory held in one of the short-lived layers."""

    id: str = Field(
        default_factory=new_id,
        description="Unique identifier (UUID4).",
    )
    character_id: str = Field(
        description="Owner of the fragment.",
    )
    layer: MemoryLayer = Field(
        default=MemoryLayer.input_buffer,
        description="Layer the fragment currently lives in.",
    )
    content: str = Field(
        description="Raw textual content of the memory.",
    )
    metadata: dict = Field(
        default_factory=dict,
        description="Arbitrary key-value metadata.",
    )
    access_count: int = Field(
        default=0,
        ge=0,
        description="Number of recorded accesses; never decreases.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    last_access: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = Field(
        default=None,
        description="Set only for input_buffer and context fragments.",
    )

    def increment_access(self, now: datetime | None = None) -> None:
        self.access_count += 1
        self.last_access = now or utcnow()

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def should_promote(self, threshold: int) -> bool:
        return self.access_count >= threshold

    def moved_to(
        self,
        layer: MemoryLayer,
        *,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> MemoryFragment:
        """Return a copy relabelled to *layer* with the layer's expiry.

        Layers only move forward; asking for an earlier layer raises
        ``ValueError``.
        """
        if layer_rank(layer) < layer_rank(self.layer):
            raise ValueError(
                f"cannot move fragment {self.id} back from {self.layer.value} "
                f"to {layer.value}"
            )
        lifetime = ttl if ttl is not None else LAYER_TTL.get(layer)
        expires_at = (now or utcnow()) + lifetime if lifetime is not None else None
        return self.model_copy(update={"layer": layer, "expires_at": expires_at})


class ContextSnapshot(BaseModel):
    """The current short-term memory of one character."""

    character_id: str
    fragments: list[MemoryFragment] = Field(default_factory=list)
    summary: str | None = None
    metadata: dict = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)

    def add_fragment(self, fragment: MemoryFragment) -> None:
        self.fragments.append(fragment)
        self.updated_at = utcnow()

    def get_fragment(self, fragment_id: str) -> MemoryFragment | None:
        return next((f for f in self.fragments if f.id == fragment_id), None)

    def replace_fragment(self, fragment: MemoryFragment) -> bool:
        for idx, existing in enumerate(self.fragments):
            if existing.id == fragment.id:
                self.fragments[idx] = fragment
                self.updated_at = utcnow()
                return True
        return False

    def remove_fragment(self, fragment_id: str) -> bool:
        before = len(self.fragments)
        self.fragments = [f for f in self.fragments if f.id != fragment_id]
        if len(self.fragments) == before:
            return False
        self.updated_at = utcnow()
        return True

    def remove_expired(self, now: datetime | None = None) -> int:
        """Drop expired fragments and return how many were removed."""
        now = now or utcnow()
        active = [f for f in self.fragments if not f.is_expired(now)]
        removed = len(self.fragments) - len(active)
        if removed:
            self.fragments = active
            self.updated_at = now
        return removed


class PromotionResult(BaseModel):
    """Outcome of one promotion attempt."""

    promoted_to: MemoryLayer
    fragment: MemoryFragment
    promoted: bool = False
    task_id: str | None = Field(
        default=None,
        description="Embedding task enqueued for a fragment promoted to working.",
    )


class ProcessBufferResult(BaseModel):
    """Counts reported by an input-buffer maintenance sweep."""

    processed: int = 0
    promoted: int = 0
