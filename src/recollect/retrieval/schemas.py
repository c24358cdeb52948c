"""Retrieval domain data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from recollect.ids import new_id
from recollect.memory.schemas import utcnow

SparseVector = dict[int, float]


class DType(str, Enum):
    """Kind of data held by a durable fragment."""

    text = "text"


class StoredFragment(BaseModel):
    """A fragment persisted in the vector store (working layer)."""

    id: str = Field(default_factory=new_id)
    character_id: str
    content: str
    dtype: DType = DType.text
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AccessInfo(BaseModel):
    """Access statistics of one (character, fragment) pair."""

    character_id: str
    fragment_id: str
    access_count: int = Field(default=0, ge=0)
    first_accessed_at: datetime | None = None
    last_accessed_at: datetime | None = None


class SearchResult(BaseModel):
    """A candidate fragment and its component scores.  Never persisted."""

    fragment: StoredFragment
    semantic_score: float = 0.0
    popularity_score: float = 0.0
    time_score: float = 0.0
    score: float = Field(
        default=0.0,
        description="Final combined score used for ranking.",
    )
