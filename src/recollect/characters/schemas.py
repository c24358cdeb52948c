"""Character registry data models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic import Field

from recollect.ids import new_id
from recollect.memory.schemas import utcnow


class Character(BaseModel):
    """An AI character owning its own memory namespace."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1, description="Display name.")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
