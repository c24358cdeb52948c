"""Hybrid rescoring: semantic similarity blended with popularity and recency.

    S_time = 1.84 / (ln(h)^1.25 + 1.84)     h = hours since last access
    S_pop  = 1 - exp(-epsilon * count)
    S      = alpha * S_sem + beta * S_pop + gamma * S_time

All scores are clamped to [0, 1]; no numeric edge case raises.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime

from recollect.config import ScoreConfig
from recollect.memory.schemas import utcnow
from recollect.retrieval.schemas import AccessInfo
from recollect.retrieval.schemas import SearchResult

_FORGETTING_K = 1.84
_FORGETTING_C = 1.25
_MIN_HOURS = 0.01


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


class Scorer:
    """Stateless scorer configured with rescoring weights."""

    def __init__(self, config: ScoreConfig | None = None) -> None:
        self._config = config or ScoreConfig()

    @property
    def config(self) -> ScoreConfig:
        return self._config

    def time_score(
        self, last_access: datetime | None, *, now: datetime | None = None
    ) -> float:
        """Forgetting-curve recency score; 0 for never-accessed fragments.

        Within the first hour ``ln(h)`` is negative and has no real
        ``1.25`` power, so it is held at 0 and the score stays at 1.
        """
        if last_access is None:
            return 0.0

        elapsed = (now or utcnow()) - last_access
        hours = max(elapsed.total_seconds() / 3600.0, _MIN_HOURS)
        log_t = max(math.log(hours), 0.0)
        return _clamp(_FORGETTING_K / (log_t**_FORGETTING_C + _FORGETTING_K))

    def popularity_score(self, access_count: int) -> float:
        return _clamp(1.0 - math.exp(-self._config.epsilon * max(access_count, 0)))

    def final_score(self, semantic: float, popularity: float, time: float) -> float:
        cfg = self._config
        return _clamp(cfg.alpha * semantic + cfg.beta * popularity + cfg.gamma * time)

    def rescore(
        self,
        results: list[SearchResult],
        access_info: Mapping[str, AccessInfo],
        *,
        now: datetime | None = None,
    ) -> list[SearchResult]:
        """Fill popularity, time and final scores in place.  Does not sort."""
        now = now or utcnow()
        for result in results:
            info = access_info.get(result.fragment.id)
            if info is None:
                result.popularity_score = 0.0
                result.time_score = 0.0
            else:
                result.popularity_score = self.popularity_score(info.access_count)
                result.time_score = self.time_score(info.last_accessed_at, now=now)
            result.score = self.final_score(
                result.semantic_score, result.popularity_score, result.time_score
            )
        return results
