from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models import CompetitorRanking, ProviderResult

logger = logging.getLogger(__name__)


@dataclass
class EntityStats:
    """Running totals for one raw entity label."""

    name: str
    mentions: int = 0
    position_sum: float = 0.0
    position_count: int = 0
    sentiment_score: float = 0.0

    @property
    def average_position(self) -> float:
        if not self.position_count:
            return 0.0
        return self.position_sum / self.position_count

    def add(self, position: Optional[int], sentiment_score: float) -> None:
        self.mentions += 1
        if position is not None:
            self.position_sum += position
            self.position_count += 1
        # One strong positive mention outweighs unrelated neutral ones.
        self.sentiment_score = max(self.sentiment_score, sentiment_score)


class CompetitorScorer:
    """Fold completed provider results into per-entity statistics.

    All mutation goes through fold(), which is serialized by a single lock;
    concurrent folds into the same counters would otherwise race.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._totals: Dict[str, EntityStats] = {}
        self._by_provider: Dict[str, Dict[str, EntityStats]] = {}

    async def fold(self, result: ProviderResult) -> None:
        async with self._lock:
            self._fold(result)

    def _fold(self, result: ProviderResult) -> None:
        if result.provider not in self._by_provider:
            self._by_provider[result.provider] = {}
        if not result.succeeded:
            logger.debug("Skipping %s result for %s on prompt %s", result.status.value, result.provider, result.prompt_id)
            return

        provider_totals = self._by_provider[result.provider]
        for mention in result.mentions:
            if not mention.mentioned:
                continue
            label = mention.entity_name.strip()
            key = label.casefold()
            if not key:
                continue
            score = mention.sentiment.score
            self._totals.setdefault(key, EntityStats(name=label)).add(mention.position, score)
            provider_totals.setdefault(key, EntityStats(name=label)).add(mention.position, score)

    def register_provider(self, provider: str) -> None:
        if provider not in self._by_provider:
            self._by_provider[provider] = {}

    @property
    def total_mentions(self) -> int:
        return sum(stats.mentions for stats in self._totals.values())

    def raw_rankings(self) -> List[CompetitorRanking]:
        """Unreconciled rows, one per raw label; visibility is filled in later."""

        return [_to_ranking(stats) for stats in self._totals.values()]

    def raw_provider_stats(self) -> Dict[str, List[CompetitorRanking]]:
        return {
            provider: [_to_ranking(stats) for stats in totals.values()]
            for provider, totals in self._by_provider.items()
        }


def _to_ranking(stats: EntityStats) -> CompetitorRanking:
    return CompetitorRanking(
        name=stats.name,
        mentions=stats.mentions,
        average_position=stats.average_position,
        sentiment_score=stats.sentiment_score,
    )


__all__ = ["CompetitorScorer", "EntityStats"]
