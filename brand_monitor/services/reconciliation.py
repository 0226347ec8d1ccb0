"""Collapse duplicate competitor identities and compute share-of-voice scores.

Providers name brands however they like ("Acme", "acme.com", "ACME Corp").
Reconciliation maps each raw label onto a declared competitor where possible,
merges rows that end up with the same name, and turns mention counts into a
visibility score: the entity's share of all mentions, as a percentage with
one decimal place.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..models import Competitor, CompetitorRanking, ProviderComparisonRow, ProviderStats
from .url_utils import normalize_domain

logger = logging.getLogger(__name__)

# Common spellings of the same brand, applied when matching names.
_NAME_ALIASES: Dict[str, str] = {
    "amazon web services": "aws",
    "amazon web services (aws)": "aws",
    "amazon aws": "aws",
    "microsoft azure": "azure",
    "google cloud platform": "google cloud",
    "google cloud platform (gcp)": "google cloud",
    "gcp": "google cloud",
    "digital ocean": "digitalocean",
    "beautiful soup": "beautifulsoup",
    "bright data": "brightdata",
}


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


def canonical_name_key(name: Optional[str]) -> str:
    norm = normalize_name(name)
    return _NAME_ALIASES.get(norm, norm)


@dataclass(frozen=True)
class _Declared:
    index: int
    competitor: Competitor
    name_key: str
    domain: str


@dataclass(frozen=True)
class ReconciledScores:
    rankings: Tuple[CompetitorRanking, ...]
    provider_comparison: Tuple[ProviderComparisonRow, ...]
    total_mentions: int


def visibility_scores(mentions: Sequence[int]) -> List[float]:
    """Share of voice per entry, rounded half-up to one decimal place.

    With many mentioned entities the per-entry rounding can drift the total
    more than 0.5 away from 100; the drift is then corrected a tenth at a time
    on the entries whose rounding moved them furthest.
    """

    total = sum(mentions)
    if total <= 0:
        return [0.0 for _ in mentions]

    exact = [count * 100 / total for count in mentions]
    tenths = [math.floor(count * 1000 / total + 0.5) for count in mentions]

    drift = sum(tenths) - 1000
    if abs(drift) > 5:
        step = -1 if drift > 0 else 1
        # Entries rounded up the most give back first, and vice versa.
        order = sorted(
            range(len(tenths)),
            key=lambda i: (step * (tenths[i] / 10 - exact[i]), i),
        )
        for i in order:
            if abs(drift) <= 5:
                break
            if step < 0 and tenths[i] == 0:
                continue
            tenths[i] += step
            drift += step

    return [value / 10 for value in tenths]


class ScoreReconciler:
    """Maps raw provider labels onto declared competitors and merges duplicates.

    The output depends only on the declared competitors and the multiset of
    input rows, never on the order rows arrive in.
    """

    def __init__(self, competitors: Sequence[Competitor]) -> None:
        self._declared: List[_Declared] = []
        self._canonical: Dict[int, _Declared] = {}
        self.ambiguities: List[Tuple[str, str]] = []

        for index, competitor in enumerate(competitors):
            name = competitor.name.strip()
            if not name:
                continue
            declared = _Declared(
                index=index,
                competitor=competitor,
                name_key=canonical_name_key(name),
                domain=normalize_domain(competitor.url),
            )
            canonical = next(
                (
                    earlier
                    for earlier in self._declared
                    if self._canonical[earlier.index] is earlier
                    and (
                        earlier.name_key == declared.name_key
                        or (declared.domain and earlier.domain == declared.domain)
                    )
                ),
                None,
            )
            if canonical is not None:
                logger.warning(
                    "Competitors '%s' and '%s' resolve to the same identity; merging them",
                    canonical.competitor.name,
                    competitor.name,
                )
                self.ambiguities.append((canonical.competitor.name, competitor.name))
            self._declared.append(declared)
            self._canonical[index] = canonical or declared

    # ------------------------------------------------------------------
    # Identity matching
    # ------------------------------------------------------------------

    def match(self, label: str) -> Optional[Competitor]:
        """Exact (aliased) name match first, then domain containment."""

        norm = normalize_name(label)
        if not norm:
            return None

        key = canonical_name_key(label)
        for declared in self._declared:
            if declared.name_key == key:
                return self._canonical[declared.index].competitor

        label_domain = normalize_domain(norm)
        for declared in self._declared:
            domain = declared.domain
            if domain and (domain == label_domain or domain in label_domain or label_domain in domain):
                return self._canonical[declared.index].competitor
        return None

    def relabel(self, label: str) -> str:
        matched = self.match(label)
        return matched.name.strip() if matched else label.strip()

    # ------------------------------------------------------------------
    # Merge & score
    # ------------------------------------------------------------------

    def _declared_for(self, key: str) -> Optional[_Declared]:
        for declared in self._declared:
            canonical = self._canonical[declared.index]
            if canonical is declared and normalize_name(declared.competitor.name) == key:
                return declared
        return None

    def merge(self, rows: Iterable[CompetitorRanking]) -> List[CompetitorRanking]:
        """Relabel and merge rows; visibility is recomputed from the merged mentions."""

        groups: Dict[str, List[CompetitorRanking]] = {}
        for declared in self._declared:
            if self._canonical[declared.index] is declared:
                groups.setdefault(normalize_name(declared.competitor.name), [])

        for row in rows:
            name = self.relabel(row.name)
            key = normalize_name(name)
            if key:
                groups.setdefault(key, []).append(row)

        merged: List[CompetitorRanking] = []
        for key, group in groups.items():
            declared = self._declared_for(key)
            merged.append(self._merge_group(group, declared))
        merged.sort(key=lambda row: normalize_name(row.name))

        scores = visibility_scores([row.mentions for row in merged])
        merged = [_with_visibility(row, score) for row, score in zip(merged, scores)]
        return sorted(merged, key=self._sort_key)

    def _merge_group(
        self,
        group: Sequence[CompetitorRanking],
        declared: Optional[_Declared],
    ) -> CompetitorRanking:
        ordered = sorted(
            group,
            key=lambda row: (row.name, row.mentions, row.average_position, row.sentiment_score),
        )
        mentions = sum(row.mentions for row in ordered)
        if mentions > 0:
            average_position = sum(row.average_position * row.mentions for row in ordered) / mentions
        else:
            average_position = 0.0
        sentiment = max((row.sentiment_score for row in ordered), default=0.0)

        if declared is not None:
            members = [
                item.competitor
                for item in self._declared
                if self._canonical[item.index] is declared
            ]
            name = declared.competitor.name.strip()
            is_own = any(member.is_own for member in members)
            url = declared.competitor.url or next((m.url for m in members if m.url), None)
        else:
            name = min(row.name.strip() for row in ordered)
            is_own = any(row.is_own for row in ordered)
            url = next((row.url for row in ordered if row.url), None)

        return CompetitorRanking(
            name=name,
            is_own=is_own,
            mentions=mentions,
            average_position=average_position,
            sentiment_score=sentiment,
            url=url,
        )

    def _sort_key(self, row: CompetitorRanking):
        declared = self._declared_for(normalize_name(row.name))
        order = declared.index if declared is not None else len(self._declared)
        return (-row.visibility_score, -row.mentions, order, row.name.casefold())

    def reconcile(
        self,
        rows: Iterable[CompetitorRanking],
        provider_rows: Optional[Mapping[str, Iterable[CompetitorRanking]]] = None,
        providers: Sequence[str] = (),
    ) -> ReconciledScores:
        rankings = self.merge(rows)
        total_mentions = sum(row.mentions for row in rankings)
        if total_mentions == 0:
            logger.info("No competitor mentions recorded; all visibility scores are 0")

        provider_rows = provider_rows or {}
        provider_names = list(providers) or sorted(provider_rows)
        per_provider: Dict[str, Dict[str, CompetitorRanking]] = {}
        for provider in provider_names:
            merged = self.merge(provider_rows.get(provider, ()))
            per_provider[provider] = {normalize_name(row.name): row for row in merged}

        comparison = []
        for row in rankings:
            key = normalize_name(row.name)
            stats = {}
            for provider in provider_names:
                match = per_provider[provider].get(key)
                stats[provider] = (
                    ProviderStats(
                        visibility_score=match.visibility_score,
                        mentions=match.mentions,
                        average_position=match.average_position,
                        sentiment_score=match.sentiment_score,
                    )
                    if match is not None
                    else ProviderStats()
                )
            comparison.append(ProviderComparisonRow(competitor=row.name, is_own=row.is_own, providers=stats))

        return ReconciledScores(
            rankings=tuple(rankings),
            provider_comparison=tuple(comparison),
            total_mentions=total_mentions,
        )


def _with_visibility(row: CompetitorRanking, score: float) -> CompetitorRanking:
    return CompetitorRanking(
        name=row.name,
        is_own=row.is_own,
        mentions=row.mentions,
        average_position=row.average_position,
        sentiment_score=row.sentiment_score,
        visibility_score=score,
        url=row.url,
    )


__all__ = [
    "ReconciledScores",
    "ScoreReconciler",
    "canonical_name_key",
    "normalize_name",
    "visibility_scores",
]
