"""
Collect recommendation candidates from one upstream query per preferred genre.

The same book often comes back from several genre queries, sometimes under
different volume ids. Candidates are keyed by normalized_candidate_key() and
merged on collision so each book appears once, carrying every genre that
surfaced it.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from shelfmate.services.candidates import (
    CandidateBook,
    merge_candidates,
    normalized_candidate_key,
    should_replace,
    with_source_genres,
)
from shelfmate.services.genre_matcher import GenreLite

logger = logging.getLogger(__name__)


@dataclass
class AggregationStats:
    fetched_total: int = 0
    skipped_excluded: int = 0
    skipped_missing_id: int = 0
    deduped_collisions: int = 0


@dataclass
class AggregationResult:
    candidates_by_key: Dict[str, CandidateBook] = field(default_factory=dict)
    # genre id -> canonical keys that genre's query produced, in fetch order
    pools: Dict[int, List[str]] = field(default_factory=dict)
    stats: AggregationStats = field(default_factory=AggregationStats)

    @property
    def candidates(self) -> List[CandidateBook]:
        return list(self.candidates_by_key.values())


def subject_query(genre: GenreLite) -> str:
    return f"subject:{genre.name}"


class CandidateAggregator:
    def __init__(self, metadata_source, per_genre_results: int = 40):
        self.metadata_source = metadata_source
        self.per_genre_results = per_genre_results

    def aggregate(
        self,
        preferred_genres: Sequence[GenreLite],
        excluded_external_ids: Iterable[str] = (),
    ) -> AggregationResult:
        """
        Fetch and merge candidates for every preferred genre.

        UpstreamFetchError from the metadata source propagates; a failed genre query
        fails the whole aggregation.
        """
        excluded = set(excluded_external_ids)
        result = AggregationResult()

        for genre in preferred_genres:
            raw_books = self.metadata_source.fetch(subject_query(genre), self.per_genre_results)
            result.stats.fetched_total += len(raw_books)
            pool = result.pools.setdefault(genre.id, [])

            for book in raw_books:
                if not book.external_id:
                    result.stats.skipped_missing_id += 1
                    continue
                if book.external_id in excluded:
                    result.stats.skipped_excluded += 1
                    continue

                candidate = with_source_genres(book, [genre.id], [genre.name])
                key = normalized_candidate_key(candidate)
                if key not in pool:
                    pool.append(key)
                self._add(result, key, candidate)

        logger.info(
            "Candidate fetch summary: fetchedTotal=%d uniqueCandidates=%d skippedExcluded=%d "
            "skippedMissingId=%d dedupedCollisions=%d",
            result.stats.fetched_total,
            len(result.candidates_by_key),
            result.stats.skipped_excluded,
            result.stats.skipped_missing_id,
            result.stats.deduped_collisions,
        )
        return result

    def _add(self, result: AggregationResult, key: str, candidate: CandidateBook) -> None:
        existing = result.candidates_by_key.get(key)
        if existing is None:
            result.candidates_by_key[key] = candidate
            return

        result.stats.deduped_collisions += 1
        replaced = should_replace(existing, candidate)
        # Reassigning an existing key keeps its original position in the dict
        result.candidates_by_key[key] = merge_candidates(existing, candidate)
        logger.debug(
            "Deduped candidate key=%r kept=%s dropped=%s (rating %s->%s, descLen %d->%d)",
            key,
            candidate.external_id if replaced else existing.external_id,
            existing.external_id if replaced else candidate.external_id,
            existing.rating,
            candidate.rating,
            len(existing.description),
            len(candidate.description),
        )
