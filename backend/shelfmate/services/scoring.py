"""
Affinity scoring for recommendation candidates.

total = w.genre * genre_score + w.finished * finished_score + w.to_read * to_read_score

genre_score rewards candidates whose genres overlap the user's preferred genres;
finished_score / to_read_score are the best Jaccard similarity against the
user's Finished / To Read shelves. Users with finished books lean on reading
history; everyone else leans on genre preference.
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from shelfmate.services.candidates import CandidateBook, normalized_candidate_key
from shelfmate.services.genre_matcher import GenreLite, derive_genre_ids
from shelfmate.services.shelf_similarity import ShelfTokenIndex

logger = logging.getLogger(__name__)

GENRE_SCORE_FLOOR = 0.6
GENRE_SCORE_OVERLAP_WEIGHT = 0.4


@dataclass(frozen=True)
class ScoreWeights:
    genre: float
    finished: float
    to_read: float

    def __post_init__(self) -> None:
        total = self.genre + self.finished + self.to_read
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"score weights must sum to 1.0, got {total}")

    def describe(self) -> str:
        return f"g={self.genre:.2f},f={self.finished:.2f},t={self.to_read:.2f}"


WEIGHTS_WITH_FINISHED = ScoreWeights(genre=0.35, finished=0.40, to_read=0.25)
WEIGHTS_WITHOUT_FINISHED = ScoreWeights(genre=0.70, finished=0.20, to_read=0.10)


def select_weights(finished_count: int) -> ScoreWeights:
    return WEIGHTS_WITH_FINISHED if finished_count > 0 else WEIGHTS_WITHOUT_FINISHED


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: CandidateBook
    total_score: float
    genre_score: float
    genre_overlap_ratio: float
    finished_score: float
    to_read_score: float
    effective_genre_ids: Tuple[int, ...]
    inferred_genre_ids: Tuple[int, ...]
    authoritative_genre_ids: Tuple[int, ...]
    weights: ScoreWeights

    @property
    def key(self) -> str:
        return normalized_candidate_key(self.candidate)


def genre_overlap_ratio(effective_genre_ids: Set[int], preferred_genre_ids: Set[int]) -> float:
    if not effective_genre_ids:
        return 0.0
    return len(effective_genre_ids & preferred_genre_ids) / len(effective_genre_ids)


def genre_score(effective_genre_ids: Set[int], preferred_genre_ids: Set[int]) -> float:
    """0 with no genres, otherwise in [0.6, 1.0] depending on preference overlap."""
    if not effective_genre_ids:
        return 0.0
    ratio = genre_overlap_ratio(effective_genre_ids, preferred_genre_ids)
    return GENRE_SCORE_FLOOR + GENRE_SCORE_OVERLAP_WEIGHT * ratio


class AffinityScorer:
    def __init__(
        self,
        taxonomy: Sequence[GenreLite],
        preferred_genre_ids: Iterable[int],
        finished: ShelfTokenIndex,
        to_read: ShelfTokenIndex,
        authoritative_genre_ids: Optional[Mapping[str, Iterable[int]]] = None,
    ):
        self.taxonomy = list(taxonomy)
        self.preferred_genre_ids = set(preferred_genre_ids)
        self.finished = finished
        self.to_read = to_read
        self.authoritative_genre_ids: Dict[str, Tuple[int, ...]] = {
            external_id: tuple(dict.fromkeys(ids))
            for external_id, ids in (authoritative_genre_ids or {}).items()
        }
        self.weights = select_weights(len(finished))

    def inferred_genre_ids(self, candidate: CandidateBook) -> Tuple[int, ...]:
        """Source genres followed by any extra genres matched from the candidate's categories."""
        derived = derive_genre_ids(candidate.categories, self.taxonomy)
        ordered = list(candidate.source_genre_ids)
        ordered.extend(sorted(derived - set(ordered)))
        return tuple(ordered)

    def score(self, candidate: CandidateBook) -> ScoredCandidate:
        authoritative = self.authoritative_genre_ids.get(candidate.external_id, ())
        inferred = self.inferred_genre_ids(candidate)
        effective = authoritative if authoritative else inferred
        effective_set = set(effective)

        ratio = genre_overlap_ratio(effective_set, self.preferred_genre_ids)
        g_score = genre_score(effective_set, self.preferred_genre_ids)

        tokens = candidate.tokens
        finished_match = self.finished.best_match(tokens)
        to_read_match = self.to_read.best_match(tokens)

        w = self.weights
        total = (
            w.genre * g_score
            + w.finished * finished_match.score
            + w.to_read * to_read_match.score
        )

        if logger.isEnabledFor(logging.DEBUG):
            source = (
                f"dbGenreIds={list(authoritative)}" if authoritative
                else f"inferredGenreIds={list(inferred)}" if inferred
                else "noGenreIds"
            )
            logger.debug(
                "Score breakdown | %s | %r | %s | genreOverlap=%d/%d=%.2f genreScore=%.3f "
                "finishedScore=%.3f toReadScore=%.3f | weights(%s) => total=%.3f",
                candidate.external_id,
                candidate.title,
                source,
                len(effective_set & self.preferred_genre_ids),
                len(effective_set),
                ratio,
                g_score,
                finished_match.score,
                to_read_match.score,
                w.describe(),
                total,
            )
            for label, index, match in (
                ("bestFinished", self.finished, finished_match),
                ("bestToRead", self.to_read, to_read_match),
            ):
                record = index.record_at(match.index)
                if record is not None:
                    logger.debug(
                        "   %s match sim=%.3f vs %s | %r",
                        label, match.score, record.external_id, record.title,
                    )

        return ScoredCandidate(
            candidate=candidate,
            total_score=total,
            genre_score=g_score,
            genre_overlap_ratio=ratio,
            finished_score=finished_match.score,
            to_read_score=to_read_match.score,
            effective_genre_ids=tuple(effective),
            inferred_genre_ids=inferred,
            authoritative_genre_ids=tuple(authoritative),
            weights=w,
        )

    def score_all(self, candidates: Iterable[CandidateBook]) -> List[ScoredCandidate]:
        return [self.score(c) for c in candidates]
