"""
Genre- and shelf-driven book recommendations.

Pipeline per request:
  1. read preferred genres and the To Read / Finished shelves
  2. fetch candidates per preferred genre, excluding books the user already knows
  3. score each candidate (genre overlap + shelf similarity)
  4. select the final list (ranked or round-robin)

Writing the inferred genres back to the store is left to the caller (see
genre_persistence) so it can run before or after the response is sent.
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from shelfmate.core.config import settings
from shelfmate.models import FINISHED_SHELF, TO_READ_SHELF
from shelfmate.schemas.recommendation import RecommendationItem
from shelfmate.services import store
from shelfmate.services.aggregator import CandidateAggregator
from shelfmate.services.scoring import AffinityScorer, ScoredCandidate
from shelfmate.services.selection import (
    RANKED,
    ROUND_ROBIN,
    build_pools,
    select_ranked,
    select_round_robin,
)
from shelfmate.services.shelf_similarity import ShelfTokenIndex, external_ids
from shelfmate.utils.timing import StageTimer

logger = logging.getLogger(__name__)

NO_GENRES_MESSAGE = "User has no selected genres"


class InvalidUserIdError(ValueError):
    """Raised when the user id is missing or not a positive integer."""
    pass


@dataclass
class RecommendationRun:
    selected: List[ScoredCandidate] = field(default_factory=list)
    genre_names: Dict[int, str] = field(default_factory=dict)
    message: Optional[str] = None


def validate_user_id(user_id) -> int:
    if user_id is None or isinstance(user_id, bool):
        raise InvalidUserIdError("Invalid userId")
    try:
        value = int(user_id)
    except (TypeError, ValueError):
        raise InvalidUserIdError("Invalid userId")
    if value <= 0:
        raise InvalidUserIdError("Invalid userId")
    return value


def get_recommendations(
    db: Session,
    user_id,
    metadata_source,
    strategy: Optional[str] = None,
    limit: Optional[int] = None,
    per_genre_results: Optional[int] = None,
    rng: Optional[random.Random] = None,
    request_id: str = "-",
) -> RecommendationRun:
    """
    Compute recommendations for a user.

    Raises InvalidUserIdError before touching the store or upstream, and lets
    UpstreamFetchError from the metadata source propagate.
    """
    user_id = validate_user_id(user_id)
    strategy = strategy or settings.SELECTION_STRATEGY
    limit = settings.RECOMMENDATION_LIMIT if limit is None else limit
    per_genre_results = settings.CANDIDATES_PER_GENRE if per_genre_results is None else per_genre_results
    if strategy not in (RANKED, ROUND_ROBIN):
        raise ValueError(f"Unknown selection strategy: {strategy}")

    timer = StageTimer(f"req_id={request_id} user={user_id}")

    with timer.stage("load_user_context"):
        preferred = store.get_preferred_genres(db, user_id)
        if not preferred:
            logger.info("Recommendations requested for user %s with no selected genres", user_id)
            return RecommendationRun(message=NO_GENRES_MESSAGE)

        to_read = ShelfTokenIndex.from_records("to-read", store.get_shelf_books(db, user_id, TO_READ_SHELF))
        finished = ShelfTokenIndex.from_records("finished", store.get_shelf_books(db, user_id, FINISHED_SHELF))
        seen = store.get_seen_external_ids(db, user_id)
        excluded = set(external_ids([to_read, finished])) | seen

    logger.info(
        "Recommendations requested for user %s: preferred genres (%d): %s",
        user_id,
        len(preferred),
        ", ".join(f"{g.name}#{g.id}" for g in preferred),
    )
    logger.info(
        "Shelf counts: toRead=%d finished=%d seen=%d; total excluded external ids=%d",
        len(to_read), len(finished), len(seen), len(excluded),
    )

    with timer.stage("aggregate"):
        aggregation = CandidateAggregator(metadata_source, per_genre_results).aggregate(preferred, excluded)

    candidates = aggregation.candidates
    if not candidates:
        timer.log_summary(logger)
        return RecommendationRun()

    with timer.stage("score"):
        taxonomy = store.list_genres(db)
        authoritative = store.get_book_genres_by_external_id(db, [c.external_id for c in candidates])
        scorer = AffinityScorer(
            taxonomy=taxonomy,
            preferred_genre_ids=[g.id for g in preferred],
            finished=finished,
            to_read=to_read,
            authoritative_genre_ids={
                external_id: [g.id for g in genres] for external_id, genres in authoritative.items()
            },
        )
        logger.info(
            "Weights applied: %s (finishedBooks=%d); scoring %d candidates",
            scorer.weights.describe(), len(finished), len(candidates),
        )
        scored = scorer.score_all(candidates)

    with timer.stage("select"):
        if strategy == ROUND_ROBIN:
            scored_by_key = {s.key: s for s in scored}
            selected = select_round_robin(build_pools(aggregation.pools, scored_by_key), limit, rng)
        else:
            selected = select_ranked(scored, limit)

    logger.info("Top %d recommendations (%s):", len(selected), strategy)
    for position, s in enumerate(selected, start=1):
        logger.info(
            "   #%d total=%.3f (genre=%.3f finished=%.3f toRead=%.3f) genreIds=%s | %s | %r",
            position,
            s.total_score,
            s.genre_score,
            s.finished_score,
            s.to_read_score,
            list(s.effective_genre_ids),
            s.candidate.external_id,
            s.candidate.title,
        )

    timer.log_summary(logger)
    return RecommendationRun(
        selected=selected,
        genre_names={g.id: g.name for g in taxonomy},
    )


def build_recommendation_items(run: RecommendationRun, debug: bool = False) -> List[RecommendationItem]:
    """Response items: candidate fields with the sorted effective genre ids and their names."""
    items: List[RecommendationItem] = []
    for s in run.selected:
        c = s.candidate
        genre_ids = sorted(set(s.effective_genre_ids))
        item = RecommendationItem(
            title=c.title,
            authors=c.authors,
            published_year=c.published_year,
            isbn=c.isbn,
            cover_url=c.cover_url,
            external_id=c.external_id,
            description=c.description,
            rating=c.rating,
            categories=list(c.categories),
            source_genre_ids=genre_ids,
            source_genre_names=[run.genre_names[gid] for gid in genre_ids if gid in run.genre_names],
        )
        if debug:
            item.score = s.total_score
            item.genre_score = s.genre_score
            item.finished_score = s.finished_score
            item.to_read_score = s.to_read_score
        items.append(item)
    return items
