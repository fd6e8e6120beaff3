"""
Write inferred genre associations for recommended books back to the canonical store.

This is a best-effort side effect: failures are logged and never reach the caller.
"""
import logging
from typing import Iterable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shelfmate.database import SessionLocal
from shelfmate.services.scoring import ScoredCandidate
from shelfmate.services.store import add_book_genres, get_or_create_book

logger = logging.getLogger(__name__)


def genre_ids_to_persist(scored: ScoredCandidate) -> List[int]:
    """Existing store genres plus everything inferred for this candidate."""
    return list(dict.fromkeys((*scored.authoritative_genre_ids, *scored.inferred_genre_ids)))


def persist_selected_genres(db: Session, selected: Iterable[ScoredCandidate]) -> int:
    """
    Upsert each selected book and add its genre associations.

    Each book is committed on its own so one failure does not undo the others.
    Returns the number of books written successfully.
    """
    persisted = 0
    for scored in selected:
        external_id = scored.candidate.external_id
        genre_ids = genre_ids_to_persist(scored)
        if not external_id or not genre_ids:
            continue

        try:
            book = get_or_create_book(db, external_id)
            inserted = add_book_genres(db, book, genre_ids)
            db.commit()
            persisted += 1
            logger.debug(
                "Persisted genres=%s (new=%s) for %s (%r)",
                genre_ids, inserted, external_id, scored.candidate.title,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(
                "Failed to persist genres for book %s: %s",
                external_id,
                str(e),
                exc_info=True,
            )
    return persisted


def persist_selected_genres_best_effort(selected: List[ScoredCandidate]) -> None:
    """
    Same as persist_selected_genres() but on a session of its own.

    Meant to run after the response is sent (FastAPI background task).
    """
    db = None
    try:
        db = SessionLocal()
        persist_selected_genres(db, selected)
    except SQLAlchemyError as e:
        logger.warning("Background genre persistence failed: %s", str(e), exc_info=True)
    finally:
        if db:
            db.close()
