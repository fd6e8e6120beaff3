"""Free-text book search annotated with taxonomy genres."""
import logging
from typing import Dict, List

from sqlalchemy.orm import Session

from shelfmate.schemas.book import SearchResultItem
from shelfmate.services import store
from shelfmate.services.candidates import CandidateBook, normalize_key_part
from shelfmate.services.genre_matcher import match_genres_from_categories

logger = logging.getLogger(__name__)


def search_result_key(candidate: CandidateBook) -> str:
    return f"{normalize_key_part(candidate.title)}|{normalize_key_part(candidate.authors)}"


def dedupe_and_sort(candidates: List[CandidateBook]) -> List[CandidateBook]:
    """First occurrence per title|authors key, ordered by title then authors."""
    unique: Dict[str, CandidateBook] = {}
    for candidate in candidates:
        unique.setdefault(search_result_key(candidate), candidate)
    return sorted(unique.values(), key=lambda c: (c.title, c.authors))


def search_books(
    db: Session,
    query: str,
    metadata_source,
    max_results: int = 20,
) -> List[SearchResultItem]:
    """
    Search the metadata source and attach genres to each hit.

    Genres are matched from the volume's categories unless the store already has
    authoritative genres for the book, in which case those win.
    UpstreamFetchError propagates.
    """
    taxonomy = store.list_genres(db)
    candidates = metadata_source.fetch(query, max_results, detailed_categories=True)
    books = dedupe_and_sort(candidates)

    external_ids = [b.external_id for b in books]
    authoritative = store.get_book_genres_by_external_id(db, external_ids)
    book_ids = store.get_book_ids_by_external_id(db, external_ids)

    results: List[SearchResultItem] = []
    overlaid = 0
    for book in books:
        store_genres = authoritative.get(book.external_id)
        if store_genres:
            overlaid += 1
        genres = store_genres or match_genres_from_categories(book.categories, taxonomy)

        results.append(
            SearchResultItem(
                id=book_ids.get(book.external_id) if store_genres else None,
                title=book.title,
                authors=book.authors,
                published_year=book.published_year,
                isbn=book.isbn,
                cover_url=book.cover_url,
                external_id=book.external_id,
                description=book.description,
                rating=book.rating,
                categories=list(book.categories),
                source_genre_ids=[g.id for g in genres],
                source_genre_names=[g.name for g in genres],
            )
        )

    logger.info(
        "Search query=%r fetched=%d unique=%d with_store_genres=%d",
        query, len(candidates), len(results), overlaid,
    )
    return results
