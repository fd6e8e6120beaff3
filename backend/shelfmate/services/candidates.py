"""
Transient candidate books surfaced from the metadata source.

Candidates are immutable: build them with make_candidate() and derive new ones
with with_source_genres() / merge_candidates().
"""
import dataclasses
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

from shelfmate.services.genre_matcher import GenreLite
from shelfmate.services.shelf_similarity import book_to_text, tokenize

UNKNOWN_AUTHOR = "Unknown"

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CandidateBook:
    title: str
    authors: str
    published_year: Optional[int]
    isbn: Optional[str]
    cover_url: str
    external_id: str
    description: str
    rating: float
    categories: Tuple[str, ...] = ()
    source_genre_ids: Tuple[int, ...] = ()
    source_genre_names: Tuple[str, ...] = ()

    @property
    def first_author(self) -> str:
        return (self.authors or "").split(",")[0]

    @property
    def tokens(self):
        return tokenize(book_to_text(self.title, self.authors, self.description, self.categories))


def make_candidate(
    *,
    title: Optional[str],
    authors: Optional[Sequence[str]] = None,
    published_year: Optional[int] = None,
    isbn: Optional[str] = None,
    cover_url: Optional[str] = None,
    external_id: Optional[str] = None,
    description: Optional[str] = None,
    rating: Optional[float] = None,
    categories: Optional[Iterable[str]] = None,
    source_genres: Iterable[GenreLite] = (),
) -> CandidateBook:
    """Build a candidate with every field populated (missing values become defaults)."""
    source_genres = tuple(source_genres)
    return CandidateBook(
        title=title or "",
        authors=", ".join(a for a in (authors or []) if a) or UNKNOWN_AUTHOR,
        published_year=published_year,
        isbn=isbn or None,
        cover_url=cover_url or "",
        external_id=external_id or "",
        description=description or "",
        rating=float(rating or 0),
        categories=tuple(c for c in (categories or []) if c),
        source_genre_ids=_unique(g.id for g in source_genres),
        source_genre_names=_unique(g.name for g in source_genres if g.name),
    )


def _unique(values: Iterable) -> tuple:
    return tuple(dict.fromkeys(values))


def normalize_key_part(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (value or "").lower().strip())


def normalized_candidate_key(candidate: CandidateBook) -> str:
    """Identity used to recognise the same book across different volume ids."""
    title = normalize_key_part(candidate.title)
    author = normalize_key_part(candidate.first_author)
    if title and author:
        return f"{title}|{author}"
    if title:
        return f"{title}|unknown-author"
    return f"id|{candidate.external_id}"


def with_source_genres(
    candidate: CandidateBook,
    genre_ids: Iterable[int],
    genre_names: Iterable[str] = (),
) -> CandidateBook:
    """Copy of the candidate with extra source genres appended (no duplicates)."""
    return dataclasses.replace(
        candidate,
        source_genre_ids=_unique((*candidate.source_genre_ids, *genre_ids)),
        source_genre_names=_unique((*candidate.source_genre_names, *(n for n in genre_names if n))),
    )


def should_replace(kept: CandidateBook, incoming: CandidateBook) -> bool:
    """Prefer the higher rating; on a tie prefer the longer description."""
    if incoming.rating != kept.rating:
        return incoming.rating > kept.rating
    return len(incoming.description) > len(kept.description)


def merge_candidates(kept: CandidateBook, incoming: CandidateBook) -> CandidateBook:
    """
    Merge two records of the same book.

    Source genres are always unioned (kept first). Descriptive fields come from
    whichever record wins should_replace().
    """
    base = incoming if should_replace(kept, incoming) else kept
    return dataclasses.replace(
        base,
        source_genre_ids=_unique((*kept.source_genre_ids, *incoming.source_genre_ids)),
        source_genre_names=_unique((*kept.source_genre_names, *incoming.source_genre_names)),
    )
