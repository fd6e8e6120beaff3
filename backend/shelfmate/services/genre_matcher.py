"""
Map free-text category labels (as returned by Google Books) onto the genre taxonomy.

Matching is token based: a genre matches a category when every token of one of
the genre's name parts appears in the category. Less specific matches are pruned,
so "Science Fiction" suppresses "Fiction" when both match.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

MIN_TOKEN_LENGTH = 3

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_GENRE_PART_SEPARATORS = re.compile(r"[/,&]|\band\b", re.IGNORECASE)


@dataclass(frozen=True)
class GenreLite:
    """Taxonomy genre as used inside the pipeline."""
    id: int
    name: str


def tokenize_words(value: Optional[str]) -> List[str]:
    """Lowercase, collapse non-alphanumerics to spaces, drop tokens shorter than 3 chars."""
    if not value:
        return []
    normalized = _NON_ALNUM.sub(" ", str(value).lower()).strip()
    return [t for t in normalized.split() if len(t) >= MIN_TOKEN_LENGTH]


def split_genre_parts(genre_name: str) -> List[str]:
    """Split a genre name on '/', ',', '&' and the word 'and'."""
    parts = _GENRE_PART_SEPARATORS.split(genre_name or "")
    return [p.strip() for p in parts if p and p.strip()]


def is_token_subset(a: Set[str], b: Set[str]) -> bool:
    return a <= b


def _genre_token_sets(genre: GenreLite):
    full_tokens = set(tokenize_words(genre.name))
    part_token_sets = [set(tokenize_words(p)) for p in split_genre_parts(genre.name)]
    return full_tokens, [s for s in part_token_sets if s]


def _prune_less_specific(matched: List[GenreLite], tokens_by_id: dict) -> List[GenreLite]:
    kept = []
    for a in matched:
        a_tokens = tokens_by_id[a.id]
        dominated = any(
            b.id != a.id
            and len(a_tokens) < len(tokens_by_id[b.id])
            and is_token_subset(a_tokens, tokens_by_id[b.id])
            for b in matched
        )
        if not dominated:
            kept.append(a)
    return kept


def match_genres_from_categories(
    categories: Optional[Iterable[str]],
    genres: Optional[Sequence[GenreLite]],
) -> List[GenreLite]:
    """
    Return the taxonomy genres matched by any of the categories, most specific only.

    Output keeps taxonomy order. Empty categories or an empty taxonomy give [].
    """
    if not categories or not genres:
        return []

    category_token_sets = [set(tokenize_words(c)) for c in categories]
    category_token_sets = [s for s in category_token_sets if s]
    if not category_token_sets:
        return []

    matched: List[GenreLite] = []
    tokens_by_id = {}
    for genre in genres:
        if genre.id in tokens_by_id:
            continue
        full_tokens, part_token_sets = _genre_token_sets(genre)
        if not full_tokens:
            continue

        if any(
            is_token_subset(part_tokens, cat_tokens)
            for cat_tokens in category_token_sets
            for part_tokens in part_token_sets
        ):
            matched.append(genre)
            tokens_by_id[genre.id] = full_tokens

    return _prune_less_specific(matched, tokens_by_id)


def derive_genre_ids(
    categories: Optional[Iterable[str]],
    genres: Optional[Sequence[GenreLite]],
) -> Set[int]:
    """Genre ids inferred from categories (pruned match set)."""
    return {g.id for g in match_genres_from_categories(categories, genres)}
