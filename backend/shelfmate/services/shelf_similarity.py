"""Token-set similarity between a candidate book and the books on a user's shelf."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Sequence, Set

from shelfmate.services.genre_matcher import tokenize_words


@dataclass(frozen=True)
class ShelfBookRecord:
    """Read-only view of a shelf entry."""
    external_id: str
    title: str = ""
    description: str = ""
    status: Optional[str] = None
    added_at: Optional[datetime] = None


@dataclass(frozen=True)
class SimilarityMatch:
    score: float
    index: int  # -1 when nothing on the shelf overlaps


NO_MATCH = SimilarityMatch(score=0.0, index=-1)


def book_to_text(
    title: Optional[str] = None,
    authors: Optional[str] = None,
    description: Optional[str] = None,
    categories: Optional[Iterable[str]] = None,
) -> str:
    parts = [title or "", authors or "", description or "", " ".join(categories or [])]
    return " ".join(p for p in parts if p)


def tokenize(text: Optional[str]) -> FrozenSet[str]:
    return frozenset(tokenize_words(text))


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


def max_similarity_to_shelf(
    candidate_tokens: Set[str],
    shelf_token_sets: Sequence[Set[str]],
) -> SimilarityMatch:
    """Best Jaccard similarity against the shelf; the first best index wins ties."""
    best = NO_MATCH
    for i, shelf_tokens in enumerate(shelf_token_sets):
        sim = jaccard_similarity(candidate_tokens, shelf_tokens)
        if sim > best.score:
            best = SimilarityMatch(score=sim, index=i)
    return best


@dataclass(frozen=True)
class ShelfTokenIndex:
    """Per-shelf token sets, index-aligned with the shelf records."""
    name: str
    records: tuple = ()
    token_sets: tuple = field(default=(), repr=False)

    @classmethod
    def from_records(cls, name: str, records: Iterable[ShelfBookRecord]) -> "ShelfTokenIndex":
        records = tuple(records)
        token_sets = tuple(
            tokenize(book_to_text(title=r.title, description=r.description)) for r in records
        )
        return cls(name=name, records=records, token_sets=token_sets)

    def __len__(self) -> int:
        return len(self.records)

    def best_match(self, candidate_tokens: Set[str]) -> SimilarityMatch:
        return max_similarity_to_shelf(candidate_tokens, self.token_sets)

    def record_at(self, index: int) -> Optional[ShelfBookRecord]:
        if 0 <= index < len(self.records):
            return self.records[index]
        return None


def external_ids(indexes: Iterable[ShelfTokenIndex]) -> List[str]:
    ids: List[str] = []
    for index in indexes:
        ids.extend(r.external_id for r in index.records if r.external_id)
    return ids
