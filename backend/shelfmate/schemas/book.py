from pydantic import BaseModel
from typing import Optional, List


class SearchResultItem(BaseModel):
    id: Optional[int] = None  # canonical book id when the store already knows the book
    title: str
    authors: str
    published_year: Optional[int] = None
    isbn: Optional[str] = None
    cover_url: str
    external_id: str
    description: str
    rating: float
    categories: List[str] = []
    source_genre_ids: List[int] = []
    source_genre_names: List[str] = []
