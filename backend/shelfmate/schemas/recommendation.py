from pydantic import BaseModel
from typing import Optional, List


class RecommendationItem(BaseModel):
    title: str
    authors: str
    published_year: Optional[int] = None
    isbn: Optional[str] = None
    cover_url: str
    external_id: str
    description: str  # capped at DESCRIPTION_WORD_LIMIT words
    rating: float
    categories: List[str] = []
    source_genre_ids: List[int] = []  # effective genres, sorted
    source_genre_names: List[str] = []
    # Debug fields (only included when debug=true)
    score: Optional[float] = None
    genre_score: Optional[float] = None
    finished_score: Optional[float] = None
    to_read_score: Optional[float] = None


class RecommendationsResponse(BaseModel):
    """Response wrapper for recommendations that includes request_id for log correlation."""
    request_id: str
    items: List[RecommendationItem]
    message: Optional[str] = None
