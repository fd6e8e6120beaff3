from fastapi import APIRouter, Depends, Query, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from shelfmate.database import get_db
from shelfmate.routers.deps import get_metadata_source
from shelfmate.schemas.book import SearchResultItem
from shelfmate.services.search import search_books
from shelfmate.services.upstream import UpstreamFetchError
from shelfmate.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["search"])


@router.get("", response_model=List[SearchResultItem])
def search(
    query: Optional[str] = Query(None, description="Free-text query, e.g. 'harry potter'"),
    db: Session = Depends(get_db),
    metadata_source=Depends(get_metadata_source),
):
    """Search books upstream, annotated with matched or stored genres."""
    query = (query or "").strip()
    if not query:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing query",
        )

    try:
        return search_books(db, query, metadata_source, max_results=settings.SEARCH_MAX_RESULTS)
    except UpstreamFetchError:
        logger.exception("Search failed", extra={"query": query})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch search results",
        )
