import uuid as uuid_lib

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from shelfmate.database import get_db
from shelfmate.routers.deps import get_metadata_source
from shelfmate.services import recommendation_engine
from shelfmate.services.recommendation_engine import InvalidUserIdError
from shelfmate.services.genre_persistence import (
    persist_selected_genres,
    persist_selected_genres_best_effort,
)
from shelfmate.services.upstream import UpstreamFetchError
from shelfmate.schemas.recommendation import RecommendationsResponse
from shelfmate.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations", tags=["recommendations"])


@router.get("/fetch/{user_id}", response_model=RecommendationsResponse, response_model_exclude_none=True)
def fetch_recommendations(
    user_id: int,
    background_tasks: BackgroundTasks,
    debug: bool = Query(False, description="Include score breakdown in response"),
    db: Session = Depends(get_db),
    metadata_source=Depends(get_metadata_source),
):
    """Genre- and shelf-based recommendations for a user."""
    request_id = str(uuid_lib.uuid4())

    try:
        run = recommendation_engine.get_recommendations(
            db=db,
            user_id=user_id,
            metadata_source=metadata_source,
            request_id=request_id,
        )
    except InvalidUserIdError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamFetchError:
        logger.exception("Upstream fetch failed for recommendations req_id=%s user_id=%s", request_id, user_id)
        raise HTTPException(status_code=502, detail="Failed to fetch recommendations")

    items = recommendation_engine.build_recommendation_items(run, debug=debug)

    if run.selected:
        if settings.PERSIST_GENRES_IN_BACKGROUND:
            background_tasks.add_task(persist_selected_genres_best_effort, list(run.selected))
        else:
            persist_selected_genres(db, run.selected)

    return RecommendationsResponse(request_id=request_id, items=items, message=run.message)
