"""
Identification API Routes

This module provides 1:N identification against the in-memory match
index, plus endpoints to reload, inspect and clear that index.
"""

import logging
import math

from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_match_index, get_store
from api.schemas import (
    GalleryStatsResponse,
    IdentifyRequest,
    IdentifyResponse,
    TopMatchResponse,
)
from faceid.errors import InvalidInputError
from faceid.matching import MatchIndex
from faceid.template_store import TemplateStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["identification"])


@router.post("/identify", response_model=IdentifyResponse)
async def identify(
    request: IdentifyRequest,
    match_index: MatchIndex = Depends(get_match_index),
):
    """
    Find the enrolled identity closest to a query embedding.

    An empty gallery or a missing embedding gives status "unknown".

    Raises:
        400: If the embedding length differs from the gallery's.
    """
    try:
        outcome = match_index.find_best_match(request.embedding)
        top_matches = (
            match_index.find_top_matches(request.embedding, request.top_k)
            if request.top_k > 0
            else []
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.debug(f"Identify: status={outcome.status.value}, distance={outcome.distance:.4f}")

    return IdentifyResponse(
        status=outcome.status.value,
        user_id=outcome.user.user_id if outcome.user else None,
        user_name=outcome.user.user_name if outcome.user else None,
        distance=outcome.distance if math.isfinite(outcome.distance) else None,
        confidence=outcome.confidence,
        is_high_confidence=outcome.is_high_confidence,
        match_time_ms=outcome.match_time_ms,
        top_matches=[
            TopMatchResponse(
                user_id=m.user.user_id,
                user_name=m.user.user_name,
                distance=m.distance,
                confidence=m.confidence,
                is_match=m.is_match,
            )
            for m in top_matches
        ],
    )


@router.post("/gallery/reload", response_model=GalleryStatsResponse)
async def reload_gallery(
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
):
    """Rebuild the match index from storage."""
    match_index.load_from_storage(store)
    return GalleryStatsResponse(**match_index.get_stats())


@router.get("/gallery/stats", response_model=GalleryStatsResponse)
async def gallery_stats(match_index: MatchIndex = Depends(get_match_index)):
    """Query counters and index size."""
    return GalleryStatsResponse(**match_index.get_stats())


@router.delete("/gallery", response_model=GalleryStatsResponse)
async def clear_gallery(match_index: MatchIndex = Depends(get_match_index)):
    """Empty the in-memory index and reset its counters. Storage is untouched."""
    match_index.clear()
    return GalleryStatsResponse(**match_index.get_stats())
