"""
Recommendation endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.deps import get_pipeline
from app.errors import call_service
from app.schemas import RecommendationRequest, TextSearchRequest
from core.services.pipeline import Pipeline


router = APIRouter(prefix="/recommendations", tags=["recommendations"])


@router.post("")
async def recommend(body: RecommendationRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.recommendations.recommend,
        body.user_id,
        thread_summary=body.thread_summary,
        session_id=body.session_id,
        limit=body.limit,
        threshold=body.threshold,
    )


@router.post("/search")
async def search(body: TextSearchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.recommendations.search,
        body.query,
        limit=body.limit,
        threshold=body.threshold,
    )


@router.get("/similar/{product_id}")
async def similar(
    product_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    threshold: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(
        pipeline.recommendations.similar,
        product_id,
        limit=limit,
        threshold=threshold,
    )
