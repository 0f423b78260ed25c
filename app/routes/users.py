"""
User context endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.deps import get_pipeline
from app.errors import call_service
from app.schemas import (
    OnboardingRequest,
    TextSearchRequest,
    ThreadSummaryUpdateRequest,
    UserContextUpdateRequest,
)
from core.services.pipeline import Pipeline


router = APIRouter(prefix="/users", tags=["users"])


@router.post("/onboarding")
async def onboarding(body: OnboardingRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.users.onboard_user,
        body.user_id,
        metadata=body.metadata,
        narrative_prompt=body.narrative_prompt,
        success_status=201,
    )


@router.get("")
async def list_users(limit: int = 50, offset: int = 0, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.users.list_user_contexts, limit=limit, offset=offset)


@router.post("/search")
async def search_users(body: TextSearchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.users.search_user_contexts, body.query, threshold=body.threshold, limit=body.limit
    )


@router.get("/{user_id}/similar")
async def similar_users(
    user_id: str,
    threshold: Optional[float] = None,
    limit: Optional[int] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(pipeline.users.similar_users, user_id, threshold=threshold, limit=limit)


@router.get("/{user_id}/context")
async def get_context(user_id: str, include_embedding: bool = False, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.users.get_user_context, user_id, include_embedding=include_embedding)


@router.put("/{user_id}/context")
async def update_context(
    user_id: str,
    body: UserContextUpdateRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(
        pipeline.users.update_user_context,
        user_id,
        metadata=body.metadata,
        narrative_prompt=body.narrative_prompt,
    )


@router.put("/{user_id}/context/thread-summary")
async def update_context_with_summary(
    user_id: str,
    body: ThreadSummaryUpdateRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(
        pipeline.users.update_with_thread_summary,
        user_id,
        body.thread_summary,
        metadata=body.metadata,
    )


@router.delete("/{user_id}/context")
async def delete_context(user_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.users.delete_user_context, user_id)
