"""
Chat endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.deps import get_pipeline
from app.errors import call_service
from app.schemas import ChatMessageRequest, ChatRespondRequest, ChatSearchRequest
from core.services.pipeline import Pipeline


router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/message")
async def post_message(body: ChatMessageRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.chat.process_message,
        body.session_id,
        body.message,
        user_id=body.user_id,
        metadata=body.metadata,
    )


@router.get("/history/{session_id}")
async def thread_history(
    session_id: str,
    limit: int = 50,
    offset: int = 0,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(pipeline.chat.get_thread_history, session_id, limit=limit, offset=offset)


@router.get("/recent/{session_id}")
async def recent_messages(session_id: str, limit: int = 10, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.chat.get_recent_messages, session_id, limit=limit)


@router.get("/count/{session_id}")
async def message_count(session_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.chat.get_message_count, session_id)


@router.get("/threads/{user_id}")
async def user_threads(user_id: str, days_back: int = 30, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.chat.get_user_threads, user_id, days_back=days_back)


@router.post("/search")
async def search_messages(body: ChatSearchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.chat.search_messages,
        body.query,
        session_id=body.session_id,
        limit=body.limit,
    )


@router.get("/patterns/{user_id}")
async def conversation_patterns(user_id: str, days_back: int = 30, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.chat.analyze_conversation_patterns, user_id, days_back=days_back)


@router.post("/respond")
async def respond_to_thread(body: ChatRespondRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.chat.generate_response,
        body.session_id,
        user_id=body.user_id,
        limit=body.limit,
        threshold=body.threshold,
    )


@router.delete("/cleanup")
async def cleanup_messages(
    days_old: Optional[int] = Query(default=None, ge=1),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(pipeline.chat.cleanup_old_messages, days_old)
