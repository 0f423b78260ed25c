"""
User context entry points (onboarding, profile edits, erasure).
"""

from __future__ import annotations

from typing import Callable, Optional

import core.config as config
from core.services import context_store
from core.services.context_aggregator import ContextAggregator
from core.services.shared import open_session, service_tool
from core.validators import validate_limit, validate_offset, validate_required_text, validate_threshold

logger = config.logger


class UserContextService:
    def __init__(self, aggregator: ContextAggregator, *, session_factory: Callable = open_session):
        self.aggregator = aggregator
        self.session_factory = session_factory

    @service_tool
    def onboard_user(
        self,
        user_id: str,
        metadata: Optional[dict] = None,
        narrative_prompt: Optional[str] = None,
    ) -> dict:
        context = self.aggregator.onboard(user_id, metadata, narrative_prompt)
        logger.info("User onboarded", extra={"user_id": user_id, "version": context["version"]})
        return {"status": "ok", "context": context}

    @service_tool
    def get_user_context(self, user_id: str, include_embedding: bool = False) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            row = context_store.get_context(db, user_id)
            context = context_store.serialize_user_context(row, include_embedding=include_embedding)
        finally:
            db.close()
        return {"status": "ok", "context": context}

    @service_tool
    def update_user_context(
        self,
        user_id: str,
        metadata: Optional[dict] = None,
        narrative_prompt: Optional[str] = None,
    ) -> dict:
        context = self.aggregator.update_context(user_id, metadata=metadata, narrative_prompt=narrative_prompt)
        return {"status": "ok", "context": context}

    @service_tool
    def update_with_thread_summary(
        self,
        user_id: str,
        thread_summary: str,
        metadata: Optional[dict] = None,
    ) -> dict:
        context = self.aggregator.update_with_summary(user_id, thread_summary, metadata)
        return {"status": "ok", "context": context}

    @service_tool
    def delete_user_context(self, user_id: str) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        with self.aggregator.locks.hold(user_id):
            db = self.session_factory()
            try:
                context_store.delete_context(db, user_id)
            finally:
                db.close()
        logger.info("User context deleted", extra={"user_id": user_id})
        return {"status": "deleted", "user_id": user_id}

    @service_tool
    def list_user_contexts(self, limit: int = 50, offset: int = 0) -> dict:
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset, "offset")
        db = self.session_factory()
        try:
            rows = context_store.list_contexts(db, limit, offset)
            users = [context_store.serialize_user_context(row) for row in rows]
        finally:
            db.close()
        return {"status": "ok", "users": users, "count": len(users)}

    @service_tool
    def search_user_contexts(
        self,
        query: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> dict:
        threshold = config.RECOMMENDATION_DEFAULT_THRESHOLD if threshold is None else threshold
        limit = config.RECOMMENDATION_DEFAULT_LIMIT if limit is None else limit
        validate_threshold(threshold, "threshold")
        validate_limit(limit, "limit", config.RECOMMENDATION_MAX_LIMIT)
        embedding = self.aggregator.vectorizer.embed(query)
        db = self.session_factory()
        try:
            users = _scored(context_store.search_contexts(db, embedding, float(threshold), limit))
        finally:
            db.close()
        return {"status": "ok", "query": query, "users": users, "count": len(users)}

    @service_tool
    def similar_users(
        self,
        user_id: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """Other users with a close context; empty when `user_id` has no embedded context."""
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        threshold = config.SIMILAR_USERS_DEFAULT_THRESHOLD if threshold is None else threshold
        limit = config.SIMILAR_USERS_DEFAULT_LIMIT if limit is None else limit
        validate_threshold(threshold, "threshold")
        validate_limit(limit, "limit", config.RECOMMENDATION_MAX_LIMIT)
        db = self.session_factory()
        try:
            users = _scored(context_store.similar_contexts(db, user_id, float(threshold), limit))
        finally:
            db.close()
        return {"status": "ok", "user_id": user_id, "users": users, "count": len(users)}


def _scored(rows) -> list[dict]:
    return [{**context_store.serialize_user_context(row), "similarity_score": score} for row, score in rows]
