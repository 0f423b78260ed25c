"""
Chat message processing and thread-level operations.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.errors import ProviderError
from core.services import context_store, retention_service, thread_store
from core.services.context_aggregator import ContextAggregator
from core.services.recommendation import RecommendationRanker
from core.services.shared import error_payload_for, open_session, service_tool
from core.services.summarizer import PurchaseIntent, Summarizer, ThreadSummary
from core.services.vectorizer import Vectorizer, cosine_similarities
from core.validators import (
    validate_limit,
    validate_message,
    validate_metadata,
    validate_offset,
    validate_optional_text,
    validate_required_text,
)

logger = config.logger

THREAD_PREVIEW_MESSAGES = 5
INTENT_RECENT_MESSAGES = 5
TOP_TOPIC_WORDS = 10
MIN_TOPIC_WORD_LENGTH = 4
MAX_DAYS_BACK = 3650
WORD_PUNCTUATION = ".,;:!?()[]{}\"'`*"


def _validate_days(value: int, field: str) -> None:
    validate_limit(value, field, MAX_DAYS_BACK)


class ChatService:
    def __init__(
        self,
        vectorizer: Vectorizer,
        summarizer: Summarizer,
        aggregator: ContextAggregator,
        ranker: RecommendationRanker,
        *,
        session_factory: Callable = open_session,
        intent_enabled: Optional[bool] = None,
    ):
        self.vectorizer = vectorizer
        self.summarizer = summarizer
        self.aggregator = aggregator
        self.ranker = ranker
        self.session_factory = session_factory
        self.intent_enabled = (
            config.INTENT_CLASSIFICATION_ENABLED if intent_enabled is None else intent_enabled
        )

    def _summarize_or_none(self, messages) -> Optional[str]:
        if not messages:
            return None
        try:
            return self.summarizer.summarize(messages).text
        except ProviderError as exc:
            logger.warning("Thread summary unavailable", extra={"detail": str(exc)})
            return None

    def _recommendation_context(self, session_id: str, user_context: Optional[dict], thread_summary: str) -> str:
        db = self.session_factory()
        try:
            recent = thread_store.list_recent_messages(db, session_id, INTENT_RECENT_MESSAGES)
        finally:
            db.close()
        profile = {}
        if user_context:
            profile = dict(user_context.get("metadata") or {})
            if user_context.get("narrative_prompt"):
                profile["profile"] = user_context["narrative_prompt"]
        try:
            return self.summarizer.recommendation_context(profile, thread_summary, recent)
        except ProviderError as exc:
            logger.warning("Recommendation context unavailable", extra={"detail": str(exc)})
            return thread_summary

    # -------------------------------------------------------------------------
    # Message pipeline
    # -------------------------------------------------------------------------

    @service_tool
    def process_message(
        self,
        session_id: str,
        message: dict,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Save a message, then refresh the thread summary and the sender's context.

        The message is committed before any upstream call; later failures are
        reported in the result and never undo the save.
        """
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        role, content, payload = validate_message(message)

        db = self.session_factory()
        try:
            saved = thread_store.append_message(db, session_id, role, content, user_id=user_id, payload=payload)
            message_id = saved.id
        finally:
            db.close()

        summary: Optional[ThreadSummary] = None
        context_error: Optional[dict] = None
        context_updated = False
        if user_id:
            result = self.aggregator.refresh_for_session(session_id, user_id, metadata)
            summary = result.thread_summary
            context_updated = result.context_updated
            context_error = result.error
        else:
            try:
                summary = self.aggregator.summarize_session(session_id)
            except (ProviderError, SQLAlchemyError) as exc:
                logger.warning(
                    "Thread summary unavailable",
                    extra={"session_id": session_id, "detail": str(exc)},
                )
                context_error = error_payload_for("summarize_session", exc)

        intent = PurchaseIntent.unknown("no thread summary")
        if summary is not None and self.intent_enabled:
            db = self.session_factory()
            try:
                recent = thread_store.list_recent_messages(db, session_id, INTENT_RECENT_MESSAGES)
            finally:
                db.close()
            intent = self.summarizer.classify_purchase_intent(summary.text, recent)

        response = {
            "status": "processed",
            "message_id": message_id,
            "session_id": session_id,
            "thread_summary": summary.text if summary is not None else None,
            "message_count_covered": summary.message_count_covered if summary is not None else None,
            "context_updated": context_updated,
            "purchase_intent": intent.as_dict(),
        }
        if context_error is not None:
            response["context_error"] = context_error
        return response

    @service_tool
    def generate_response(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> dict:
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)

        summary = self.aggregator.summarize_session(session_id)
        user_context = None
        user_embedding = None
        if user_id:
            db = self.session_factory()
            try:
                row = context_store.find_context(db, user_id)
                if row is not None:
                    user_context = context_store.serialize_user_context(row)
                    user_embedding = context_store.embedding_as_list(row.embedding)
            finally:
                db.close()

        recommendations = self.ranker.rank(user_embedding, summary.text, limit=limit, threshold=threshold)
        recommendations["user_context_summary"] = self._recommendation_context(
            session_id, user_context, summary.text
        )
        reply = self.summarizer.compose_reply(summary.text, user_context, recommendations)
        return {
            "status": "ok",
            "session_id": session_id,
            **reply,
            "user_context_summary": recommendations["user_context_summary"],
            "recommendations": recommendations["recommendations"],
            "total": recommendations["total"],
        }

    # -------------------------------------------------------------------------
    # Thread reads
    # -------------------------------------------------------------------------

    @service_tool
    def get_thread_history(self, session_id: str, limit: int = 50, offset: int = 0) -> dict:
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset, "offset")

        db = self.session_factory()
        try:
            messages = thread_store.list_messages_page(db, session_id, limit, offset)
            total = thread_store.count_messages(db, session_id)
        finally:
            db.close()

        return {
            "status": "ok",
            "session_id": session_id,
            "messages": [thread_store.serialize_message(m) for m in messages],
            "total": total,
            "limit": limit,
            "offset": offset,
            "summary": self._summarize_or_none(messages),
        }

    @service_tool
    def get_recent_messages(self, session_id: str, limit: int = 10) -> dict:
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = self.session_factory()
        try:
            messages = thread_store.list_recent_messages(db, session_id, limit)
        finally:
            db.close()
        return {
            "status": "ok",
            "session_id": session_id,
            "messages": [thread_store.serialize_message(m) for m in messages],
            "count": len(messages),
        }

    @service_tool
    def get_message_count(self, session_id: str) -> dict:
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            count = thread_store.count_messages(db, session_id)
        finally:
            db.close()
        return {"status": "ok", "session_id": session_id, "count": count}

    def _user_threads(self, user_id: str, days_back: int) -> list[dict]:
        since = datetime.utcnow() - timedelta(days=days_back)
        db = self.session_factory()
        try:
            sessions = thread_store.list_user_sessions(db, user_id, since=since)
            previews = {
                item["session_id"]: thread_store.list_recent_messages(
                    db, item["session_id"], THREAD_PREVIEW_MESSAGES
                )
                for item in sessions
            }
        finally:
            db.close()

        return [
            {
                "session_id": item["session_id"],
                "message_count": item["message_count"],
                "last_message_id": item["last_message_id"],
                "summary": self._summarize_or_none(previews[item["session_id"]]),
            }
            for item in sessions
        ]

    @service_tool
    def get_user_threads(self, user_id: str, days_back: int = 30) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        _validate_days(days_back, "days_back")
        threads = self._user_threads(user_id, days_back)
        return {"status": "ok", "user_id": user_id, "threads": threads, "count": len(threads)}

    @service_tool
    def search_messages(self, query: str, session_id: Optional[str] = None, limit: int = 20) -> dict:
        """Keyword prefilter, then rank the candidates by embedding relevance to the query."""
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        validate_optional_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

        db = self.session_factory()
        try:
            candidates = thread_store.keyword_candidates(db, query, session_id=session_id, limit=limit)
        finally:
            db.close()
        if not candidates:
            return {"status": "ok", "query": query, "results": [], "count": 0}

        query_embedding = self.vectorizer.embed(query)
        message_embeddings = self.vectorizer.embed_batch([m.content for m in candidates])
        relevance = cosine_similarities(query_embedding, np.asarray(message_embeddings, dtype=np.float64))

        order = sorted(range(len(candidates)), key=lambda index: -relevance[index])
        results = [
            {**thread_store.serialize_message(candidates[index]), "relevance": float(relevance[index])}
            for index in order
        ]
        return {"status": "ok", "query": query, "results": results, "count": len(results)}

    @service_tool
    def analyze_conversation_patterns(self, user_id: str, days_back: int = 30) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        _validate_days(days_back, "days_back")

        threads = self._user_threads(user_id, days_back)
        total_messages = sum(thread["message_count"] for thread in threads)
        words: Counter = Counter()
        for thread in threads:
            for raw in (thread["summary"] or "").lower().split():
                word = raw.strip(WORD_PUNCTUATION)
                if len(word) >= MIN_TOPIC_WORD_LENGTH:
                    words[word] += 1

        return {
            "status": "ok",
            "user_id": user_id,
            "days_back": days_back,
            "total_threads": len(threads),
            "total_messages": total_messages,
            "average_messages_per_thread": (
                round(total_messages / len(threads), 2) if threads else 0.0
            ),
            "common_topics": [
                {"word": word, "frequency": count}
                for word, count in words.most_common(TOP_TOPIC_WORDS)
            ],
        }

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    @service_tool
    def cleanup_old_messages(self, days_old: Optional[int] = None) -> dict:
        days_old = config.MESSAGE_RETENTION_DAYS if days_old is None else days_old
        _validate_days(days_old, "days_old")
        deleted = retention_service.run_retention_tick(
            days_old=days_old,
            summary_cache=self.aggregator.summary_cache,
            session_factory=self.session_factory,
        )
        return {"status": "ok", "days_old": days_old, "deleted": deleted}
