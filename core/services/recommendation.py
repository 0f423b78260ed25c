"""
Recommendation ranking over the product catalog.

Each candidate is scored by blending two cosine similarities:

    score = user_weight * cos(user_context, product) + thread_weight * cos(thread_summary, product)

with the weights normalized to sum to 1. Candidates below the threshold are
dropped (the threshold itself passes), the rest are sorted best first with ties
kept in catalog insertion order, capped, and enriched with owner info.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import core.config as config
from core.errors import NotFound
from core.services import catalog, context_store
from core.services.shared import open_session, service_tool
from core.services.vectorizer import Vectorizer, normalize_weights
from core.validators import (
    validate_limit,
    validate_optional_text,
    validate_required_text,
    validate_threshold,
)

logger = config.logger

TEXT_SEARCH_WEIGHTS = (0.5, 0.5)


def empty_result() -> dict:
    return {"recommendations": [], "total": 0}


class RecommendationRanker:
    def __init__(
        self,
        vectorizer: Vectorizer,
        *,
        session_factory: Callable = open_session,
        user_weight: Optional[float] = None,
        thread_weight: Optional[float] = None,
        summarize_session: Optional[Callable] = None,
    ):
        self.vectorizer = vectorizer
        self.session_factory = session_factory
        self.user_weight = config.RECOMMENDATION_USER_WEIGHT if user_weight is None else user_weight
        self.thread_weight = (
            config.RECOMMENDATION_THREAD_WEIGHT if thread_weight is None else thread_weight
        )
        self.summarize_session = summarize_session
        normalize_weights(self.user_weight, self.thread_weight)

    def _resolve(self, limit: Optional[int], threshold: Optional[float]) -> tuple[int, float]:
        limit = config.RECOMMENDATION_DEFAULT_LIMIT if limit is None else limit
        threshold = config.RECOMMENDATION_DEFAULT_THRESHOLD if threshold is None else threshold
        validate_limit(limit, "limit", config.RECOMMENDATION_MAX_LIMIT)
        validate_threshold(threshold, "threshold")
        return limit, float(threshold)

    def _query(self, user_embedding, thread_embedding, user_weight, thread_weight, threshold, limit,
               exclude_product_id=None) -> list[dict]:
        db = self.session_factory()
        try:
            matches = catalog.match_products(
                db,
                user_embedding,
                thread_embedding,
                user_weight,
                thread_weight,
                threshold,
                limit,
                exclude_product_id=exclude_product_id,
            )
            return [catalog.recommendation_payload(item) for item in matches]
        finally:
            db.close()

    def rank(
        self,
        user_embedding: Optional[Sequence[float]],
        thread_summary_text: Optional[str],
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        weights: Optional[tuple[float, float]] = None,
    ) -> dict:
        """
        Rank products for a user context embedding and a thread summary.

        A blank summary ranks by the user embedding alone, a missing user
        embedding ranks by the summary alone, and with neither the result is
        empty. No match is `{"recommendations": [], "total": 0}`.
        """
        limit, threshold = self._resolve(limit, threshold)
        user_weight, thread_weight = normalize_weights(
            *(weights if weights is not None else (self.user_weight, self.thread_weight))
        )

        has_summary = bool(thread_summary_text and thread_summary_text.strip())
        if user_embedding is None and not has_summary:
            return empty_result()

        thread_embedding = self.vectorizer.embed(thread_summary_text) if has_summary else None
        if user_embedding is None:
            user_embedding, user_weight, thread_weight = thread_embedding, 0.0, 1.0
        elif thread_embedding is None:
            thread_embedding, user_weight, thread_weight = user_embedding, 1.0, 0.0

        recommendations = self._query(
            list(user_embedding), thread_embedding, user_weight, thread_weight, threshold, limit
        )
        logger.info(
            "Ranked recommendations",
            extra={
                "total": len(recommendations),
                "threshold": threshold,
                "user_weight": user_weight,
                "thread_weight": thread_weight,
            },
        )
        return {"recommendations": recommendations, "total": len(recommendations)}

    def load_user_embedding(self, user_id: str) -> Optional[list[float]]:
        db = self.session_factory()
        try:
            row = context_store.find_context(db, user_id)
            return context_store.embedding_as_list(row.embedding) if row is not None else None
        finally:
            db.close()

    def recommend_for_user(
        self,
        user_id: str,
        thread_summary: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        weights: Optional[tuple[float, float]] = None,
    ) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(thread_summary, "thread_summary", config.MAX_TEXT_LENGTH)
        validate_optional_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        self._resolve(limit, threshold)

        if not thread_summary and session_id and self.summarize_session is not None:
            try:
                thread_summary = self.summarize_session(session_id).text
            except NotFound:
                thread_summary = None

        result = self.rank(
            self.load_user_embedding(user_id),
            thread_summary,
            limit=limit,
            threshold=threshold,
            weights=weights,
        )
        result["user_id"] = user_id
        return result

    def search_by_text(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> dict:
        """Embed `query` once and use it for both signals at equal weight."""
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        limit, threshold = self._resolve(limit, threshold)
        embedding = self.vectorizer.embed(query)
        recommendations = self._query(embedding, embedding, *TEXT_SEARCH_WEIGHTS, threshold, limit)
        return {
            "recommendations": recommendations,
            "total": len(recommendations),
            "user_context_summary": f'Search results for: "{query}"',
        }

    def similar_products(
        self,
        product_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> dict:
        validate_required_text(product_id, "product_id", config.MAX_SHORT_TEXT_LENGTH)
        limit = config.SIMILAR_PRODUCTS_DEFAULT_LIMIT if limit is None else limit
        threshold = config.SIMILAR_PRODUCTS_DEFAULT_THRESHOLD if threshold is None else threshold
        validate_limit(limit, "limit", config.RECOMMENDATION_MAX_LIMIT)
        validate_threshold(threshold, "threshold")

        db = self.session_factory()
        try:
            product = catalog.get_product(db, product_id)
            embedding = context_store.embedding_as_list(product.embedding)
            if embedding is None:
                return empty_result()
            matches = catalog.match_by_embedding(
                db, embedding, float(threshold), limit, exclude_product_id=product_id
            )
            recommendations = [catalog.recommendation_payload(item) for item in matches]
        finally:
            db.close()
        return {"product_id": product_id, "recommendations": recommendations, "total": len(recommendations)}


class RecommendationService:
    """Payload-returning entry points over a ranker."""

    def __init__(self, ranker: RecommendationRanker):
        self.ranker = ranker

    @service_tool
    def recommend(
        self,
        user_id: str,
        thread_summary: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> dict:
        result = self.ranker.recommend_for_user(
            user_id,
            thread_summary=thread_summary,
            session_id=session_id,
            limit=limit,
            threshold=threshold,
        )
        return {"status": "ok", **result}

    @service_tool
    def search(self, query: str, limit: Optional[int] = None, threshold: Optional[float] = None) -> dict:
        return {"status": "ok", **self.ranker.search_by_text(query, limit=limit, threshold=threshold)}

    @service_tool
    def similar(self, product_id: str, limit: Optional[int] = None, threshold: Optional[float] = None) -> dict:
        return {"status": "ok", **self.ranker.similar_products(product_id, limit=limit, threshold=threshold)}
