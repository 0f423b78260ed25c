"""
Process-wide pipeline wiring.

Provider clients are built once at startup and injected into the components
that use them; tests build a pipeline around fakes with `build_pipeline`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import core.config as config
from core.services.catalog_service import CatalogService
from core.services.chat_service import ChatService
from core.services.context_aggregator import ContextAggregator
from core.services.context_store import KeyedLockRegistry
from core.services.providers import build_embedding_client, build_generation_client
from core.services.recommendation import RecommendationRanker, RecommendationService
from core.services.shared import open_session
from core.services.summarizer import GenerationProvider, Summarizer, SummaryCache
from core.services.user_context_service import UserContextService
from core.services.vectorizer import EmbeddingProvider, Vectorizer

logger = config.logger


@dataclass
class Pipeline:
    embedding_client: EmbeddingProvider
    generation_client: GenerationProvider
    vectorizer: Vectorizer
    summarizer: Summarizer
    summary_cache: Optional[SummaryCache]
    aggregator: ContextAggregator
    ranker: RecommendationRanker
    chat: ChatService
    recommendations: RecommendationService
    users: UserContextService
    catalog: CatalogService

    def close(self) -> None:
        for client in (self.embedding_client, self.generation_client):
            close = getattr(client, "close", None)
            if close is not None:
                close()


class PipelineState:
    """Pipeline holder (mirrors core.db.DB)."""

    current: Optional[Pipeline] = None


def build_pipeline(
    embedding_client: EmbeddingProvider,
    generation_client: GenerationProvider,
    *,
    session_factory: Callable = open_session,
    summary_cache_enabled: Optional[bool] = None,
) -> Pipeline:
    vectorizer = Vectorizer(embedding_client)
    summarizer = Summarizer(generation_client)
    cache_enabled = config.SUMMARY_CACHE_ENABLED if summary_cache_enabled is None else summary_cache_enabled
    summary_cache = SummaryCache(config.SUMMARY_CACHE_MAX_ENTRIES) if cache_enabled else None
    aggregator = ContextAggregator(
        vectorizer,
        summarizer,
        session_factory=session_factory,
        locks=KeyedLockRegistry(),
        summary_cache=summary_cache,
    )
    ranker = RecommendationRanker(
        vectorizer,
        session_factory=session_factory,
        summarize_session=aggregator.summarize_session,
    )
    return Pipeline(
        embedding_client=embedding_client,
        generation_client=generation_client,
        vectorizer=vectorizer,
        summarizer=summarizer,
        summary_cache=summary_cache,
        aggregator=aggregator,
        ranker=ranker,
        chat=ChatService(vectorizer, summarizer, aggregator, ranker, session_factory=session_factory),
        recommendations=RecommendationService(ranker),
        users=UserContextService(aggregator, session_factory=session_factory),
        catalog=CatalogService(vectorizer, session_factory=session_factory),
    )


def init_pipeline(
    embedding_client: Optional[EmbeddingProvider] = None,
    generation_client: Optional[GenerationProvider] = None,
) -> Pipeline:
    pipeline = build_pipeline(
        embedding_client or build_embedding_client(),
        generation_client or build_generation_client(),
    )
    PipelineState.current = pipeline
    logger.info(
        "Pipeline initialized",
        extra={
            "summary_cache": pipeline.summary_cache is not None,
            "history_mode": pipeline.aggregator.history_mode,
        },
    )
    return pipeline


def shutdown_pipeline() -> None:
    pipeline = PipelineState.current
    PipelineState.current = None
    if pipeline is not None:
        pipeline.close()
        logger.info("Pipeline shut down")


def get_pipeline() -> Pipeline:
    if PipelineState.current is None:
        raise RuntimeError("Pipeline not initialized")
    return PipelineState.current
