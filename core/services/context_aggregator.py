"""
Keeps each user's context embedding in step with their latest thread activity.

Runs for one user are serialized by a per-user lock, and every write is
checked against the row version read at the start of the attempt, so the
persisted embedding always matches the metadata and narrative stored with it.
Failures abort before the write and leave the previous row untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.errors import (
    DimensionMismatch,
    NotFound,
    ProviderError,
    StoreWriteConflict,
    ValidationIssue,
)
from core.models import UserEnhancedContext
from core.services import context_store, thread_store
from core.services.shared import error_payload_for, open_session
from core.services.summarizer import Summarizer, SummaryCache, ThreadSummary
from core.services.vectorizer import Vectorizer
from core.validators import (
    validate_metadata,
    validate_optional_text,
    validate_required_text,
)

logger = config.logger

FieldBuilder = Callable[[Optional[UserEnhancedContext]], tuple[dict, str]]


@dataclass
class AggregationResult:
    user_id: str
    context_updated: bool
    thread_summary: Optional[ThreadSummary] = None
    context: Optional[dict] = None
    error: Optional[dict] = field(default=None)


class ContextAggregator:
    def __init__(
        self,
        vectorizer: Vectorizer,
        summarizer: Summarizer,
        *,
        session_factory: Callable = open_session,
        locks: Optional[context_store.KeyedLockRegistry] = None,
        summary_cache: Optional[SummaryCache] = None,
        history_mode: Optional[str] = None,
        history_window: Optional[int] = None,
        narrative_enabled: Optional[bool] = None,
        write_retry_max: Optional[int] = None,
    ):
        self.vectorizer = vectorizer
        self.summarizer = summarizer
        self.session_factory = session_factory
        self.locks = locks or context_store.KeyedLockRegistry()
        self.summary_cache = summary_cache
        self.history_mode = history_mode or config.CONTEXT_HISTORY_MODE
        self.history_window = history_window or config.CONTEXT_HISTORY_WINDOW
        self.narrative_enabled = (
            config.CONTEXT_NARRATIVE_ENABLED if narrative_enabled is None else narrative_enabled
        )
        self.write_retry_max = (
            config.CONTEXT_WRITE_RETRY_MAX if write_retry_max is None else write_retry_max
        )

    # -------------------------------------------------------------------------
    # Thread summaries
    # -------------------------------------------------------------------------

    def summarize_session(self, session_id: str) -> ThreadSummary:
        """Summarize a session, folding into a cached earlier summary when one exists."""
        db = self.session_factory()
        try:
            count = thread_store.count_messages(db, session_id)
            if count == 0:
                raise NotFound("session", session_id)

            if self.summary_cache is not None:
                cached = self.summary_cache.get(session_id, count)
                if cached is not None:
                    return cached
                previous = self.summary_cache.latest(session_id, below_count=count)
            else:
                previous = None

            if previous is not None:
                messages = thread_store.list_messages_after(
                    db, session_id, previous.message_count_covered
                )
                if self.history_mode == "recent":
                    messages = messages[-self.history_window:]
                previous_text = previous.text
            elif self.history_mode == "recent":
                messages = thread_store.list_recent_messages(db, session_id, self.history_window)
                previous_text = None
            else:
                messages = thread_store.list_messages(db, session_id)
                previous_text = None
        finally:
            db.close()

        summary = self.summarizer.summarize(
            messages,
            previous_summary=previous_text,
            covered_before=count - len(messages),
        )
        if self.summary_cache is not None:
            self.summary_cache.put(session_id, summary)
        return summary

    # -------------------------------------------------------------------------
    # Context writes
    # -------------------------------------------------------------------------

    def _narrative_for(self, metadata: dict, previous_narrative: str, thread_summary: str) -> str:
        if not self.narrative_enabled:
            return thread_summary
        current_context = dict(metadata)
        if previous_narrative:
            current_context["profile"] = previous_narrative
        return self.summarizer.derive_user_narrative(current_context, thread_summary)

    def _upsert(self, user_id: str, build_fields: FieldBuilder, require_existing: bool = False) -> dict:
        for attempt in range(self.write_retry_max + 1):
            db = self.session_factory()
            try:
                current = context_store.find_context(db, user_id)
                if current is None and require_existing:
                    raise NotFound("user context", user_id)
                expected_version = current.version if current is not None else None
                metadata, narrative = build_fields(current)
                embedding = self.vectorizer.embed(context_store.serialize_context(metadata, narrative))
                row = context_store.write_context(
                    db,
                    user_id,
                    expected_version=expected_version,
                    metadata=metadata,
                    narrative_prompt=narrative,
                    embedding=embedding,
                )
                return context_store.serialize_user_context(row)
            except StoreWriteConflict:
                if attempt >= self.write_retry_max:
                    raise
                logger.info(
                    "User context write conflict; retrying with a fresh read",
                    extra={"user_id": user_id, "attempt": attempt + 1},
                )
            finally:
                db.close()
        raise StoreWriteConflict(f"user context write retries exhausted: {user_id}")

    def apply_thread_summary(
        self,
        user_id: str,
        thread_summary: str,
        metadata: Optional[dict] = None,
    ) -> dict:
        """Fold a thread summary into the user's profile and re-embed it (creates the row if missing)."""

        def build(current: Optional[UserEnhancedContext]) -> tuple[dict, str]:
            merged = dict(current.metadata_ or {}) if current is not None else {}
            merged.update(metadata or {})
            previous_narrative = current.narrative_prompt if current is not None else ""
            return merged, self._narrative_for(merged, previous_narrative or "", thread_summary)

        with self.locks.hold(user_id):
            return self._upsert(user_id, build)

    def update_with_summary(
        self,
        user_id: str,
        thread_summary: str,
        metadata: Optional[dict] = None,
    ) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(thread_summary, "thread_summary", config.MAX_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        return self.apply_thread_summary(user_id, thread_summary, metadata)

    def onboard(self, user_id: str, metadata: Optional[dict], narrative_prompt: Optional[str]) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        validate_optional_text(narrative_prompt, "narrative_prompt", config.MAX_NARRATIVE_LENGTH)

        def build(current: Optional[UserEnhancedContext]) -> tuple[dict, str]:
            return dict(metadata or {}), narrative_prompt or ""

        with self.locks.hold(user_id):
            return self._upsert(user_id, build)

    def update_context(
        self,
        user_id: str,
        metadata: Optional[dict] = None,
        narrative_prompt: Optional[str] = None,
    ) -> dict:
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        validate_optional_text(narrative_prompt, "narrative_prompt", config.MAX_NARRATIVE_LENGTH)

        def build(current: Optional[UserEnhancedContext]) -> tuple[dict, str]:
            new_metadata = dict(metadata) if metadata is not None else dict(current.metadata_ or {})
            new_narrative = (
                narrative_prompt if narrative_prompt is not None else current.narrative_prompt or ""
            )
            return new_metadata, new_narrative

        with self.locks.hold(user_id):
            return self._upsert(user_id, build, require_existing=True)

    # -------------------------------------------------------------------------
    # Per-message pipeline
    # -------------------------------------------------------------------------

    def refresh_for_session(
        self,
        session_id: str,
        user_id: str,
        metadata: Optional[dict] = None,
    ) -> AggregationResult:
        """
        Summarize the session and fold it into the user's context.

        Never raises for upstream or store failures: the result reports
        `context_updated=False` with a typed error payload instead.
        """
        summary: Optional[ThreadSummary] = None
        with self.locks.hold(user_id):
            try:
                summary = self.summarize_session(session_id)
                context = self.apply_thread_summary(user_id, summary.text, metadata)
            except (ProviderError, StoreWriteConflict, NotFound, ValidationIssue) as exc:
                logger.warning(
                    "User context not updated",
                    extra={"user_id": user_id, "session_id": session_id, "detail": str(exc)},
                )
                return AggregationResult(
                    user_id=user_id,
                    context_updated=False,
                    thread_summary=summary,
                    error=error_payload_for("refresh_user_context", exc),
                )
            except DimensionMismatch as exc:
                logger.error(
                    "User context not updated: embedding dimension mismatch",
                    extra={"user_id": user_id, "session_id": session_id, "detail": str(exc)},
                )
                return AggregationResult(
                    user_id=user_id,
                    context_updated=False,
                    thread_summary=summary,
                    error=error_payload_for("refresh_user_context", exc),
                )
            except SQLAlchemyError as exc:
                logger.error(
                    "User context not updated: store error",
                    extra={"user_id": user_id, "session_id": session_id, "detail": str(exc)},
                )
                return AggregationResult(
                    user_id=user_id,
                    context_updated=False,
                    thread_summary=summary,
                    error=error_payload_for("refresh_user_context", exc),
                )
        return AggregationResult(
            user_id=user_id,
            context_updated=True,
            thread_summary=summary,
            context=context,
        )
