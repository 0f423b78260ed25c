"""
Thread summarization and other generation-backed derivations.
"""

from __future__ import annotations

import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

import core.config as config
from core import prompts
from core.errors import ProviderError, SummaryGenerationError
from core.prompts import PromptTemplate

logger = config.logger

NO_PREVIOUS_SUMMARY = "No previous summary available."
NO_USER_CONTEXT = "No user context available."
INTENT_LEVELS = ("low", "moderate", "high")


class GenerationProvider(Protocol):
    def generate(self, prompt: PromptTemplate, variables: Mapping[str, object]) -> str:
        ...


@dataclass(frozen=True)
class ThreadSummary:
    text: str
    message_count_covered: int


@dataclass(frozen=True)
class PurchaseIntent:
    level: str
    score: Optional[int]
    rationale: str

    @classmethod
    def unknown(cls, rationale: str = "classification unavailable") -> "PurchaseIntent":
        return cls(level="unknown", score=None, rationale=rationale)

    def as_dict(self) -> dict:
        return {"level": self.level, "score": self.score, "rationale": self.rationale}


def _message_role(message: Any) -> str:
    if isinstance(message, Mapping):
        return str(message.get("role") or "user")
    return str(getattr(message, "role", None) or "user")


def _message_content(message: Any) -> str:
    if isinstance(message, Mapping):
        content = message.get("content")
        if content is None:
            return json.dumps(dict(message), sort_keys=True, default=str)
        return str(content)
    return str(getattr(message, "content", "") or "")


def format_messages(messages: Sequence[Any]) -> str:
    return "\n".join(f"{_message_role(msg)}: {_message_content(msg)}" for msg in messages)


def format_context(context: Mapping[str, Any]) -> str:
    if not context:
        return NO_USER_CONTEXT
    return ", ".join(
        f"{key}: {json.dumps(context[key], sort_keys=True, default=str)}" for key in sorted(context)
    )


def extract_json_block(text: str) -> dict[str, Any]:
    raw = (text or "").strip()
    if not raw:
        raise ValueError("Model returned an empty response.")

    if raw.startswith("```"):
        first_newline = raw.find("\n")
        last_fence = raw.rfind("```")
        if first_newline != -1 and last_fence > first_newline:
            raw = raw[first_newline:last_fence].strip()

    candidates = [raw]
    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ValueError(f"Could not parse JSON object from model response: {text[:200]}")


def normalize_intent(payload: Mapping[str, Any]) -> PurchaseIntent:
    level = str(payload.get("level") or "").strip().lower()
    if level == "medium":
        level = "moderate"
    if level not in INTENT_LEVELS:
        raise ValueError(f"unknown intent level: {level!r}")
    try:
        score = int(round(float(payload.get("score"))))
    except (TypeError, ValueError) as exc:
        raise ValueError("intent score must be numeric") from exc
    score = max(0, min(100, score))
    rationale = str(payload.get("rationale") or "").strip()
    return PurchaseIntent(level=level, score=score, rationale=rationale)


class SummaryCache:
    """Bounded LRU of thread summaries keyed by (session_id, message_count)."""

    def __init__(self, max_entries: int):
        self._max_entries = max(1, max_entries)
        self._lock = threading.Lock()
        self._entries: "OrderedDict[tuple[str, int], ThreadSummary]" = OrderedDict()

    def get(self, session_id: str, message_count: int) -> Optional[ThreadSummary]:
        with self._lock:
            key = (session_id, message_count)
            summary = self._entries.get(key)
            if summary is not None:
                self._entries.move_to_end(key)
            return summary

    def latest(self, session_id: str, below_count: Optional[int] = None) -> Optional[ThreadSummary]:
        """Most complete cached summary for a session, optionally covering fewer than `below_count`."""
        with self._lock:
            best = None
            for (cached_session, count), summary in self._entries.items():
                if cached_session != session_id:
                    continue
                if below_count is not None and count >= below_count:
                    continue
                if best is None or count > best.message_count_covered:
                    best = summary
            return best

    def put(self, session_id: str, summary: ThreadSummary) -> None:
        with self._lock:
            key = (session_id, summary.message_count_covered)
            self._entries[key] = summary
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == session_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Summarizer:
    """Generation-backed summaries, narratives and classifications."""

    def __init__(self, provider: GenerationProvider):
        self.provider = provider

    def _generate(self, prompt: PromptTemplate, variables: Mapping[str, object]) -> str:
        try:
            text = self.provider.generate(prompt, variables)
        except ProviderError as exc:
            raise SummaryGenerationError(f"{prompt.name} generation failed: {exc}") from exc
        text = (text or "").strip()
        if not text:
            raise SummaryGenerationError(f"{prompt.name} generation returned no text")
        return text

    def summarize(
        self,
        messages: Sequence[Any],
        previous_summary: Optional[str] = None,
        covered_before: int = 0,
    ) -> ThreadSummary:
        """
        Fold `messages` into `previous_summary` (or summarize from scratch).

        `covered_before` is the number of messages the previous summary already
        accounts for; the result covers `covered_before + len(messages)`. The
        50 to 300 word target is requested from the model, and overshoots are
        kept as-is.
        """
        covered = covered_before + len(messages)
        if not messages:
            if previous_summary:
                return ThreadSummary(text=previous_summary, message_count_covered=covered)
            raise SummaryGenerationError("no messages to summarize")
        text = self._generate(
            prompts.THREAD_SUMMARY,
            {
                "messages": format_messages(messages),
                "previous_summary": previous_summary or NO_PREVIOUS_SUMMARY,
                "message_count": len(messages),
            },
        )
        return ThreadSummary(text=text, message_count_covered=covered)

    @staticmethod
    def degraded_summary(messages: Sequence[Any]) -> ThreadSummary:
        return ThreadSummary(text=format_messages(messages), message_count_covered=len(messages))

    def derive_user_narrative(self, current_context: Mapping[str, Any], thread_summary: str) -> str:
        return self._generate(
            prompts.USER_CONTEXT_NARRATIVE,
            {
                "current_context": format_context(current_context),
                "thread_summary": thread_summary,
            },
        )

    def classify_purchase_intent(
        self,
        thread_summary: str,
        recent_messages: Sequence[Any],
    ) -> PurchaseIntent:
        """Advisory classification; any failure degrades to an unknown intent."""
        try:
            raw = self.provider.generate(
                prompts.PURCHASE_INTENT,
                {
                    "thread_summary": thread_summary,
                    "recent_messages": format_messages(recent_messages),
                },
            )
            return normalize_intent(extract_json_block(raw))
        except (ProviderError, ValueError) as exc:
            logger.warning("Purchase intent classification failed", extra={"detail": str(exc)})
            return PurchaseIntent.unknown()

    def recommendation_context(
        self,
        user_context: Mapping[str, Any],
        thread_summary: str,
        recent_messages: Sequence[Any],
    ) -> str:
        return self._generate(
            prompts.RECOMMENDATION_CONTEXT,
            {
                "user_context": format_context(user_context),
                "thread_summary": thread_summary,
                "recent_messages": format_messages(recent_messages),
            },
        )

    def compose_reply(
        self,
        thread_summary: str,
        user_context: Optional[Mapping[str, Any]],
        recommendations: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        items = list((recommendations or {}).get("recommendations") or [])
        lines = []
        for index, rec in enumerate(items, start=1):
            metadata = rec.get("metadata") or {}
            owner = rec.get("owner_info") or {}
            lines.append(
                f"{index}. {metadata.get('title') or rec.get('product_id')}\n"
                f"   - Company: {owner.get('company_name') or 'Unknown'}\n"
                f"   - Description: {metadata.get('description') or 'No description'}\n"
                f"   - Similarity: {rec.get('similarity_score', 0.0) * 100:.1f}%\n"
                f"   - URL: {metadata.get('url') or 'Not provided'}"
            )
        if user_context:
            context_text = (
                f"Metadata: {json.dumps(user_context.get('metadata') or {}, sort_keys=True)}\n"
                f"Profile: {user_context.get('narrative_prompt') or ''}"
            )
        else:
            context_text = NO_USER_CONTEXT
        response = self._generate(
            prompts.CHAT_RESPONSE,
            {
                "thread_summary": thread_summary,
                "user_context": context_text,
                "recommendations": "\n\n".join(lines) or "No recommendations available.",
                "recommendations_count": len(items),
            },
        )
        context_summary = (recommendations or {}).get("user_context_summary") or thread_summary
        return {
            "response": response,
            "recommendations_used": len(items),
            "context_summary": context_summary,
        }
