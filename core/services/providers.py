"""
Upstream provider clients (OpenAI embeddings and chat completions).

Both clients are built once per process and injected into the pipeline.
Every request carries an httpx timeout; transient statuses are retried with
exponential backoff plus jitter, and a circuit breaker stops calling an
upstream that keeps failing.
"""

from __future__ import annotations

import random
import threading
import time
from typing import Mapping, Optional, Sequence

import httpx

import core.config as config
from core.errors import (
    EmbeddingProviderError,
    GenerationProviderError,
    ProviderError,
    ProviderTimeout,
)
from core.prompts import PromptTemplate

logger = config.logger

RETRYABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class CircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


def build_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
        cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
    )


def build_http_client(timeout_seconds: float) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    return httpx.Client(
        base_url=config.OPENAI_BASE_URL,
        timeout=httpx.Timeout(timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers=headers,
    )


class _OpenAIClientBase:
    error_cls: type[ProviderError] = ProviderError
    label = "provider"

    def __init__(
        self,
        http_client: httpx.Client,
        *,
        breaker: Optional[CircuitBreaker] = None,
        retry_max: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
    ):
        self._http = http_client
        self.breaker = breaker or build_circuit_breaker()
        self._retry_max = config.EMBEDDING_RETRY_MAX if retry_max is None else retry_max
        self._backoff_seconds = (
            config.EMBEDDING_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._jitter_seconds = (
            config.EMBEDDING_RETRY_JITTER_SECONDS if jitter_seconds is None else jitter_seconds
        )

    def close(self) -> None:
        self._http.close()
        logger.info(f"{self.label} HTTP client closed")

    def _sleep_backoff(self, attempt: int) -> None:
        base = self._backoff_seconds * (2 ** attempt)
        jitter = random.uniform(0, self._jitter_seconds) if self._jitter_seconds > 0 else 0.0
        time.sleep(base + jitter)

    def _unavailable(self, detail: str, timed_out: bool = False) -> ProviderError:
        self.breaker.record_failure(detail)
        logger.warning(f"{self.label} unavailable", extra={"detail": detail})
        if timed_out:
            return ProviderTimeout(f"{self.label} timed out")
        return self.error_cls(f"{self.label} unavailable: {detail}")

    def _post(self, path: str, payload: dict) -> dict:
        if self.breaker.is_open():
            raise self.error_cls(f"{self.label} unavailable: circuit breaker open")

        for attempt in range(self._retry_max + 1):
            try:
                response = self._http.post(path, json=payload)
            except httpx.TimeoutException as exc:
                if attempt >= self._retry_max:
                    raise self._unavailable(str(exc) or "timeout", timed_out=True) from exc
                self._sleep_backoff(attempt)
                continue
            except httpx.RequestError as exc:
                if attempt >= self._retry_max:
                    raise self._unavailable(str(exc) or "request error") from exc
                self._sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUSES:
                if attempt >= self._retry_max:
                    raise self._unavailable(f"status {response.status_code}")
                self._sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                raise self._unavailable(f"status {response.status_code}")

            try:
                data = response.json()
            except ValueError as exc:
                raise self._unavailable("invalid JSON body") from exc
            self.breaker.record_success()
            return data

        raise self._unavailable("retries exhausted")


class OpenAIEmbeddingClient(_OpenAIClientBase):
    """Embedding provider backed by the OpenAI `/embeddings` endpoint."""

    error_cls = EmbeddingProviderError
    label = "embedding provider"

    def __init__(self, http_client: httpx.Client, *, model: Optional[str] = None, **kwargs):
        super().__init__(http_client, **kwargs)
        self.model = model or config.EMBEDDING_MODEL

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        data = self._post("/embeddings", {"model": self.model, "input": list(texts)})
        try:
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            return [list(row["embedding"]) for row in rows]
        except (KeyError, TypeError) as exc:
            raise self.error_cls("embedding provider returned an unexpected payload") from exc


class OpenAIChatClient(_OpenAIClientBase):
    """Generation provider backed by the OpenAI `/chat/completions` endpoint."""

    error_cls = GenerationProviderError
    label = "generation provider"

    def __init__(
        self,
        http_client: httpx.Client,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(http_client, **kwargs)
        self.model = model or config.GENERATION_MODEL
        self.temperature = config.GENERATION_TEMPERATURE if temperature is None else temperature

    def generate(self, prompt: PromptTemplate, variables: Mapping[str, object]) -> str:
        messages = []
        if prompt.system:
            messages.append({"role": "system", "content": prompt.system})
        messages.append({"role": "user", "content": prompt.render(variables)})
        temperature = self.temperature if prompt.temperature is None else prompt.temperature
        data = self._post(
            "/chat/completions",
            {"model": self.model, "messages": messages, "temperature": temperature},
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self.error_cls("generation provider returned an unexpected payload") from exc
        return (content or "").strip()


class DisabledEmbeddingClient:
    """Embedding provider used when EMBEDDING_PROVIDER=none."""

    def __init__(self):
        self.breaker = build_circuit_breaker()

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        raise EmbeddingProviderError("embedding provider disabled")

    def close(self) -> None:
        return None


def build_embedding_client():
    if config.EMBEDDING_PROVIDER == "none":
        return DisabledEmbeddingClient()
    http_client = build_http_client(config.EMBEDDING_TIMEOUT_SECONDS)
    logger.info("Embedding HTTP client initialized")
    return OpenAIEmbeddingClient(http_client)


def build_generation_client() -> OpenAIChatClient:
    http_client = build_http_client(config.GENERATION_TIMEOUT_SECONDS)
    logger.info("Generation HTTP client initialized")
    return OpenAIChatClient(http_client)
