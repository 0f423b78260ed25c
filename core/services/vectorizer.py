"""
Text vectorization and vector math.
"""

from __future__ import annotations

import math
from typing import Optional, Protocol, Sequence

import numpy as np

import core.config as config
from core.errors import DimensionMismatch, EmbeddingProviderError, ValidationIssue
from core.validators import validate_embedding_text, validate_weight

logger = config.logger


class EmbeddingProvider(Protocol):
    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        ...


def _as_array(vector: Sequence[float]) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either has zero magnitude."""
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    va = _as_array(a)
    vb = _as_array(b)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine of `query` against each row of `matrix` (zero rows score 0.0)."""
    q = _as_array(query)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    if matrix.shape[1] != q.shape[0]:
        raise DimensionMismatch(q.shape[0], matrix.shape[1])
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q
    scores = np.zeros(matrix.shape[0], dtype=np.float64)
    nonzero = row_norms > 0
    scores[nonzero] = dots[nonzero] / (row_norms[nonzero] * q_norm)
    return scores


def normalize_weights(weight_a: float, weight_b: float) -> tuple[float, float]:
    validate_weight(weight_a, "weight_a")
    validate_weight(weight_b, "weight_b")
    total = float(weight_a) + float(weight_b)
    if total <= 0 or not math.isfinite(total):
        raise ValidationIssue(
            "weights must have a positive finite sum",
            field="weights",
            error_type="out_of_range",
        )
    return float(weight_a) / total, float(weight_b) / total


def combine(
    a: Sequence[float],
    b: Sequence[float],
    weight_a: float,
    weight_b: float,
) -> list[float]:
    """
    Weighted elementwise sum of two vectors with weights normalized to sum to 1.

    The result is not re-normalized to unit length: its magnitude depends on the
    angle between `a` and `b` and on the weights, so cosine scores taken against
    it move non-linearly with the weight choice. Normalize downstream if a unit
    vector is needed.
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    wa, wb = normalize_weights(weight_a, weight_b)
    combined = _as_array(a) * wa + _as_array(b) * wb
    return combined.tolist()


class Vectorizer:
    """Wraps an embedding provider and enforces the configured dimension."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimension: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.provider = provider
        self.dimension = dimension or config.EMBEDDING_DIM
        self.batch_size = max(1, batch_size or config.EMBEDDING_BATCH_SIZE)

    def _check_dimension(self, vector: Sequence[float]) -> list[float]:
        if len(vector) != self.dimension:
            logger.error(
                "Embedding dimension mismatch",
                extra={"expected": self.dimension, "actual": len(vector)},
            )
            raise DimensionMismatch(self.dimension, len(vector))
        return [float(value) for value in vector]

    def embed(self, text: str) -> list[float]:
        validate_embedding_text(text)
        vectors = self.provider.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingProviderError("embedding provider returned an unexpected vector count")
        return self._check_dimension(vectors[0])

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        texts = list(texts)
        for text in texts:
            validate_embedding_text(text)
        results: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            vectors = self.provider.embed_texts(batch)
            if len(vectors) != len(batch):
                raise EmbeddingProviderError("embedding provider returned an unexpected vector count")
            results.extend(self._check_dimension(vector) for vector in vectors)
        return results

    cosine_similarity = staticmethod(cosine_similarity)
    combine = staticmethod(combine)
