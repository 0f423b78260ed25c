"""
Per-user enhanced context rows.

Writes go through `write_context`, which checks the row version read by the
caller so two writers can never interleave field updates on one user.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError

from core.errors import NotFound, StoreWriteConflict
from core.models import UserEnhancedContext
from core.services.catalog import rank_by_embedding


class KeyedLockRegistry:
    """One re-entrant lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def serialize_context(metadata: Optional[dict], narrative_prompt: Optional[str]) -> str:
    """Deterministic embedding text for a profile: sorted-key metadata JSON, then the narrative."""
    metadata_text = json.dumps(metadata or {}, sort_keys=True, ensure_ascii=False, default=str)
    return f"{metadata_text}\n\n{(narrative_prompt or '').strip()}"


def get_context(db, user_id: str) -> UserEnhancedContext:
    row = (
        db.query(UserEnhancedContext)
        .filter(UserEnhancedContext.user_id == user_id)
        .first()
    )
    if row is None:
        raise NotFound("user context", user_id)
    return row


def find_context(db, user_id: str) -> Optional[UserEnhancedContext]:
    try:
        return get_context(db, user_id)
    except NotFound:
        return None


def write_context(
    db,
    user_id: str,
    *,
    expected_version: Optional[int],
    metadata: dict,
    narrative_prompt: str,
    embedding: list[float],
) -> UserEnhancedContext:
    """
    Insert or replace a user's context in one transaction.

    `expected_version` is the version the caller read (None when no row
    existed). A mismatch means another writer got there first and raises
    StoreWriteConflict without touching the row.
    """
    now = datetime.utcnow()
    if expected_version is None:
        row = UserEnhancedContext(
            user_id=user_id,
            metadata_=metadata,
            narrative_prompt=narrative_prompt,
            embedding=embedding,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise StoreWriteConflict(f"user context created concurrently: {user_id}") from exc
        db.refresh(row)
        return row

    updated = (
        db.query(UserEnhancedContext)
        .filter(UserEnhancedContext.user_id == user_id)
        .filter(UserEnhancedContext.version == expected_version)
        .update(
            {
                UserEnhancedContext.metadata_: metadata,
                UserEnhancedContext.narrative_prompt: narrative_prompt,
                UserEnhancedContext.embedding: embedding,
                UserEnhancedContext.version: expected_version + 1,
                UserEnhancedContext.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        raise StoreWriteConflict(
            f"user context changed since version {expected_version}: {user_id}"
        )
    db.commit()
    db.expire_all()
    return get_context(db, user_id)


def delete_context(db, user_id: str) -> None:
    row = get_context(db, user_id)
    db.delete(row)
    db.commit()


def count_contexts(db, user_id: str) -> int:
    return (
        db.query(UserEnhancedContext)
        .filter(UserEnhancedContext.user_id == user_id)
        .count()
    )


def serialize_user_context(row: UserEnhancedContext, include_embedding: bool = False) -> dict:
    payload = {
        "user_id": row.user_id,
        "metadata": row.metadata_ or {},
        "narrative_prompt": row.narrative_prompt or "",
        "version": row.version,
        "has_embedding": row.embedding is not None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
    if include_embedding:
        payload["embedding"] = embedding_as_list(row.embedding)
    return payload


def embedding_as_list(value) -> Optional[list[float]]:
    if value is None:
        return None
    return [float(item) for item in value]


def list_contexts(db, limit: int = 50, offset: int = 0) -> list[UserEnhancedContext]:
    return (
        db.query(UserEnhancedContext)
        .order_by(UserEnhancedContext.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def search_contexts(
    db,
    embedding: list[float],
    threshold: float,
    limit: int,
    exclude_user_id: Optional[str] = None,
) -> list[tuple[UserEnhancedContext, float]]:
    exclude = ("user_id", exclude_user_id) if exclude_user_id is not None else None
    return rank_by_embedding(db, UserEnhancedContext, embedding, threshold, limit, exclude=exclude)


def similar_contexts(db, user_id: str, threshold: float, limit: int) -> list[tuple[UserEnhancedContext, float]]:
    """Other users whose context embedding is close to `user_id`'s; empty when it has none."""
    row = find_context(db, user_id)
    if row is None or row.embedding is None:
        return []
    return search_contexts(db, embedding_as_list(row.embedding), threshold, limit, exclude_user_id=user_id)
