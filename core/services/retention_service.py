"""
Retention sweep for the chat message log.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import core.config as config
from core.db import DB
from core.services import thread_store
from core.services.summarizer import SummaryCache


def run_retention_tick(
    days_old: Optional[int] = None,
    summary_cache: Optional[SummaryCache] = None,
    now: Optional[datetime] = None,
    session_factory: Optional[Callable] = None,
) -> int:
    """Delete messages older than the retention window; returns the number removed."""
    session_factory = session_factory or DB.SessionLocal
    if session_factory is None:
        return 0
    days_old = config.MESSAGE_RETENTION_DAYS if days_old is None else days_old
    if days_old <= 0:
        return 0
    db = session_factory()
    try:
        deleted = thread_store.delete_messages_older_than(db, days_old, now=now)
    finally:
        db.close()
    if deleted and summary_cache is not None:
        summary_cache.clear()
    config.logger.info(
        "Retention tick complete",
        extra={"days_old": days_old, "deleted": deleted},
    )
    return deleted
