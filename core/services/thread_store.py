"""
Append-only chat message log, one thread per session.

Ordering within a session comes from the insertion ordinal (`ChatMessage.id`),
never from `created_at`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_

from core.models import ChatMessage


def append_message(
    db,
    session_id: str,
    role: str,
    content: str,
    user_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> ChatMessage:
    message = ChatMessage(
        session_id=session_id,
        user_id=user_id,
        role=role,
        content=content,
        payload=payload or {},
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def list_messages(db, session_id: str) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.id.asc())
        .all()
    )


def list_messages_after(db, session_id: str, skip: int) -> list[ChatMessage]:
    """Messages of a session past the first `skip`, oldest first."""
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.id.asc())
        .offset(skip)
        .all()
    )


def list_messages_page(db, session_id: str, limit: int, offset: int) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_recent_messages(db, session_id: str, limit: int) -> list[ChatMessage]:
    """Last `limit` messages of a session, returned oldest first."""
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.id.desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    return rows


def count_messages(db, session_id: str) -> int:
    return (
        db.query(func.count(ChatMessage.id))
        .filter(ChatMessage.session_id == session_id)
        .scalar()
        or 0
    )


def list_user_sessions(db, user_id: str, since: Optional[datetime] = None) -> list[dict]:
    """Sessions a user wrote in, most recently active first."""
    query = db.query(
        ChatMessage.session_id,
        func.count(ChatMessage.id).label("message_count"),
        func.max(ChatMessage.id).label("last_message_id"),
    ).filter(ChatMessage.user_id == user_id)
    if since is not None:
        query = query.filter(ChatMessage.created_at >= since)
    rows = (
        query.group_by(ChatMessage.session_id)
        .order_by(func.max(ChatMessage.id).desc())
        .all()
    )
    return [
        {
            "session_id": row.session_id,
            "message_count": int(row.message_count),
            "last_message_id": int(row.last_message_id),
        }
        for row in rows
    ]


LIKE_ESCAPE = "\\"


def escape_like(term: str) -> str:
    """Make LIKE wildcards in user text match literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def keyword_candidates(
    db,
    query: str,
    session_id: Optional[str] = None,
    limit: int = 20,
) -> list[ChatMessage]:
    terms = [term for term in query.split() if term] or [query]
    filters = [
        ChatMessage.content.ilike(f"%{escape_like(term)}%", escape=LIKE_ESCAPE) for term in terms
    ]
    q = db.query(ChatMessage).filter(or_(*filters))
    if session_id:
        q = q.filter(ChatMessage.session_id == session_id)
    return q.order_by(ChatMessage.id.desc()).limit(limit).all()


def delete_messages_older_than(db, days_old: int, now: Optional[datetime] = None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(days=days_old)
    deleted = (
        db.query(ChatMessage)
        .filter(ChatMessage.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


def serialize_message(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "user_id": message.user_id,
        "message": {"role": message.role, "content": message.content, **(message.payload or {})},
        "ordinal": message.id,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
