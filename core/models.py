"""
ContextMatch Database Models
PostgreSQL + pgvector schema (JSON embeddings on SQLite)
"""

from datetime import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except ImportError:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON


def _public_id() -> str:
    return str(uuid.uuid4())


Base = declarative_base()


# =============================================================================
# Solution Owners (companies publishing products)
# =============================================================================

class Owner(Base):
    __tablename__ = "owners"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(36), nullable=False, default=_public_id)
    name = Column(String(255), nullable=False)
    domain = Column(String(255))
    description = Column(Text)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    products = relationship("Product", back_populates="owner")

    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_owners_owner_id"),
        Index("ix_owners_domain", "domain"),
    )


# =============================================================================
# Products
# =============================================================================

class Product(Base):
    __tablename__ = "products"

    # id doubles as catalog insertion order for ranking tie-breaks
    id = Column(Integer, primary_key=True)
    product_id = Column(String(36), nullable=False, default=_public_id)
    owner_id = Column(String(36), ForeignKey("owners.owner_id"), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    categories = Column(JSON_TYPE, default=list)
    url = Column(String(1000))
    image_url = Column(String(1000))
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("Owner", back_populates="products")

    __table_args__ = (
        UniqueConstraint("product_id", name="uq_products_product_id"),
        Index("ix_products_owner_id", "owner_id"),
    )


# =============================================================================
# Chat History
# =============================================================================

class ChatMessage(Base):
    __tablename__ = "chat_messages"

    # Insertion ordinal; the only ordering guarantee within a session
    id = Column(Integer, primary_key=True)
    session_id = Column(String(255), nullable=False)
    user_id = Column(String(255))
    role = Column(String(50), nullable=False, default="user")
    content = Column(Text, nullable=False)
    payload = Column(JSON_TYPE, default=dict)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("ix_chat_messages_session_id", "session_id", "id"),
        Index("ix_chat_messages_user_id", "user_id"),
        Index("ix_chat_messages_created_at", "created_at"),
    )


# =============================================================================
# User Enhanced Context
# =============================================================================

class UserEnhancedContext(Base):
    __tablename__ = "user_contexts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    narrative_prompt = Column(Text, nullable=False, default="")
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_contexts_user_id"),
    )
