"""Initial schema: owners, products, chat messages, user contexts.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import core.config as config


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    embedding_type = _embedding_type(is_postgres)

    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector" and config.AUTO_CREATE_EXTENSIONS:
        op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "owners",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("domain", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("metadata", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("owner_id", name="uq_owners_owner_id"),
    )
    op.create_index("ix_owners_domain", "owners", ["domain"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column(
            "owner_id",
            sa.String(length=36),
            sa.ForeignKey("owners.owner_id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("categories", json_type),
        sa.Column("url", sa.String(length=1000)),
        sa.Column("image_url", sa.String(length=1000)),
        sa.Column("metadata", json_type),
        sa.Column("embedding", embedding_type),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("product_id", name="uq_products_product_id"),
    )
    op.create_index("ix_products_owner_id", "products", ["owner_id"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255)),
        sa.Column("role", sa.String(length=50), nullable=False, server_default="user"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("payload", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_chat_messages_session_id", "chat_messages", ["session_id", "id"])
    op.create_index("ix_chat_messages_user_id", "chat_messages", ["user_id"])
    op.create_index("ix_chat_messages_created_at", "chat_messages", ["created_at"])

    op.create_table(
        "user_contexts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("narrative_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("embedding", embedding_type),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("user_id", name="uq_user_contexts_user_id"),
    )


def downgrade() -> None:
    op.drop_table("user_contexts")
    op.drop_index("ix_chat_messages_created_at", table_name="chat_messages")
    op.drop_index("ix_chat_messages_user_id", table_name="chat_messages")
    op.drop_index("ix_chat_messages_session_id", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_products_owner_id", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_owners_domain", table_name="owners")
    op.drop_table("owners")
