"""Add embedding column to owners.

Revision ID: 0002_owner_embeddings
Revises: 0001_initial_schema
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

import core.config as config


revision = "0002_owner_embeddings"
down_revision = "0001_initial_schema"
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
    op.add_column("owners", sa.Column("embedding", _embedding_type(is_postgres)))


def downgrade() -> None:
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == "sqlite"
    with op.batch_alter_table("owners", recreate="always" if is_sqlite else "auto") as batch:
        batch.drop_column("embedding")
