"""
Engine, session factory and schema revision checks.

The schema (including the pgvector extension on Postgres) is owned by the
Alembic migrations under `alembic/versions`; startup only compares the
database revision with the script head and upgrades when allowed.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import core.config as config

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Engine and session factory shared by the services."""

    engine = None
    SessionLocal = None


def alembic_config():
    from alembic.config import Config

    cfg = Config(os.path.join(ROOT_DIR, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(ROOT_DIR, "alembic"))
    cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """(current revision stamped in the database, head revision of the scripts)."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def migrate_to_head(engine) -> None:
    from alembic import command

    current, head = schema_revisions(engine)
    if current == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema at {current}, expected {head}; "
            "run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true"
        )

    config.logger.info("Upgrading database schema", extra={"from_revision": current, "to_revision": head})
    command.upgrade(alembic_config(), "head")
    current, _ = schema_revisions(engine)
    if current != head:
        raise RuntimeError(f"Database migration stopped at {current}, expected {head}")


def bind_engine(engine) -> None:
    """Point the shared session factory at an already-built engine."""
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def build_engine(url: str):
    if url.lower().startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db() -> None:
    """Validate config, connect, and bring the schema to head."""
    config.validate_and_prepare_config()
    config.logger.info(
        "Connecting to database",
        extra={"db_backend": config.DB_BACKEND_EFFECTIVE, "vector_backend": config.VECTOR_BACKEND_EFFECTIVE},
    )
    bind_engine(build_engine(config.DATABASE_URL))
    migrate_to_head(DB.engine)
    config.logger.info("Database initialized")


def vector_search_enabled() -> bool:
    return config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
