"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os
import time

from fastapi import APIRouter, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB, schema_revisions, vector_search_enabled
from core.errors import DimensionMismatch, ProviderError
from core.services.pipeline import PipelineState


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if vector_search_enabled():
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _breaker_status(client) -> dict:
    breaker = getattr(client, "breaker", None)
    return breaker.status() if breaker is not None else {}


def _check_embedding_health(check_external: bool) -> dict:
    pipeline = PipelineState.current
    if pipeline is None:
        return {"status": "not_initialized", "provider": config.EMBEDDING_PROVIDER, "checked": False}

    breaker_status = _breaker_status(pipeline.embedding_client)
    embedding_status = {
        "status": "unknown",
        "provider": config.EMBEDDING_PROVIDER,
        "model": config.EMBEDDING_MODEL,
        "circuit_breaker": breaker_status,
        "checked": False,
    }

    if config.EMBEDDING_PROVIDER == "none":
        embedding_status["status"] = "disabled"
        return embedding_status

    if breaker_status.get("open"):
        embedding_status["status"] = "cooldown"
        return embedding_status

    if check_external and config.EMBEDDING_HEALTHCHECK_ENABLED:
        embedding_status["checked"] = True
        start = time.time()
        try:
            pipeline.vectorizer.embed("healthcheck")
            embedding_status["status"] = "ok"
            embedding_status["latency_ms"] = int((time.time() - start) * 1000)
        except (ProviderError, DimensionMismatch) as exc:
            embedding_status["status"] = "error"
            embedding_status["error"] = str(exc)
        return embedding_status

    embedding_status["status"] = "skipped" if check_external else "ready"
    return embedding_status


def _check_generation_health() -> dict:
    pipeline = PipelineState.current
    if pipeline is None:
        return {"status": "not_initialized"}
    breaker_status = _breaker_status(pipeline.generation_client)
    return {
        "status": "cooldown" if breaker_status.get("open") else "ready",
        "model": config.GENERATION_MODEL,
        "circuit_breaker": breaker_status,
    }


def _database_unhealthy(db_health: dict) -> bool:
    return not db_health.get("ok") or (vector_search_enabled() and not db_health.get("pgvector_installed"))


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    embedding_status = _check_embedding_health(check_external=False)
    if _database_unhealthy(db_health):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "embedding_provider": embedding_status},
        )

    return {
        "status": "healthy",
        "service": "ContextMatch",
        "version": "0.1.0",
        "instance_id": os.environ.get("CONTEXTMATCH_INSTANCE_ID", "contextmatch-1"),
        "database": db_health,
        "embedding_provider": embedding_status,
        "generation_provider": _check_generation_health(),
    }


@router.get("/health/deps")
async def health_deps():
    """Dependency health checks (optional embedding provider check)."""
    db_health = _check_db_health()
    if _database_unhealthy(db_health):
        raise HTTPException(status_code=503, detail={"database": db_health})

    embedding_status = _check_embedding_health(check_external=True)

    return {
        "status": "healthy",
        "service": "ContextMatch",
        "database": db_health,
        "embedding_provider": embedding_status,
        "generation_provider": _check_generation_health(),
    }
