"""
FastAPI app wiring for ContextMatch.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.services import retention_service
from core.services.pipeline import PipelineState, init_pipeline, shutdown_pipeline
from app.errors import register_error_handlers
from app.middleware import configure_middleware
from app.routes.catalog import router as catalog_router
from app.routes.chat import router as chat_router
from app.routes.health import router as health_router
from app.routes.recommendations import router as recommendations_router
from app.routes.root import router as root_router
from app.routes.users import router as users_router


retention_task = None


def _run_retention_once() -> int:
    pipeline = PipelineState.current
    summary_cache = pipeline.summary_cache if pipeline is not None else None
    return retention_service.run_retention_tick(summary_cache=summary_cache)


async def _retention_loop() -> None:
    if config.RETENTION_TICK_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.RETENTION_TICK_SECONDS)
        try:
            await asyncio.to_thread(_run_retention_once)
        except Exception as exc:
            config.logger.warning(f"Retention task error: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global retention_task
    init_db()
    init_pipeline()
    if config.RETENTION_TICK_SECONDS > 0:
        retention_task = asyncio.create_task(_retention_loop())
    try:
        yield
    finally:
        if retention_task:
            retention_task.cancel()
            try:
                await retention_task
            except asyncio.CancelledError:
                pass
        shutdown_pipeline()
        if DB.engine:
            DB.engine.dispose()


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="ContextMatch",
        redirect_slashes=False,
        lifespan=lifespan if use_lifespan else None,
    )
    configure_middleware(app)
    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(root_router)
    app.include_router(chat_router)
    app.include_router(recommendations_router)
    app.include_router(users_router)
    app.include_router(catalog_router)
    return app


app = create_app()
