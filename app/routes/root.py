"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "ContextMatch",
        "version": "0.1.0",
        "description": "Context-aware product recommendations from chat threads",
        "embedding_model": config.EMBEDDING_MODEL,
        "generation_model": config.GENERATION_MODEL,
        "fusion_weights": {
            "user": config.RECOMMENDATION_USER_WEIGHT,
            "thread": config.RECOMMENDATION_THREAD_WEIGHT,
        },
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "chat": "/chat",
            "recommendations": "/recommendations",
            "users": "/users",
            "owners": "/owners",
            "products": "/products",
        },
    }
