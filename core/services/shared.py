"""
Shared helpers for pipeline services.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable

import core.config as config
from sqlalchemy.exc import SQLAlchemyError

from core.db import DB
from core.errors import (
    DimensionMismatch,
    NotFound,
    ProviderError,
    StoreWriteConflict,
    ValidationIssue,
)

logger = config.logger


def open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized")
    return DB.SessionLocal()


# =============================================================================
# Error payloads
# =============================================================================

def validation_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def not_found_payload(tool_name: str, exc: NotFound) -> dict:
    return {
        "status": "error",
        "error_type": "not_found",
        "tool": tool_name,
        "entity": exc.entity,
        "message": str(exc),
    }


def upstream_error_payload(tool_name: str, exc: ProviderError) -> dict:
    return {
        "status": "error",
        "error_type": "upstream_unavailable",
        "tool": tool_name,
        "retryable": True,
        "message": str(exc),
    }


def conflict_payload(tool_name: str, exc: StoreWriteConflict) -> dict:
    return {
        "status": "error",
        "error_type": "conflict",
        "tool": tool_name,
        "retryable": True,
        "message": str(exc),
    }


def store_unavailable_payload(tool_name: str, exc: SQLAlchemyError) -> dict:
    return {
        "status": "error",
        "error_type": "store_unavailable",
        "tool": tool_name,
        "retryable": True,
        "message": f"storage error: {type(exc).__name__}",
    }


def error_payload_for(tool_name: str, exc: Exception) -> dict:
    """Map a pipeline exception onto its typed payload."""
    if isinstance(exc, ValidationIssue):
        return validation_error_payload(tool_name, exc)
    if isinstance(exc, NotFound):
        return not_found_payload(tool_name, exc)
    if isinstance(exc, ProviderError):
        return upstream_error_payload(tool_name, exc)
    if isinstance(exc, StoreWriteConflict):
        return conflict_payload(tool_name, exc)
    if isinstance(exc, DimensionMismatch):
        return {
            "status": "error",
            "error_type": "dimension_mismatch",
            "tool": tool_name,
            "retryable": False,
            "message": str(exc),
        }
    if isinstance(exc, SQLAlchemyError):
        return store_unavailable_payload(tool_name, exc)
    raise TypeError(f"no payload mapping for {type(exc).__name__}")


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return validation_error_payload(fn.__name__, exc)
        except NotFound as exc:
            logger.info("tool_not_found", extra={"tool": fn.__name__, "detail": str(exc)})
            return not_found_payload(fn.__name__, exc)
        except ProviderError as exc:
            logger.warning("tool_upstream_error", extra={"tool": fn.__name__, "detail": str(exc)})
            return upstream_error_payload(fn.__name__, exc)
        except StoreWriteConflict as exc:
            logger.warning("tool_write_conflict", extra={"tool": fn.__name__, "detail": str(exc)})
            return conflict_payload(fn.__name__, exc)
        except DimensionMismatch as exc:
            logger.error("tool_dimension_mismatch", extra={"tool": fn.__name__, "detail": str(exc)})
            return error_payload_for(fn.__name__, exc)
        except SQLAlchemyError as exc:
            logger.error("tool_store_error", extra={"tool": fn.__name__, "detail": str(exc)})
            return store_unavailable_payload(fn.__name__, exc)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)
