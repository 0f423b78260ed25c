"""
Mapping of service payloads onto HTTP responses.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import core.config as config

STATUS_BY_ERROR_TYPE = {
    "validation_error": 400,
    "not_found": 404,
    "conflict": 409,
    "upstream_unavailable": 503,
    "store_unavailable": 503,
    "dimension_mismatch": 500,
}


def respond(payload: dict, success_status: int = 200):
    if payload.get("status") == "error":
        status_code = STATUS_BY_ERROR_TYPE.get(payload.get("error_type"), 500)
        return JSONResponse(status_code=status_code, content=payload)
    if success_status != 200:
        return JSONResponse(status_code=success_status, content=payload)
    return payload


async def call_service(fn: Callable[..., dict], *args, success_status: int = 200, **kwargs):
    """Run a synchronous service call off the event loop under the pipeline timeout."""
    try:
        payload = await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=config.PIPELINE_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        tool = getattr(fn, "__name__", "pipeline")
        config.logger.warning("Pipeline call timed out", extra={"tool": tool})
        payload = {
            "status": "error",
            "error_type": "upstream_unavailable",
            "tool": tool,
            "retryable": True,
            "message": f"{tool} timed out after {config.PIPELINE_TIMEOUT_SECONDS}s",
        }
    return respond(payload, success_status=success_status)


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0].get("loc", ())[1:]) if errors else "body"
    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error_type": "validation_error",
            "field": field or "body",
            "message": errors[0].get("msg") if errors else "invalid request",
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
