"""
Shared validation helpers for ContextMatch services.
"""

from __future__ import annotations

import json
import math
from typing import Optional, Sequence

import core.config as config
from core.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_offset(value: int, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationIssue(f"{field} must be a non-negative integer", field=field, error_type="out_of_range")


def validate_threshold(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_weight(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if not math.isfinite(value):
        raise ValidationIssue(f"{field} must be finite", field=field, error_type="not_finite")
    if value < 0:
        raise ValidationIssue(f"{field} must be non-negative", field=field, error_type="out_of_range")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: int,
) -> None:
    if values is None:
        return
    if isinstance(values, str) or not isinstance(values, (list, tuple, set)):
        raise ValidationIssue(f"{field} must be a list of strings", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str):
            raise ValidationIssue(f"{field} must contain only strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > config.MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {config.MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", config.MAX_EMBEDDING_TEXT_LENGTH)


def validate_message(message: dict) -> tuple[str, str, dict]:
    """Return (role, content, extra_payload) for an inbound chat message."""
    if not isinstance(message, dict):
        raise ValidationIssue("message must be an object", field="message", error_type="invalid_type")
    validate_metadata(message, "message")
    role = message.get("role") or "user"
    validate_required_text(role, "message.role", config.MAX_SHORT_TEXT_LENGTH)
    content = message.get("content")
    if content is None:
        extra = {k: v for k, v in message.items() if k != "role"}
        if not extra:
            raise ValidationIssue("message.content is required", field="message.content", error_type="required")
        content = json.dumps(extra, sort_keys=True)
    validate_required_text(content, "message.content", config.MAX_TEXT_LENGTH)
    payload = {k: v for k, v in message.items() if k not in {"role", "content"}}
    return role, content, payload
