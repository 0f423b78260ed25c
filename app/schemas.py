"""
Request bodies for the HTTP API.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ChatMessageRequest(BaseModel):
    session_id: str = Field(min_length=1)
    message: dict[str, Any]
    user_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ChatSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    session_id: Optional[str] = None
    limit: int = Field(default=20, ge=1)


class ChatRespondRequest(BaseModel):
    session_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RecommendationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    thread_summary: Optional[str] = None
    session_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class TextSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: Optional[int] = Field(default=None, ge=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class OnboardingRequest(BaseModel):
    user_id: str = Field(min_length=1)
    metadata: Optional[dict[str, Any]] = None
    narrative_prompt: Optional[str] = None


class UserContextUpdateRequest(BaseModel):
    metadata: Optional[dict[str, Any]] = None
    narrative_prompt: Optional[str] = None


class ThreadSummaryUpdateRequest(BaseModel):
    thread_summary: str = Field(min_length=1)
    metadata: Optional[dict[str, Any]] = None


class OwnerCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    domain: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ProductCreateRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    categories: Optional[list[str]] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ProductUpdateRequest(BaseModel):
    owner_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[list[str]] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class OwnerUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    domain: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
