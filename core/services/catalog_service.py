"""
Catalog entry points for owners and products.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import core.config as config
from core.services import catalog
from core.services.context_store import KeyedLockRegistry
from core.services.shared import open_session, service_tool
from core.services.vectorizer import Vectorizer
from core.validators import (
    validate_limit,
    validate_metadata,
    validate_offset,
    validate_optional_text,
    validate_required_text,
    validate_string_list,
    validate_threshold,
)

logger = config.logger


def _validate_product_fields(
    title: Optional[str],
    description: Optional[str],
    categories: Optional[Sequence[str]],
    url: Optional[str],
    image_url: Optional[str],
    metadata: Optional[dict],
    title_required: bool,
) -> None:
    if title_required:
        validate_required_text(title, "title", config.MAX_TITLE_LENGTH)
    elif title is not None:
        validate_required_text(title, "title", config.MAX_TITLE_LENGTH)
    validate_optional_text(description, "description", config.MAX_TEXT_LENGTH)
    validate_string_list(categories, "categories", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)
    validate_optional_text(url, "url", config.MAX_URL_LENGTH)
    validate_optional_text(image_url, "image_url", config.MAX_URL_LENGTH)
    validate_metadata(metadata, "metadata")


def _search_bounds(threshold: Optional[float], limit: Optional[int]) -> tuple[float, int]:
    threshold = config.RECOMMENDATION_DEFAULT_THRESHOLD if threshold is None else threshold
    limit = config.RECOMMENDATION_DEFAULT_LIMIT if limit is None else limit
    validate_threshold(threshold, "threshold")
    validate_limit(limit, "limit", config.RECOMMENDATION_MAX_LIMIT)
    return float(threshold), limit


class CatalogService:
    def __init__(self, vectorizer: Vectorizer, *, session_factory: Callable = open_session):
        self.vectorizer = vectorizer
        self.session_factory = session_factory
        self.owner_locks = KeyedLockRegistry()
        self.product_locks = KeyedLockRegistry()

    # -------------------------------------------------------------------------
    # Owners
    # -------------------------------------------------------------------------

    @service_tool
    def create_owner(
        self,
        name: str,
        domain: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        validate_required_text(name, "name", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(domain, "domain", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(description, "description", config.MAX_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        db = self.session_factory()
        try:
            owner = catalog.create_owner(
                db, self.vectorizer, name, domain=domain, description=description, metadata=metadata
            )
            return {"status": "ok", "owner": catalog.serialize_owner(owner)}
        finally:
            db.close()

    @service_tool
    def get_owner(self, owner_id: str) -> dict:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            return {"status": "ok", "owner": catalog.serialize_owner(catalog.get_owner(db, owner_id))}
        finally:
            db.close()

    @service_tool
    def list_owners(self, limit: int = 50, offset: int = 0) -> dict:
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset, "offset")
        db = self.session_factory()
        try:
            owners = [catalog.serialize_owner(o) for o in catalog.list_owners(db, limit, offset)]
        finally:
            db.close()
        return {"status": "ok", "owners": owners, "count": len(owners)}

    @service_tool
    def update_owner(
        self,
        owner_id: str,
        name: Optional[str] = None,
        domain: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        if name is not None:
            validate_required_text(name, "name", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(domain, "domain", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(description, "description", config.MAX_TEXT_LENGTH)
        validate_metadata(metadata, "metadata")
        with self.owner_locks.hold(owner_id):
            db = self.session_factory()
            try:
                owner = catalog.update_owner(
                    db,
                    self.vectorizer,
                    owner_id,
                    name=name,
                    domain=domain,
                    description=description,
                    metadata=metadata,
                )
                return {"status": "ok", "owner": catalog.serialize_owner(owner)}
            finally:
                db.close()

    @service_tool
    def search_owners(self, query: str, threshold: Optional[float] = None, limit: Optional[int] = None) -> dict:
        threshold, limit = _search_bounds(threshold, limit)
        embedding = self.vectorizer.embed(query)
        db = self.session_factory()
        try:
            owners = [
                {**catalog.serialize_owner(owner), "similarity_score": score}
                for owner, score in catalog.search_owners(db, embedding, threshold, limit)
            ]
        finally:
            db.close()
        return {"status": "ok", "query": query, "owners": owners, "count": len(owners)}

    @service_tool
    def delete_owner(self, owner_id: str) -> dict:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            catalog.delete_owner(db, owner_id)
        finally:
            db.close()
        return {"status": "deleted", "owner_id": owner_id}

    @service_tool
    def list_owner_products(self, owner_id: str, limit: int = 50, offset: int = 0) -> dict:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset, "offset")
        db = self.session_factory()
        try:
            products = [
                catalog.serialize_product(p)
                for p in catalog.list_products_by_owner(db, owner_id, limit, offset)
            ]
        finally:
            db.close()
        return {"status": "ok", "owner_id": owner_id, "products": products, "count": len(products)}

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    @service_tool
    def create_product(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        categories: Optional[Sequence[str]] = None,
        url: Optional[str] = None,
        image_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        _validate_product_fields(title, description, categories, url, image_url, metadata, title_required=True)
        db = self.session_factory()
        try:
            product = catalog.create_product(
                db,
                self.vectorizer,
                owner_id=owner_id,
                title=title,
                description=description or "",
                categories=categories,
                url=url,
                image_url=image_url,
                metadata=metadata,
            )
            logger.info("Product created", extra={"product_id": product.product_id, "owner_id": owner_id})
            return {"status": "ok", "product": catalog.serialize_product(product)}
        finally:
            db.close()

    @service_tool
    def get_product(self, product_id: str) -> dict:
        validate_required_text(product_id, "product_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            return {"status": "ok", "product": catalog.serialize_product(catalog.get_product(db, product_id))}
        finally:
            db.close()

    @service_tool
    def list_products(self, limit: int = 50, offset: int = 0, owner_id: Optional[str] = None) -> dict:
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_offset(offset, "offset")
        validate_optional_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self.session_factory()
        try:
            products = [
                catalog.serialize_product(p)
                for p in catalog.list_products(db, limit, offset, owner_id=owner_id)
            ]
        finally:
            db.close()
        return {"status": "ok", "products": products, "count": len(products)}

    @service_tool
    def search_products(self, query: str, threshold: Optional[float] = None, limit: Optional[int] = None) -> dict:
        threshold, limit = _search_bounds(threshold, limit)
        embedding = self.vectorizer.embed(query)
        db = self.session_factory()
        try:
            products = [
                {
                    **catalog.serialize_product(item.product),
                    "similarity_score": item.score,
                    "owner_info": catalog.serialize_owner(item.owner) if item.owner else None,
                }
                for item in catalog.match_by_embedding(db, embedding, threshold, limit)
            ]
        finally:
            db.close()
        return {"status": "ok", "query": query, "products": products, "count": len(products)}

    @service_tool
    def update_product(
        self,
        product_id: str,
        owner_id: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        categories: Optional[Sequence[str]] = None,
        url: Optional[str] = None,
        image_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        validate_required_text(product_id, "product_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        _validate_product_fields(title, description, categories, url, image_url, metadata, title_required=False)
        with self.product_locks.hold(product_id):
            db = self.session_factory()
            try:
                product = catalog.update_product(
                    db,
                    self.vectorizer,
                    product_id,
                    owner_id=owner_id,
                    title=title,
                    description=description,
                    categories=categories,
                    url=url,
                    image_url=image_url,
                    metadata=metadata,
                )
                return {"status": "ok", "product": catalog.serialize_product(product)}
            finally:
                db.close()

    @service_tool
    def delete_product(self, product_id: str) -> dict:
        validate_required_text(product_id, "product_id", config.MAX_SHORT_TEXT_LENGTH)
        with self.product_locks.hold(product_id):
            db = self.session_factory()
            try:
                catalog.delete_product(db, product_id)
            finally:
                db.close()
        return {"status": "deleted", "product_id": product_id}
