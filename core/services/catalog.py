"""
Product catalog: owners, products and similarity candidate retrieval.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from sqlalchemy import text

import core.config as config
from core.db import vector_search_enabled
from core.errors import DimensionMismatch, NotFound, ValidationIssue
from core.models import Owner, Product
from core.services.vectorizer import Vectorizer, cosine_similarities

logger = config.logger

PRODUCT_EMBEDDING_FIELDS = ("title", "description", "categories", "metadata")


@dataclass(frozen=True)
class ScoredProduct:
    product: Product
    owner: Optional[Owner]
    score: float


# =============================================================================
# Owners
# =============================================================================

OWNER_EMBEDDING_FIELDS = ("name", "description", "metadata")


def owner_embedding_text(name: str, description: Optional[str], metadata: Optional[dict]) -> str:
    """Owner metadata JSON with the company title and description folded in."""
    document = dict(metadata or {})
    document.update({"company_title": name, "company_description": description or ""})
    return json.dumps(document, sort_keys=True, ensure_ascii=False, default=str)


def create_owner(
    db,
    vectorizer: Vectorizer,
    name: str,
    domain: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Owner:
    owner = Owner(
        name=name,
        domain=domain,
        description=description,
        metadata_=metadata or {},
        embedding=vectorizer.embed(owner_embedding_text(name, description, metadata)),
    )
    db.add(owner)
    db.commit()
    db.refresh(owner)
    return owner


def get_owner(db, owner_id: str) -> Owner:
    owner = db.query(Owner).filter(Owner.owner_id == owner_id).first()
    if owner is None:
        raise NotFound("owner", owner_id)
    return owner


def list_owners(db, limit: int = 50, offset: int = 0) -> list[Owner]:
    return db.query(Owner).order_by(Owner.id.asc()).offset(offset).limit(limit).all()


def update_owner(db, vectorizer: Vectorizer, owner_id: str, **changes) -> Owner:
    """Apply field changes; the embedding is regenerated when name, description or metadata changed."""
    owner = get_owner(db, owner_id)
    current = {
        "name": owner.name,
        "domain": owner.domain,
        "description": owner.description,
        "metadata": dict(owner.metadata_ or {}),
    }
    updated = dict(current)
    for key, value in changes.items():
        if value is None:
            continue
        if key not in updated:
            raise ValidationIssue(f"unknown owner field: {key}", field=key, error_type="invalid_field")
        updated[key] = value

    if owner.embedding is None or any(updated[field] != current[field] for field in OWNER_EMBEDDING_FIELDS):
        owner.embedding = vectorizer.embed(
            owner_embedding_text(updated["name"], updated["description"], updated["metadata"])
        )

    owner.name = updated["name"]
    owner.domain = updated["domain"]
    owner.description = updated["description"]
    owner.metadata_ = updated["metadata"]
    db.commit()
    db.refresh(owner)
    return owner


def search_owners(db, embedding: Sequence[float], threshold: float, limit: int) -> list[tuple[Owner, float]]:
    return rank_by_embedding(db, Owner, embedding, threshold, limit)


def delete_owner(db, owner_id: str) -> None:
    owner = get_owner(db, owner_id)
    has_products = db.query(Product.id).filter(Product.owner_id == owner_id).first()
    if has_products:
        raise ValidationIssue(
            "owner still has products; delete them first",
            field="owner_id",
            error_type="has_dependents",
        )
    db.delete(owner)
    db.commit()


def serialize_owner(owner: Owner) -> dict:
    return {
        "owner_id": owner.owner_id,
        "name": owner.name,
        "domain": owner.domain,
        "description": owner.description,
        "metadata": owner.metadata_ or {},
        "has_embedding": owner.embedding is not None,
        "created_at": owner.created_at.isoformat() if owner.created_at else None,
        "updated_at": owner.updated_at.isoformat() if owner.updated_at else None,
    }


# =============================================================================
# Products
# =============================================================================

def unique_categories(categories: Optional[Sequence[str]]) -> list[str]:
    seen: list[str] = []
    for category in categories or []:
        value = category.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def product_embedding_text(
    title: str,
    description: str,
    categories: Sequence[str],
    metadata: Optional[dict],
) -> str:
    document = dict(metadata or {})
    document.update(
        {
            "title": title,
            "description": description,
            "categories": ", ".join(categories),
        }
    )
    return json.dumps(document, sort_keys=True, ensure_ascii=False, default=str)


def create_product(
    db,
    vectorizer: Vectorizer,
    *,
    owner_id: str,
    title: str,
    description: str = "",
    categories: Optional[Sequence[str]] = None,
    url: Optional[str] = None,
    image_url: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Product:
    get_owner(db, owner_id)
    category_list = unique_categories(categories)
    embedding = vectorizer.embed(
        product_embedding_text(title, description, category_list, metadata)
    )
    product = Product(
        owner_id=owner_id,
        title=title,
        description=description,
        categories=category_list,
        url=url,
        image_url=image_url,
        metadata_=metadata or {},
        embedding=embedding,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def get_product(db, product_id: str) -> Product:
    product = db.query(Product).filter(Product.product_id == product_id).first()
    if product is None:
        raise NotFound("product", product_id)
    return product


def list_products_by_owner(db, owner_id: str, limit: int = 50, offset: int = 0) -> list[Product]:
    get_owner(db, owner_id)
    return (
        db.query(Product)
        .filter(Product.owner_id == owner_id)
        .order_by(Product.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_products(db, limit: int = 50, offset: int = 0, owner_id: Optional[str] = None) -> list[Product]:
    query = db.query(Product)
    if owner_id:
        query = query.filter(Product.owner_id == owner_id)
    return query.order_by(Product.id.asc()).offset(offset).limit(limit).all()


def update_product(db, vectorizer: Vectorizer, product_id: str, **changes) -> Product:
    """Apply field changes; the embedding is regenerated when any embedded field changed."""
    product = get_product(db, product_id)
    current = {
        "title": product.title,
        "description": product.description,
        "categories": list(product.categories or []),
        "metadata": dict(product.metadata_ or {}),
        "url": product.url,
        "image_url": product.image_url,
    }
    updated = dict(current)
    for key, value in changes.items():
        if value is None or key == "owner_id":
            continue
        if key not in updated:
            raise ValidationIssue(f"unknown product field: {key}", field=key, error_type="invalid_field")
        updated[key] = unique_categories(value) if key == "categories" else value

    if "owner_id" in changes and changes["owner_id"] is not None:
        get_owner(db, changes["owner_id"])
        product.owner_id = changes["owner_id"]

    if any(updated[field] != current[field] for field in PRODUCT_EMBEDDING_FIELDS):
        product.embedding = vectorizer.embed(
            product_embedding_text(
                updated["title"],
                updated["description"],
                updated["categories"],
                updated["metadata"],
            )
        )

    product.title = updated["title"]
    product.description = updated["description"]
    product.categories = updated["categories"]
    product.metadata_ = updated["metadata"]
    product.url = updated["url"]
    product.image_url = updated["image_url"]
    db.commit()
    db.refresh(product)
    return product


def delete_product(db, product_id: str) -> None:
    product = get_product(db, product_id)
    db.delete(product)
    db.commit()


def serialize_product(product: Product) -> dict:
    return {
        "product_id": product.product_id,
        "owner_id": product.owner_id,
        "title": product.title,
        "description": product.description,
        "categories": list(product.categories or []),
        "url": product.url,
        "image_url": product.image_url,
        "metadata": product.metadata_ or {},
        "has_embedding": product.embedding is not None,
        "created_at": product.created_at.isoformat() if product.created_at else None,
        "updated_at": product.updated_at.isoformat() if product.updated_at else None,
    }


# =============================================================================
# Similarity candidates
# =============================================================================

def match_products(
    db,
    user_embedding: Sequence[float],
    thread_embedding: Sequence[float],
    user_weight: float,
    thread_weight: float,
    threshold: float,
    limit: int,
    exclude_product_id: Optional[str] = None,
) -> list[ScoredProduct]:
    """
    Products whose blended score clears `threshold` (inclusive), best first.

    score = user_weight * cos(user, product) + thread_weight * cos(thread, product).
    Weights are expected to be normalized already. Ties keep catalog insertion
    order.
    """
    if len(user_embedding) != len(thread_embedding):
        raise DimensionMismatch(len(user_embedding), len(thread_embedding))
    if vector_search_enabled():
        return _match_products_pgvector(
            db,
            user_embedding,
            thread_embedding,
            user_weight,
            thread_weight,
            threshold,
            limit,
            exclude_product_id,
        )
    return _match_products_in_process(
        db,
        user_embedding,
        thread_embedding,
        user_weight,
        thread_weight,
        threshold,
        limit,
        exclude_product_id,
    )


def match_by_embedding(
    db,
    embedding: Sequence[float],
    threshold: float,
    limit: int,
    exclude_product_id: Optional[str] = None,
) -> list[ScoredProduct]:
    """Single-signal variant: plain cosine against one query vector."""
    return match_products(db, embedding, embedding, 1.0, 0.0, threshold, limit, exclude_product_id)


def _match_products_pgvector(
    db,
    user_embedding,
    thread_embedding,
    user_weight,
    thread_weight,
    threshold,
    limit,
    exclude_product_id,
) -> list[ScoredProduct]:
    sql = text(
        """
        SELECT scored.id, scored.similarity
        FROM (
            SELECT
                p.id,
                :user_weight * (1 - (p.embedding <=> cast(:user_embedding as vector)))
                + :thread_weight * (1 - (p.embedding <=> cast(:thread_embedding as vector)))
                    AS similarity
            FROM products p
            WHERE p.embedding IS NOT NULL
            AND (cast(:exclude_product_id as varchar) IS NULL OR p.product_id != :exclude_product_id)
        ) scored
        WHERE scored.similarity >= :threshold
        ORDER BY scored.similarity DESC, scored.id ASC
        LIMIT :limit
        """
    )
    rows = db.execute(
        sql,
        {
            "user_embedding": str(list(user_embedding)),
            "thread_embedding": str(list(thread_embedding)),
            "user_weight": user_weight,
            "thread_weight": thread_weight,
            "exclude_product_id": exclude_product_id,
            "threshold": threshold,
            "limit": limit,
        },
    ).fetchall()
    if not rows:
        return []
    ids = [row.id for row in rows]
    products = {p.id: p for p in db.query(Product).filter(Product.id.in_(ids)).all()}
    owners = _owners_for(db, products.values())
    return [
        ScoredProduct(
            product=products[row.id],
            owner=owners.get(products[row.id].owner_id),
            score=float(row.similarity),
        )
        for row in rows
        if row.id in products
    ]


def _match_products_in_process(
    db,
    user_embedding,
    thread_embedding,
    user_weight,
    thread_weight,
    threshold,
    limit,
    exclude_product_id,
) -> list[ScoredProduct]:
    query = db.query(Product).filter(Product.embedding.isnot(None))
    if exclude_product_id:
        query = query.filter(Product.product_id != exclude_product_id)
    candidates = query.order_by(Product.id.asc()).limit(config.CANDIDATE_SCAN_LIMIT).all()
    if not candidates:
        return []

    dimension = len(user_embedding)
    for product in candidates:
        if len(product.embedding) != dimension:
            raise DimensionMismatch(
                dimension,
                len(product.embedding),
                f"product {product.product_id} embedding has dimension {len(product.embedding)}",
            )
    matrix = np.asarray([product.embedding for product in candidates], dtype=np.float64)
    scores = (
        user_weight * cosine_similarities(user_embedding, matrix)
        + thread_weight * cosine_similarities(thread_embedding, matrix)
    )

    passing = [index for index in range(len(candidates)) if scores[index] >= threshold]
    # sorted() is stable, so equal scores keep ascending id order
    passing.sort(key=lambda index: -scores[index])
    top = [candidates[index] for index in passing[:limit]]
    owners = _owners_for(db, top)
    return [
        ScoredProduct(product=product, owner=owners.get(product.owner_id), score=float(scores[index]))
        for product, index in zip(top, passing[:limit])
    ]


def rank_by_embedding(
    db,
    model,
    embedding: Sequence[float],
    threshold: float,
    limit: int,
    exclude: Optional[tuple[str, str]] = None,
) -> list[tuple[object, float]]:
    """
    Rows of `model` whose cosine against `embedding` clears `threshold`, best first.

    `model` must carry `id` and `embedding` columns. `exclude` is a
    (column name, value) pair whose matching rows are skipped. Ties keep
    insertion order.
    """
    if vector_search_enabled():
        return _rank_pgvector(db, model, embedding, threshold, limit, exclude)

    query = db.query(model).filter(model.embedding.isnot(None))
    if exclude is not None:
        query = query.filter(getattr(model, exclude[0]) != exclude[1])
    rows = query.order_by(model.id.asc()).limit(config.CANDIDATE_SCAN_LIMIT).all()
    # JSON columns store a cleared embedding as a JSON null, which IS NOT NULL lets through
    candidates = [row for row in rows if row.embedding is not None]
    if not candidates:
        return []

    dimension = len(embedding)
    for row in candidates:
        if len(row.embedding) != dimension:
            raise DimensionMismatch(dimension, len(row.embedding))
    matrix = np.asarray([row.embedding for row in candidates], dtype=np.float64)
    scores = cosine_similarities(embedding, matrix)
    passing = [index for index in range(len(candidates)) if scores[index] >= threshold]
    passing.sort(key=lambda index: -scores[index])
    return [(candidates[index], float(scores[index])) for index in passing[:limit]]


def _rank_pgvector(db, model, embedding, threshold, limit, exclude) -> list[tuple[object, float]]:
    exclusion = f"AND t.{exclude[0]} != :exclude_value" if exclude is not None else ""
    sql = text(
        f"""
        SELECT scored.id, scored.similarity
        FROM (
            SELECT t.id, 1 - (t.embedding <=> cast(:embedding as vector)) AS similarity
            FROM {model.__tablename__} t
            WHERE t.embedding IS NOT NULL
            {exclusion}
        ) scored
        WHERE scored.similarity >= :threshold
        ORDER BY scored.similarity DESC, scored.id ASC
        LIMIT :limit
        """
    )
    params = {"embedding": str(list(embedding)), "threshold": threshold, "limit": limit}
    if exclude is not None:
        params["exclude_value"] = exclude[1]
    rows = db.execute(sql, params).fetchall()
    if not rows:
        return []
    by_id = {row.id: row for row in db.query(model).filter(model.id.in_([r.id for r in rows])).all()}
    return [(by_id[r.id], float(r.similarity)) for r in rows if r.id in by_id]


def _owners_for(db, products) -> dict[str, Owner]:
    owner_ids = {product.owner_id for product in products}
    if not owner_ids:
        return {}
    return {
        owner.owner_id: owner
        for owner in db.query(Owner).filter(Owner.owner_id.in_(owner_ids)).all()
    }


def recommendation_payload(item: ScoredProduct) -> dict:
    product = item.product
    metadata = dict(product.metadata_ or {})
    metadata.update(
        {
            "title": product.title,
            "description": product.description,
            "categories": list(product.categories or []),
            "url": product.url,
            "image_url": product.image_url,
        }
    )
    return {
        "product_id": product.product_id,
        "similarity_score": item.score,
        "metadata": metadata,
        "owner_info": {
            "company_name": item.owner.name if item.owner else None,
            "domain": item.owner.domain if item.owner else None,
        },
    }
