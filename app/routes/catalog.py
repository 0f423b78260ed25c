"""
Owner and product endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.deps import get_pipeline
from app.errors import call_service
from app.schemas import (
    OwnerCreateRequest,
    OwnerUpdateRequest,
    ProductCreateRequest,
    ProductUpdateRequest,
    TextSearchRequest,
)
from core.services.pipeline import Pipeline


router = APIRouter(tags=["catalog"])


@router.post("/owners")
async def create_owner(body: OwnerCreateRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.catalog.create_owner,
        body.name,
        domain=body.domain,
        description=body.description,
        metadata=body.metadata,
        success_status=201,
    )


@router.get("/owners")
async def list_owners(limit: int = 50, offset: int = 0, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.catalog.list_owners, limit=limit, offset=offset)


@router.post("/owners/search")
async def search_owners(body: TextSearchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.catalog.search_owners, body.query, threshold=body.threshold, limit=body.limit
    )


@router.get("/owners/{owner_id}")
async def get_owner(owner_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.catalog.get_owner, owner_id)


@router.put("/owners/{owner_id}")
async def update_owner(owner_id: str, body: OwnerUpdateRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.catalog.update_owner,
        owner_id,
        name=body.name,
        domain=body.domain,
        description=body.description,
        metadata=body.metadata,
    )


@router.delete("/owners/{owner_id}")
async def delete_owner(owner_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.catalog.delete_owner, owner_id)


@router.get("/owners/{owner_id}/products")
async def owner_products(
    owner_id: str,
    limit: int = 50,
    offset: int = 0,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(pipeline.catalog.list_owner_products, owner_id, limit=limit, offset=offset)


@router.post("/products")
async def create_product(body: ProductCreateRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.catalog.create_product,
        body.owner_id,
        body.title,
        description=body.description,
        categories=body.categories,
        url=body.url,
        image_url=body.image_url,
        metadata=body.metadata,
        success_status=201,
    )


@router.get("/products")
async def list_products(
    limit: int = 50,
    offset: int = 0,
    owner_id: Optional[str] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(pipeline.catalog.list_products, limit=limit, offset=offset, owner_id=owner_id)


@router.post("/products/search")
async def search_products(body: TextSearchRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(
        pipeline.catalog.search_products, body.query, threshold=body.threshold, limit=body.limit
    )


@router.get("/products/{product_id}")
async def get_product(product_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.catalog.get_product, product_id)


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductUpdateRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await call_service(
        pipeline.catalog.update_product,
        product_id,
        owner_id=body.owner_id,
        title=body.title,
        description=body.description,
        categories=body.categories,
        url=body.url,
        image_url=body.image_url,
        metadata=body.metadata,
    )


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    return await call_service(pipeline.catalog.delete_product, product_id)
