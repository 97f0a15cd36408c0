from typing import List, Optional

from fastapi import APIRouter, Depends

from src.api.deps import get_catalog
from src.api.errors import http_error
from src.models.schemas import (
    Event,
    EventCreate,
    EventSummary,
    EventUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
)
from src.services.catalog_service import CatalogService
from src.services.errors import OrderError

router = APIRouter()


@router.post("/products", response_model=Product, status_code=201)
async def create_product(product_data: ProductCreate, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.create_product(product_data)
    except OrderError as e:
        raise http_error(e)


@router.get("/products", response_model=List[Product])
async def list_merchant_products(merchant_id: str, catalog: CatalogService = Depends(get_catalog)):
    """All products of a merchant, active or not"""
    return catalog.list_merchant_products(merchant_id)


@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.get_product(product_id)
    except OrderError as e:
        raise http_error(e)


@router.put("/products/{product_id}", response_model=Product)
async def update_product(
    product_id: str,
    product_data: ProductUpdate,
    catalog: CatalogService = Depends(get_catalog),
):
    try:
        return catalog.update_product(product_id, product_data.model_dump(exclude_unset=True))
    except OrderError as e:
        raise http_error(e)


@router.delete("/products/{product_id}", status_code=204)
async def delete_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        catalog.delete_product(product_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/events", response_model=Event, status_code=201)
async def create_event(event_data: EventCreate, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.create_event(event_data)
    except OrderError as e:
        raise http_error(e)


@router.get("/events", response_model=List[Event])
async def list_events(
    active_only: bool = False,
    include_archived: bool = False,
    merchant_id: Optional[str] = None,
    catalog: CatalogService = Depends(get_catalog),
):
    """Events by start date; archived ones only when asked for"""
    return catalog.list_events(active_only, include_archived, merchant_id)


@router.get("/events/{event_id}", response_model=Event)
async def get_event(event_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.get_event(event_id)
    except OrderError as e:
        raise http_error(e)


@router.put("/events/{event_id}", response_model=Event)
async def update_event(event_id: str, event_data: EventUpdate, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.update_event(event_id, event_data.model_dump(exclude_unset=True))
    except OrderError as e:
        raise http_error(e)


@router.delete("/events/{event_id}", status_code=204)
async def delete_event(event_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        catalog.delete_event(event_id)
    except OrderError as e:
        raise http_error(e)


@router.get("/events/{event_id}/products", response_model=List[Product])
async def list_sellable_products(
    event_id: str,
    merchant_id: Optional[str] = None,
    catalog: CatalogService = Depends(get_catalog),
):
    """Products a fan can buy at this event"""
    try:
        return catalog.list_sellable_products(event_id, merchant_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/events/{event_id}/products/{product_id}", response_model=Event)
async def link_product(event_id: str, product_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.link_product(product_id, event_id)
    except OrderError as e:
        raise http_error(e)


@router.delete("/events/{event_id}/products/{product_id}", response_model=Event)
async def unlink_product(event_id: str, product_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.unlink_product(product_id, event_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/events/{event_id}/archive", response_model=Event)
async def archive_event(event_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.archive_event(event_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/events/{event_id}/unarchive", response_model=Event)
async def unarchive_event(event_id: str, catalog: CatalogService = Depends(get_catalog)):
    try:
        return catalog.unarchive_event(event_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/merchants/{merchant_id}/events/archive-expired")
async def archive_expired_events(merchant_id: str, catalog: CatalogService = Depends(get_catalog)):
    """Archive the merchant's events that have already ended"""
    return {"archived": catalog.archive_expired_events(merchant_id)}


@router.get("/merchants/{merchant_id}/events/summary", response_model=EventSummary)
async def event_summary(merchant_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.event_counts(merchant_id)
