"""Product management endpoints"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models import Product, SyncStatus
from app.models.base import get_db
from app.services.errors import LocalNotFound, LocalWriteConflict
from app.services.product_sync import ProductSyncService

router = APIRouter(prefix="/api/products", tags=["products"])


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    external_ref: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    external_ref: Optional[str] = None


class ProductResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    external_ref: Optional[str] = None
    remote_key: Optional[str] = None
    remote_id: Optional[str] = None
    remote_status: Optional[str] = None
    sync_status: SyncStatus
    last_sync_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TicketResponse(BaseModel):
    key: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    updated_at: Optional[str] = None
    assignee: Optional[str] = None


class ProductDetailResponse(BaseModel):
    product: ProductResponse
    ticket: Optional[TicketResponse] = None
    jira_fetch_status: str
    jira_fetch_error: Optional[str] = None
    jira_error_kind: Optional[str] = None


class DeleteResponse(BaseModel):
    deleted: bool
    jira_transitioned: bool
    product_id: int
    remote_key: Optional[str] = None


def get_sync_service(db: Session = Depends(get_db)) -> ProductSyncService:
    return ProductSyncService(db)


def _not_found(e: LocalNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.post("/", response_model=ProductResponse)
def create_product(product: ProductCreate, service: ProductSyncService = Depends(get_sync_service)):
    """Create a product and its Jira issue"""
    name = product.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Product name must not be empty")
    return service.create_product(name, product.description, product.external_ref)


@router.get("/", response_model=List[ProductResponse])
def list_products(
    include_deleted: bool = False,
    sync_status: Optional[SyncStatus] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List products"""
    query = db.query(Product).order_by(Product.id.desc())
    if not include_deleted:
        query = query.filter(Product.deleted_at.is_(None))
    if sync_status is not None:
        query = query.filter(Product.sync_status == sync_status)
    return query.limit(limit).all()


@router.get("/{product_id}", response_model=ProductDetailResponse)
def get_product(product_id: int, service: ProductSyncService = Depends(get_sync_service)):
    """Get a product together with its live Jira ticket"""
    try:
        return service.get_product_with_ticket(product_id)
    except LocalNotFound as e:
        raise _not_found(e)


@router.patch("/{product_id}", response_model=ProductResponse)
def update_product(
    product_id: int,
    update: ProductUpdate,
    service: ProductSyncService = Depends(get_sync_service),
):
    """Update a product and push displayed fields to Jira"""
    changes: Dict[str, Any] = update.dict(exclude_unset=True)
    if "name" in changes and not (changes["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Product name must not be empty")
    try:
        return service.update_product(product_id, changes)
    except LocalNotFound as e:
        raise _not_found(e)
    except LocalWriteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{product_id}", response_model=DeleteResponse)
def delete_product(product_id: int, service: ProductSyncService = Depends(get_sync_service)):
    """Soft-delete a product and drop its Jira issue"""
    try:
        return service.delete_product(product_id)
    except LocalNotFound as e:
        raise _not_found(e)
    except LocalWriteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{product_id}/sync", response_model=ProductResponse)
def retry_product_sync(product_id: int, service: ProductSyncService = Depends(get_sync_service)):
    """Manually retry syncing a product to Jira"""
    try:
        return service.retry_sync(product_id)
    except LocalNotFound as e:
        raise _not_found(e)
    except LocalWriteConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
