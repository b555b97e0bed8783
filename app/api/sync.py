"""Sync management endpoints"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime, timedelta

from app.models.base import get_db
from app.models import Product, SyncLog, SyncStatus
from app.models.product import utcnow
from app.services.product_sync import ProductSyncService

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncLogResponse(BaseModel):
    id: int
    product_id: int
    remote_key: Optional[str] = None
    operation: str
    status: SyncStatus
    attempt: Optional[int] = None
    message: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    product_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """List sync logs"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if product_id:
        query = query.filter(SyncLog.product_id == product_id)
    return query.limit(limit).all()


@router.get("/stats")
def get_sync_stats(db: Session = Depends(get_db)):
    """Get sync statistics"""
    live = db.query(Product).filter(Product.deleted_at.is_(None))
    by_status = {
        status.value: live.filter(Product.sync_status == status).count() for status in SyncStatus
    }

    # Recent sync activity (last 24 hours)
    last_24h = utcnow() - timedelta(hours=24)
    recent = db.query(SyncLog).filter(SyncLog.created_at >= last_24h)
    return {
        "products": live.count(),
        "unlinked_products": live.filter(Product.remote_key.is_(None)).count(),
        "sync_status": by_status,
        "recent_attempts": recent.count(),
        "recent_failures": recent.filter(SyncLog.status == SyncStatus.FAILED).count(),
    }


@router.post("/retry-failed")
def retry_failed(limit: Optional[int] = None, db: Session = Depends(get_db)):
    """Retry every product whose last sync attempt failed"""
    return ProductSyncService(db).retry_failed(limit)
