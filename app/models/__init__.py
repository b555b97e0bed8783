"""Database models"""

from app.models.base import Base
from app.models.product import Product, SyncStatus
from app.models.sync_log import SyncLog

__all__ = [
    "Base",
    "Product",
    "SyncStatus",
    "SyncLog",
]
