"""Sync log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from app.models.base import Base
from app.models.product import SyncStatus, utcnow


class SyncLog(Base):
    """Audit trail of sync attempts, one row per recorded outcome"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Product information
    product_id = Column(Integer, nullable=False, index=True)
    remote_key = Column(String, nullable=True)

    # Sync details
    operation = Column(String, nullable=False)  # create, update, delete, retry, inbound
    status = Column(Enum(SyncStatus), nullable=False)
    attempt = Column(Integer, nullable=True)
    message = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)  # Exception class name on failure

    # Timestamp
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(product_id={self.product_id}, operation={self.operation}, status={self.status})>"
