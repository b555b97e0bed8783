"""Product model"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text

from app.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with stored timestamps)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncStatus(str, enum.Enum):
    """Outcome of the most recent outbound sync attempt"""
    PENDING = "PENDING"
    OK = "OK"
    FAILED = "FAILED"


class Product(Base):
    """Locally owned record mirrored to a Jira issue"""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    external_ref = Column(String, nullable=True)  # Caller correlation id, never synced

    # Linked Jira issue
    remote_key = Column(String, nullable=True, unique=True, index=True)  # e.g. "PROJ-1"
    remote_id = Column(String, nullable=True)
    remote_status = Column(String, nullable=True)  # Advisory mirror of the Jira status

    # Sync bookkeeping
    sync_status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.PENDING)
    last_sync_at = Column(DateTime, nullable=True)
    # Marker handed out to each outbound attempt, and the marker whose outcome
    # sync_status currently reflects.
    sync_attempts_started = Column(Integer, nullable=False, default=0)
    sync_attempt = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True, index=True)
    # Set while a delete of a linked product is waiting on Jira.
    delete_requested_at = Column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_linked(self) -> bool:
        return bool(self.remote_key)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<Product(id={self.id}, remote_key={self.remote_key}, sync_status={self.sync_status})>"
