"""Per-product sync bookkeeping.

Every outbound attempt gets a marker from ``Product.sync_attempts_started``.
Its outcome is written with a guarded UPDATE that only succeeds while no
later attempt has recorded its own outcome, so ``sync_status`` always
reflects the newest attempt even when attempts finish out of order. Plain
local field writes use the mapper's version counter and are retried on
conflict.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.models import Product, SyncLog, SyncStatus
from app.models.product import utcnow
from app.services.errors import LocalNotFound, LocalWriteConflict, RemoteKeyConflict

logger = logging.getLogger(__name__)


class SyncStateMachine:
    """Records sync outcomes and local writes for products"""

    def __init__(self, db: Session, *, max_write_attempts: int = 3):
        self.db = db
        self.max_write_attempts = max_write_attempts

    @staticmethod
    def begin_attempt(product: Product) -> int:
        """Allocate the next attempt marker; committed with the caller's local write."""
        product.sync_attempts_started = (product.sync_attempts_started or 0) + 1
        return product.sync_attempts_started

    def load(self, product_id: int, *, include_deleted: bool = False) -> Product:
        product = (
            self.db.query(Product)
            .populate_existing()
            .filter(Product.id == product_id)
            .first()
        )
        if product is None or (product.is_deleted and not include_deleted):
            raise LocalNotFound(product_id)
        return product

    def commit_local(
        self,
        product_id: int,
        mutate: Callable[[Product], Any],
        *,
        include_deleted: bool = False,
    ) -> Tuple[Product, Any]:
        """Load, mutate and commit a product, retrying on version conflicts.

        ``mutate`` runs again against a freshly loaded row after a conflict,
        so it must derive its changes from the row it is given.
        """
        for write_attempt in range(1, self.max_write_attempts + 1):
            product = self.load(product_id, include_deleted=include_deleted)
            result = mutate(product)
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent write on product {product_id}; "
                    f"retrying local write ({write_attempt}/{self.max_write_attempts})"
                )
                continue
            return product, result
        raise LocalWriteConflict(
            f"Product {product_id} kept changing underneath "
            f"{self.max_write_attempts} write attempts"
        )

    def record_success(
        self,
        product_id: int,
        attempt: int,
        operation: str,
        *,
        remote_key: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> bool:
        return self._record(
            product_id,
            attempt,
            operation,
            SyncStatus.OK,
            remote_key=remote_key,
            changes=changes,
            message=message,
        )

    def record_failure(
        self,
        product_id: int,
        attempt: int,
        operation: str,
        error: Exception,
        *,
        remote_key: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self._record(
            product_id,
            attempt,
            operation,
            SyncStatus.FAILED,
            remote_key=remote_key,
            changes=changes,
            message=str(error),
            error_kind=type(error).__name__,
        )

    def _record(
        self,
        product_id: int,
        attempt: int,
        operation: str,
        status: SyncStatus,
        *,
        remote_key: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> bool:
        """Write an attempt's outcome and its field changes in one transaction.

        Returns False when a newer attempt already owns sync_status; the
        field changes are applied regardless. A remote key that another
        product already holds turns the outcome into a FAILED one without
        the link.
        """
        now = utcnow()
        changes = dict(changes or {})

        target = [Product.id == product_id]
        if operation != "delete":
            # Soft-deleted products only accept the outcome of their deletion.
            target.append(Product.deleted_at.is_(None))

        values = dict(changes)
        values.update(
            sync_status=status,
            sync_attempt=attempt,
            last_sync_at=case((Product.last_sync_at > now, Product.last_sync_at), else_=now),
            version=Product.version + 1,
            updated_at=now,
        )

        try:
            result = self.db.execute(
                update(Product)
                .where(*target, Product.sync_attempt < attempt)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

            if not applied:
                stale = None
                if changes:
                    stale = self.db.execute(
                        update(Product)
                        .where(*target)
                        .values(**changes, version=Product.version + 1, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                if stale is not None and stale.rowcount == 0:
                    logger.warning(
                        f"Product {product_id} is gone; dropped {operation} outcome "
                        f"(attempt {attempt})"
                    )
                else:
                    logger.info(
                        f"{operation} attempt {attempt} on product {product_id} finished after "
                        f"a newer attempt; keeping the newer sync status"
                    )

            self.db.add(
                SyncLog(
                    product_id=product_id,
                    remote_key=changes.get("remote_key") or remote_key,
                    operation=operation,
                    status=status,
                    attempt=attempt,
                    message=message if applied else f"[superseded] {message or ''}".strip(),
                    error_kind=error_kind,
                )
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if "remote_key" not in changes:
                raise
            return self._record_key_conflict(product_id, attempt, operation, changes)
        except Exception:
            self.db.rollback()
            raise
        return applied

    def _record_key_conflict(
        self,
        product_id: int,
        attempt: int,
        operation: str,
        changes: Dict[str, Any],
    ) -> bool:
        """Record FAILED when the new remote key already belongs to another product."""
        remote_key = changes["remote_key"]
        holder_id = (
            self.db.query(Product.id)
            .filter(Product.remote_key == remote_key, Product.id != product_id)
            .scalar()
        )
        error = RemoteKeyConflict(
            f"Jira issue {remote_key} is already linked to product {holder_id}",
            remote_key=remote_key,
            holder_id=holder_id,
        )
        logger.error(f"Cannot link product {product_id}: {error}")
        remaining = {k: v for k, v in changes.items() if k not in ("remote_key", "remote_id")}
        return self._record(
            product_id,
            attempt,
            operation,
            SyncStatus.FAILED,
            remote_key=remote_key,
            changes=remaining,
            message=str(error),
            error_kind=type(error).__name__,
        )

    def apply_inbound(self, product: Product, staged: Dict[str, Any]) -> None:
        """Stage inbound field changes plus OK status on the session's product.

        The caller commits; this is one write together with the field changes.
        """
        now = utcnow()
        for field, value in staged.items():
            setattr(product, field, value)
        product.sync_status = SyncStatus.OK
        product.last_sync_at = max(product.last_sync_at, now) if product.last_sync_at else now
        self.add_log(
            product,
            "inbound",
            SyncStatus.OK,
            message=f"Applied {', '.join(sorted(staged))} from Jira",
        )

    def add_log(
        self,
        product: Product,
        operation: str,
        status: SyncStatus,
        *,
        message: Optional[str] = None,
    ) -> None:
        if product.id is None:
            self.db.flush()
        self.db.add(
            SyncLog(
                product_id=product.id,
                remote_key=product.remote_key,
                operation=operation,
                status=status,
                message=message,
            )
        )
