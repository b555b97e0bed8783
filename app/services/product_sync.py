"""Outbound product synchronization service"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.models import Product, SyncStatus
from app.models.product import utcnow
from app.services.errors import LocalWriteConflict, RemoteError
from app.services.jira_client import JiraClient, JiraConfig
from app.services.sync_state import SyncStateMachine
from app.services.transition_resolver import TransitionConfig, TransitionResolver

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "external_ref")
DISPLAYED_FIELDS = ("name", "description")  # Mirrored to Jira summary/description


class ProductSyncService:
    """Keeps local products and their Jira issues in step.

    Local writes always land first; Jira failures only ever flip the
    product's sync status to FAILED.
    """

    def __init__(
        self,
        db: Session,
        client: Optional[JiraClient] = None,
        transition_config: Optional[TransitionConfig] = None,
    ):
        self.db = db
        self._client = client
        self.transition_config = transition_config or TransitionConfig.from_settings()
        self.state = SyncStateMachine(db)

    @property
    def client(self) -> JiraClient:
        """Jira client, built from settings on first use"""
        if self._client is None:
            self._client = JiraClient(JiraConfig.from_settings())
        return self._client

    # -------------------------------------------------------------------------
    # Create / link
    # -------------------------------------------------------------------------

    def create_product(
        self,
        name: str,
        description: Optional[str] = None,
        external_ref: Optional[str] = None,
    ) -> Product:
        """Persist a product, then try to open its Jira issue"""
        product = Product(
            name=name,
            description=description,
            external_ref=external_ref,
            sync_status=SyncStatus.PENDING,
        )
        attempt = self.state.begin_attempt(product)
        self.db.add(product)
        self.db.commit()
        self.db.refresh(product)
        logger.info(f"Created product {product.id} ({product.name})")

        self._link(product.id, product.name, product.description, attempt, operation="create")
        return self.state.load(product.id, include_deleted=True)

    def _link(
        self,
        product_id: int,
        name: str,
        description: Optional[str],
        attempt: int,
        *,
        operation: str,
    ) -> bool:
        """Create the Jira issue for an unlinked product and record the outcome."""
        try:
            remote_key, remote_id = self.client.create_issue(name, description, product_id)
        except RemoteError as e:
            logger.error(
                f"Jira {operation} failed for product {product_id} (attempt {attempt}): {e}"
            )
            self.state.record_failure(product_id, attempt, operation, e)
            return False

        self.state.record_success(
            product_id,
            attempt,
            operation,
            changes={"remote_key": remote_key, "remote_id": remote_id},
            message=f"Linked Jira issue {remote_key}",
        )
        return True

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def update_product(self, product_id: int, changes: Dict[str, Any]) -> Product:
        """Apply local changes, then push the displayed ones to Jira"""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported product fields: {', '.join(sorted(unknown))}")

        def _apply(product: Product) -> Dict[str, Any]:
            changed = {
                field: value
                for field, value in changes.items()
                if getattr(product, field) != value
            }
            for field, value in changed.items():
                setattr(product, field, value)
            displayed = [f for f in DISPLAYED_FIELDS if f in changed]
            needs_push = bool(displayed) or not product.is_linked
            attempt = self.state.begin_attempt(product) if needs_push else None
            return {
                "changed": changed,
                "displayed": displayed,
                "attempt": attempt,
                "remote_key": product.remote_key,
                "name": product.name,
                "description": product.description,
            }

        product, plan = self.state.commit_local(product_id, _apply)
        if plan["changed"]:
            logger.info(f"Updated product {product_id}: {', '.join(sorted(plan['changed']))}")

        attempt = plan["attempt"]
        if attempt is None:
            return product

        remote_key = plan["remote_key"]
        if not remote_key:
            logger.info(f"Product {product_id} has no Jira issue yet; linking during update")
            self._link(product_id, plan["name"], plan["description"], attempt, operation="update")
            return self.state.load(product_id, include_deleted=True)

        self._push(
            product_id,
            remote_key,
            attempt,
            operation="update",
            summary=plan["name"] if "name" in plan["displayed"] else None,
            description=(plan["description"] or "") if "description" in plan["displayed"] else None,
        )
        return self.state.load(product_id, include_deleted=True)

    def _push(
        self,
        product_id: int,
        remote_key: str,
        attempt: int,
        *,
        operation: str,
        summary: Optional[str],
        description: Optional[str],
    ) -> bool:
        try:
            self.client.update_issue(remote_key, summary=summary, description=description)
        except RemoteError as e:
            logger.error(
                f"Jira {operation} failed for product {product_id} / {remote_key} "
                f"(attempt {attempt}): {e}"
            )
            self.state.record_failure(product_id, attempt, operation, e, remote_key=remote_key)
            return False

        self.state.record_success(
            product_id,
            attempt,
            operation,
            remote_key=remote_key,
            message=f"Pushed changes to {remote_key}",
        )
        return True

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete_product(self, product_id: int) -> Dict[str, Any]:
        """Soft-delete a product and drop its Jira issue (best effort)

        Raises LocalWriteConflict while another delete of the same linked
        product is still waiting on Jira.
        """

        def _claim(product: Product) -> Dict[str, Any]:
            if not product.is_linked:
                product.deleted_at = utcnow()
                return {"attempt": None, "remote_key": None}
            if self._delete_in_flight(product):
                raise LocalWriteConflict(f"Product {product.id} is already being deleted")
            product.delete_requested_at = utcnow()
            return {"attempt": self.state.begin_attempt(product), "remote_key": product.remote_key}

        _, plan = self.state.commit_local(product_id, _claim)
        remote_key = plan["remote_key"]
        attempt = plan["attempt"]

        if attempt is None:
            logger.info(f"Soft-deleted product {product_id} (no Jira issue linked)")
            return {
                "deleted": True,
                "jira_transitioned": False,
                "product_id": product_id,
                "remote_key": None,
            }

        transitioned = False
        try:
            request = TransitionResolver(self.client).resolve(remote_key, self.transition_config)
            self.client.apply_transition(remote_key, request.transition_id, request.fields)
        except RemoteError as e:
            logger.error(
                f"Jira delete transition failed for product {product_id} / {remote_key} "
                f"(attempt {attempt}); manual cleanup needed: {e}"
            )
            self.state.record_failure(
                product_id,
                attempt,
                "delete",
                e,
                remote_key=remote_key,
                changes={"deleted_at": utcnow()},
            )
        else:
            transitioned = True
            self.state.record_success(
                product_id,
                attempt,
                "delete",
                remote_key=remote_key,
                changes={
                    "deleted_at": utcnow(),
                    "remote_status": request.destination_status or None,
                },
                message=f"Transitioned {remote_key} via {request.transition_id} ({request.name})",
            )

        logger.info(
            f"Soft-deleted product {product_id}; Jira {remote_key} "
            f"{'transitioned' if transitioned else 'NOT transitioned'}"
        )
        return {
            "deleted": True,
            "jira_transitioned": transitioned,
            "product_id": product_id,
            "remote_key": remote_key,
        }

    def _delete_in_flight(self, product: Product) -> bool:
        if product.delete_requested_at is None:
            return False
        return product.delete_requested_at > self._stale_before()

    @staticmethod
    def _stale_before():
        return utcnow() - timedelta(minutes=settings.stale_attempt_minutes)

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    def retry_sync(self, product_id: int) -> Product:
        """Push the product's current state to Jira again (manual or scheduled retry)"""

        def _claim(product: Product) -> Dict[str, Any]:
            return {
                "attempt": self.state.begin_attempt(product),
                "remote_key": product.remote_key,
                "name": product.name,
                "description": product.description,
            }

        _, plan = self.state.commit_local(product_id, _claim)
        if plan["remote_key"]:
            self._push(
                product_id,
                plan["remote_key"],
                plan["attempt"],
                operation="retry",
                summary=plan["name"],
                description=plan["description"] or "",
            )
        else:
            self._link(product_id, plan["name"], plan["description"], plan["attempt"], operation="retry")
        return self.state.load(product_id, include_deleted=True)

    def retry_failed(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Retry every live product whose last sync attempt failed or never finished

        A PENDING product counts as unfinished once it has an attempt without
        a recorded outcome and has not been touched for stale_attempt_minutes.
        """
        limit = limit or settings.retry_failed_batch_size
        stalled = and_(
            Product.sync_status == SyncStatus.PENDING,
            Product.sync_attempts_started > Product.sync_attempt,
            Product.updated_at < self._stale_before(),
        )
        ids: List[int] = [
            row.id
            for row in self.db.query(Product.id)
            .filter(
                or_(Product.sync_status == SyncStatus.FAILED, stalled),
                Product.deleted_at.is_(None),
            )
            .order_by(Product.last_sync_at.asc())
            .limit(limit)
            .all()
        ]

        stats = {"attempted": 0, "succeeded": 0, "failed": 0}
        for product_id in ids:
            stats["attempted"] += 1
            try:
                product = self.retry_sync(product_id)
            except Exception as e:
                logger.error(f"Retry of product {product_id} failed locally: {e}")
                self.db.rollback()
                stats["failed"] += 1
                continue
            if product.sync_status == SyncStatus.OK:
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1

        if ids:
            logger.info(f"Retried failed products: {stats}")
        return stats

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get_product_with_ticket(self, product_id: int) -> Dict[str, Any]:
        """Return the product together with its live Jira ticket"""
        product = self.state.load(product_id, include_deleted=True)
        result: Dict[str, Any] = {"product": product, "ticket": None}

        if not product.is_linked:
            result["jira_fetch_status"] = "NO_KEY"
            return result

        try:
            issue = self.client.get_issue(product.remote_key)
        except RemoteError as e:
            logger.warning(f"Could not fetch Jira issue {product.remote_key} for product {product_id}: {e}")
            result["jira_fetch_status"] = "FAILED"
            result["jira_fetch_error"] = str(e)
            result["jira_error_kind"] = type(e).__name__
            return result

        result["jira_fetch_status"] = "OK"
        result["ticket"] = {
            "key": issue.key,
            "status": issue.status,
            "summary": issue.summary,
            "description": issue.description,
            "updated_at": issue.updated_at,
            "assignee": issue.assignee,
        }
        return result
