"""Inbound Jira webhook reconciliation.

Notifications are normalized once into an ``InboundNotification`` and then
diffed against the local product. Only fields that actually differ are
written, so duplicate deliveries are no-ops. Nothing here talks to Jira.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Product, SyncStatus
from app.models.product import utcnow
from app.services import adf
from app.services.jira_client import parse_back_reference, strip_back_reference
from app.services.sync_state import SyncStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundNotification:
    """Shape-independent view of a Jira change notification.

    ``changes`` maps product attributes to the values Jira reported; fields
    absent from the payload are absent here too. ``local_id`` is the product
    named by the description's ``Product ID:`` line, when there is one.
    """

    remote_key: str
    remote_id: Optional[str] = None
    event: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    local_id: Optional[int] = None


@dataclass
class ReconcileResult:
    action: str  # ignored, created, linked, updated, unchanged, deleted
    product_id: Optional[int] = None
    remote_key: Optional[str] = None
    changed_fields: List[str] = field(default_factory=list)


def _status_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("name")
    return str(value) if value else None


def _description_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, str)):
        return adf.decode(value)
    return str(value)


def normalize_notification(payload: Any) -> Optional[InboundNotification]:
    """Resolve a webhook body (native Jira or flat) into an InboundNotification."""
    if not isinstance(payload, dict):
        return None

    issue = payload.get("issue")
    if isinstance(issue, dict):
        remote_key = issue.get("key")
        remote_id = issue.get("id")
        fields = issue.get("fields")
    else:
        remote_key = payload.get("issueKey") or payload.get("key")
        remote_id = payload.get("issueId") or payload.get("id")
        fields = payload.get("fields") if isinstance(payload.get("fields"), dict) else payload
    if not isinstance(fields, dict):
        fields = {}

    if not remote_key:
        return None

    changes: Dict[str, Any] = {}
    local_id = None
    if fields.get("summary"):
        changes["name"] = str(fields["summary"])
    if "status" in fields:
        status = _status_name(fields["status"])
        if status:
            changes["remote_status"] = status
    if "description" in fields:
        text = _description_text(fields["description"])
        local_id = parse_back_reference(text)
        changes["description"] = strip_back_reference(text)

    return InboundNotification(
        remote_key=str(remote_key),
        remote_id=str(remote_id) if remote_id is not None else None,
        event=payload.get("webhookEvent"),
        changes=changes,
        local_id=local_id,
    )


def diff_product(product: Product, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Return only the reported fields that differ from the product."""
    staged = {}
    for attr, value in changes.items():
        current = getattr(product, attr)
        if attr == "description":
            current = current or ""
        if current != value:
            staged[attr] = value
    return staged


class InboundReconciler:
    """Merges Jira notifications into local products"""

    def __init__(self, db: Session):
        self.db = db
        self.state = SyncStateMachine(db)

    def _find(self, remote_key: str) -> Optional[Product]:
        return self.db.query(Product).filter(Product.remote_key == remote_key).first()

    def reconcile(self, payload: Any) -> ReconcileResult:
        notification = normalize_notification(payload)
        if notification is None:
            logger.warning("Ignoring Jira notification without an issue key")
            return ReconcileResult(action="ignored")

        product = self._find(notification.remote_key)
        if product is None and notification.local_id is not None:
            # Jira can report a new issue before create_product stores its key.
            linked = self._link_owner(notification)
            if linked is not None:
                return linked
            product = self._find(notification.remote_key)

        if product is None:
            created = self._backfill(notification)
            if created is not None:
                return created
            # Lost a race with a concurrent back-fill of the same key.
            product = self._find(notification.remote_key)
            if product is None:
                return ReconcileResult(action="ignored", remote_key=notification.remote_key)

        return self._apply(product.id, notification)

    def _link_owner(self, notification: InboundNotification) -> Optional[ReconcileResult]:
        """Attach the issue to the unlinked product its back-reference names."""
        owner = self.db.query(Product).filter(Product.id == notification.local_id).first()
        if owner is None or owner.is_linked:
            return None
        if owner.is_deleted:
            logger.info(
                f"Ignoring Jira notification for {notification.remote_key}: "
                f"product {owner.id} is deleted"
            )
            return ReconcileResult(
                action="deleted", product_id=owner.id, remote_key=notification.remote_key
            )

        def _merge(product: Product) -> Optional[Dict[str, Any]]:
            if product.is_linked or product.is_deleted:
                return None
            staged = diff_product(product, notification.changes)
            staged["remote_key"] = notification.remote_key
            if notification.remote_id is not None:
                staged["remote_id"] = notification.remote_id
            self.state.apply_inbound(product, staged)
            return staged

        try:
            _, staged = self.state.commit_local(owner.id, _merge, include_deleted=True)
        except IntegrityError:
            # The key was claimed by another product meanwhile.
            self.db.rollback()
            return None
        if staged is None:
            return None

        logger.info(
            f"Linked product {owner.id} to Jira issue {notification.remote_key} "
            f"from its back-reference"
        )
        return ReconcileResult(
            action="linked",
            product_id=owner.id,
            remote_key=notification.remote_key,
            changed_fields=sorted(staged),
        )

    def _backfill(self, notification: InboundNotification) -> Optional[ReconcileResult]:
        changes = notification.changes
        product = Product(
            name=changes.get("name") or notification.remote_key,
            description=changes.get("description"),
            remote_key=notification.remote_key,
            remote_id=notification.remote_id,
            remote_status=changes.get("remote_status"),
            sync_status=SyncStatus.OK,
            last_sync_at=utcnow(),
        )
        try:
            self.db.add(product)
            self.db.flush()
            self.state.add_log(
                product,
                "inbound",
                SyncStatus.OK,
                message=f"Back-filled from Jira issue {notification.remote_key}",
            )
            self.db.commit()
        except IntegrityError:
            # Another worker created the product for this key first.
            self.db.rollback()
            return None

        logger.info(f"Back-filled product {product.id} from Jira issue {notification.remote_key}")
        return ReconcileResult(
            action="created",
            product_id=product.id,
            remote_key=notification.remote_key,
            changed_fields=sorted(k for k, v in changes.items() if v is not None),
        )

    def _apply(self, product_id: int, notification: InboundNotification) -> ReconcileResult:
        def _merge(product: Product) -> Optional[Dict[str, Any]]:
            if product.is_deleted:
                return None
            staged = diff_product(product, notification.changes)
            if staged:
                self.state.apply_inbound(product, staged)
            return staged

        _, staged = self.state.commit_local(product_id, _merge, include_deleted=True)

        if staged is None:
            logger.info(
                f"Ignoring Jira notification for {notification.remote_key}: "
                f"product {product_id} is deleted"
            )
            return ReconcileResult(
                action="deleted", product_id=product_id, remote_key=notification.remote_key
            )
        if not staged:
            logger.debug(f"Jira notification for {notification.remote_key} changed nothing")
            return ReconcileResult(
                action="unchanged", product_id=product_id, remote_key=notification.remote_key
            )

        logger.info(
            f"Reconciled product {product_id} from {notification.remote_key}: "
            f"{', '.join(sorted(staged))}"
        )
        return ReconcileResult(
            action="updated",
            product_id=product_id,
            remote_key=notification.remote_key,
            changed_fields=sorted(staged),
        )
