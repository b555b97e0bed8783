import logging
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logging.disable(logging.CRITICAL)


def _make_session():
    from app.models import Base

    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _add_product(db, **kwargs):
    from app.models import Product

    values = {"name": "Widget", "description": "desc", "remote_key": "PROJ-1", "remote_id": "1"}
    values.update(kwargs)
    product = Product(**values)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def _native(key="PROJ-1", **fields):
    return {
        "webhookEvent": "jira:issue_updated",
        "issue": {"id": "1", "key": key, "fields": fields},
    }


class NormalizeNotificationTests(unittest.TestCase):
    def test_native_payload(self):
        from app.services import adf
        from app.services.inbound import normalize_notification

        note = normalize_notification(
            _native(
                summary="Widget v2",
                status={"name": "Done"},
                description=adf.encode("Better\n\nProduct ID: 7"),
            )
        )

        self.assertEqual(note.remote_key, "PROJ-1")
        self.assertEqual(note.remote_id, "1")
        self.assertEqual(note.event, "jira:issue_updated")
        self.assertEqual(
            note.changes,
            {"name": "Widget v2", "remote_status": "Done", "description": "Better"},
        )
        self.assertEqual(note.local_id, 7)

    def test_flat_payload(self):
        from app.services.inbound import normalize_notification

        note = normalize_notification({"issueKey": "PROJ-3", "status": "In Progress"})
        self.assertEqual(note.remote_key, "PROJ-3")
        self.assertEqual(note.changes, {"remote_status": "In Progress"})
        self.assertIsNone(note.local_id)

        note = normalize_notification({"key": "PROJ-4", "fields": {"summary": "S"}})
        self.assertEqual(note.changes, {"name": "S"})

    def test_null_description_clears_text(self):
        from app.services.inbound import normalize_notification

        note = normalize_notification(_native(description=None))
        self.assertEqual(note.changes, {"description": ""})

    def test_absent_fields_are_not_reported(self):
        from app.services.inbound import normalize_notification

        self.assertEqual(normalize_notification(_native()).changes, {})

    def test_payloads_without_key_are_rejected(self):
        from app.services.inbound import normalize_notification

        for payload in [None, [], "PROJ-1", {}, {"issue": {"fields": {"summary": "x"}}}]:
            with self.subTest(payload=payload):
                self.assertIsNone(normalize_notification(payload))


class InboundReconcilerTests(unittest.TestCase):
    def setUp(self):
        from app.services.inbound import InboundReconciler

        self.db = _make_session()
        self.reconciler = InboundReconciler(self.db)

    def tearDown(self):
        self.db.close()

    def _reload(self, product_id):
        from app.models import Product

        return self.db.query(Product).populate_existing().filter(Product.id == product_id).one()

    def test_only_changed_status_is_written(self):
        from app.models import SyncStatus

        product = _add_product(self.db, remote_status="Open")
        version = product.version

        result = self.reconciler.reconcile(
            _native(summary="Widget", status={"name": "Done"}, description="desc")
        )

        self.assertEqual(result.action, "updated")
        self.assertEqual(result.changed_fields, ["remote_status"])
        product = self._reload(product.id)
        self.assertEqual(product.remote_status, "Done")
        self.assertEqual(product.name, "Widget")
        self.assertEqual(product.description, "desc")
        self.assertEqual(product.sync_status, SyncStatus.OK)
        self.assertIsNotNone(product.last_sync_at)
        self.assertEqual(product.version, version + 1)

    def test_duplicate_delivery_is_a_no_op(self):
        from app.models import SyncLog

        product = _add_product(self.db, remote_status="Open")
        payload = _native(status={"name": "Done"})

        self.assertEqual(self.reconciler.reconcile(payload).action, "updated")
        version = self._reload(product.id).version

        second = self.reconciler.reconcile(payload)

        self.assertEqual(second.action, "unchanged")
        self.assertEqual(second.changed_fields, [])
        self.assertEqual(self._reload(product.id).version, version)
        self.assertEqual(self.db.query(SyncLog).count(), 1)

    def test_inbound_change_clears_failed_status(self):
        from app.models import SyncStatus

        product = _add_product(self.db, sync_status=SyncStatus.FAILED)

        self.reconciler.reconcile(_native(summary="Renamed in Jira"))

        product = self._reload(product.id)
        self.assertEqual(product.name, "Renamed in Jira")
        self.assertEqual(product.sync_status, SyncStatus.OK)

    def test_description_back_reference_is_not_stored(self):
        from app.services import adf

        product = _add_product(self.db)

        result = self.reconciler.reconcile(
            _native(description=adf.encode(f"desc\n\nProduct ID: {product.id}"))
        )

        self.assertEqual(result.action, "unchanged")
        self.assertEqual(self._reload(product.id).description, "desc")

    def test_unknown_issue_is_back_filled(self):
        from app.models import Product, SyncLog, SyncStatus

        result = self.reconciler.reconcile(
            _native(key="PROJ-9", summary="From Jira", status={"name": "To Do"})
        )

        self.assertEqual(result.action, "created")
        product = self.db.query(Product).filter(Product.remote_key == "PROJ-9").one()
        self.assertEqual(result.product_id, product.id)
        self.assertEqual(product.name, "From Jira")
        self.assertEqual(product.remote_status, "To Do")
        self.assertEqual(product.remote_id, "1")
        self.assertEqual(product.sync_status, SyncStatus.OK)
        self.assertEqual(self.db.query(SyncLog).one().operation, "inbound")

    def test_unknown_key_with_back_reference_links_the_owner(self):
        from app.models import Product, SyncStatus

        owner = _add_product(self.db, remote_key=None, remote_id=None)

        result = self.reconciler.reconcile(
            _native(
                key="PROJ-5",
                summary="Widget",
                status={"name": "To Do"},
                description=f"desc\n\nProduct ID: {owner.id}",
            )
        )

        self.assertEqual(result.action, "linked")
        self.assertEqual(result.product_id, owner.id)
        self.assertEqual(result.changed_fields, ["remote_id", "remote_key", "remote_status"])
        self.assertEqual(self.db.query(Product).count(), 1)
        owner = self._reload(owner.id)
        self.assertEqual(owner.remote_key, "PROJ-5")
        self.assertEqual(owner.remote_status, "To Do")
        self.assertEqual(owner.sync_status, SyncStatus.OK)

    def test_back_reference_to_linked_product_still_back_fills(self):
        from app.models import Product

        owner = _add_product(self.db, remote_key="PROJ-1")

        result = self.reconciler.reconcile(
            _native(key="PROJ-2", summary="Copy", description=f"Product ID: {owner.id}")
        )

        self.assertEqual(result.action, "created")
        self.assertEqual(self._reload(owner.id).remote_key, "PROJ-1")
        self.assertEqual(self.db.query(Product).count(), 2)

    def test_back_reference_to_deleted_unlinked_product_is_dropped(self):
        from app.models import Product
        from app.models.product import utcnow

        owner = _add_product(self.db, remote_key=None, remote_id=None, deleted_at=utcnow())

        result = self.reconciler.reconcile(
            _native(key="PROJ-5", description=f"desc\n\nProduct ID: {owner.id}")
        )

        self.assertEqual(result.action, "deleted")
        self.assertIsNone(self._reload(owner.id).remote_key)
        self.assertEqual(self.db.query(Product).count(), 1)


    def test_deleted_product_is_left_alone(self):
        from app.models.product import utcnow

        product = _add_product(self.db, deleted_at=utcnow(), remote_status="Open")
        version = product.version

        result = self.reconciler.reconcile(_native(status={"name": "Reopened"}))

        self.assertEqual(result.action, "deleted")
        product = self._reload(product.id)
        self.assertEqual(product.remote_status, "Open")
        self.assertEqual(product.version, version)

    def test_payload_without_key_is_ignored(self):
        from app.models import Product

        self.assertEqual(self.reconciler.reconcile({"hello": "world"}).action, "ignored")
        self.assertEqual(self.db.query(Product).count(), 0)


if __name__ == "__main__":
    unittest.main()
