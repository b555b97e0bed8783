import logging
import unittest
from datetime import datetime

from sqlalchemy import create_engine, update
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

    values = {"name": "Widget", "description": "desc"}
    values.update(kwargs)
    product = Product(**values)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


class SyncStateMachineTests(unittest.TestCase):
    def setUp(self):
        from app.services.sync_state import SyncStateMachine

        self.db = _make_session()
        self.state = SyncStateMachine(self.db)

    def tearDown(self):
        self.db.close()

    def test_new_product_starts_pending_without_timestamp(self):
        from app.models import SyncStatus

        product = _add_product(self.db)

        self.assertEqual(product.sync_status, SyncStatus.PENDING)
        self.assertIsNone(product.last_sync_at)
        self.assertEqual(product.sync_attempt, 0)

    def test_begin_attempt_hands_out_increasing_markers(self):
        product = _add_product(self.db)

        self.assertEqual(self.state.begin_attempt(product), 1)
        self.assertEqual(self.state.begin_attempt(product), 2)
        self.db.commit()
        self.assertEqual(self.state.load(product.id).sync_attempts_started, 2)

    def test_record_success_writes_status_timestamp_changes_and_log(self):
        from app.models import SyncLog, SyncStatus

        product = _add_product(self.db)
        _, attempt = self.state.commit_local(product.id, self.state.begin_attempt)

        applied = self.state.record_success(
            product.id, attempt, "create", changes={"remote_key": "PROJ-1", "remote_id": "1"}
        )

        self.assertTrue(applied)
        product = self.state.load(product.id)
        self.assertEqual(product.sync_status, SyncStatus.OK)
        self.assertEqual(product.sync_attempt, attempt)
        self.assertEqual(product.remote_key, "PROJ-1")
        self.assertIsNotNone(product.last_sync_at)

        log = self.db.query(SyncLog).one()
        self.assertEqual(log.operation, "create")
        self.assertEqual(log.status, SyncStatus.OK)
        self.assertEqual(log.remote_key, "PROJ-1")
        self.assertEqual(log.attempt, attempt)

    def test_record_failure_keeps_error_kind(self):
        from app.models import SyncLog, SyncStatus
        from app.services.errors import RemoteUnavailable

        product = _add_product(self.db, remote_key="PROJ-1")
        _, attempt = self.state.commit_local(product.id, self.state.begin_attempt)

        self.state.record_failure(
            product.id, attempt, "update", RemoteUnavailable("down"), remote_key="PROJ-1"
        )

        self.assertEqual(self.state.load(product.id).sync_status, SyncStatus.FAILED)
        log = self.db.query(SyncLog).one()
        self.assertEqual(log.error_kind, "RemoteUnavailable")
        self.assertEqual(log.message, "down")

    def test_stale_outcome_does_not_override_newer_attempt(self):
        from app.models import SyncStatus
        from app.services.errors import RemoteUnavailable

        product = _add_product(self.db)
        _, first = self.state.commit_local(product.id, self.state.begin_attempt)
        _, second = self.state.commit_local(product.id, self.state.begin_attempt)

        self.assertTrue(
            self.state.record_failure(product.id, second, "update", RemoteUnavailable("down"))
        )
        applied = self.state.record_success(
            product.id, first, "create", changes={"remote_key": "PROJ-7", "remote_id": "7"}
        )

        self.assertFalse(applied)
        product = self.state.load(product.id)
        self.assertEqual(product.sync_status, SyncStatus.FAILED)
        self.assertEqual(product.sync_attempt, second)
        # The stale attempt's link is still kept.
        self.assertEqual(product.remote_key, "PROJ-7")

    def test_last_sync_at_never_moves_backwards(self):
        future = datetime(2999, 1, 1)
        product = _add_product(self.db, last_sync_at=future)
        _, attempt = self.state.commit_local(product.id, self.state.begin_attempt)

        self.state.record_success(product.id, attempt, "update")

        self.assertEqual(self.state.load(product.id).last_sync_at, future)

    def test_soft_deleted_product_only_accepts_delete_outcome(self):
        from app.models import SyncStatus
        from app.models.product import utcnow

        product = _add_product(self.db, remote_key="PROJ-1")
        _, attempt = self.state.commit_local(product.id, self.state.begin_attempt)
        self.state.commit_local(product.id, lambda p: setattr(p, "deleted_at", utcnow()))

        self.assertFalse(self.state.record_success(product.id, attempt, "update"))
        self.assertEqual(
            self.state.load(product.id, include_deleted=True).sync_status, SyncStatus.PENDING
        )

        self.assertTrue(self.state.record_success(product.id, attempt, "delete"))
        self.assertEqual(
            self.state.load(product.id, include_deleted=True).sync_status, SyncStatus.OK
        )

    def test_commit_local_retries_after_version_conflict(self):
        from app.models import Product

        product = _add_product(self.db)
        calls = []

        def _mutate(p):
            calls.append(p.version)
            if len(calls) == 1:
                # Another writer bumps the version between our read and our write.
                self.db.execute(
                    update(Product)
                    .where(Product.id == p.id)
                    .values(version=Product.version + 1)
                    .execution_options(synchronize_session=False)
                )
            p.name = "Renamed"

        saved, _ = self.state.commit_local(product.id, _mutate)

        self.assertEqual(len(calls), 2)
        self.assertEqual(saved.name, "Renamed")
        self.assertEqual(self.state.load(product.id).name, "Renamed")

    def test_commit_local_gives_up_after_repeated_conflicts(self):
        from app.models import Product
        from app.services.errors import LocalWriteConflict

        product = _add_product(self.db)

        def _always_conflicts(p):
            self.db.execute(
                update(Product)
                .where(Product.id == p.id)
                .values(version=Product.version + 1)
                .execution_options(synchronize_session=False)
            )
            p.name = "Never"

        with self.assertRaises(LocalWriteConflict):
            self.state.commit_local(product.id, _always_conflicts)
        self.assertEqual(self.state.load(product.id).name, "Widget")

    def test_load_raises_for_missing_or_deleted(self):
        from app.models.product import utcnow
        from app.services.errors import LocalNotFound

        with self.assertRaises(LocalNotFound):
            self.state.load(999)

        product = _add_product(self.db, deleted_at=utcnow())
        with self.assertRaises(LocalNotFound):
            self.state.load(product.id)
        self.assertEqual(self.state.load(product.id, include_deleted=True).id, product.id)


if __name__ == "__main__":
    unittest.main()
