"""Background scheduler for retrying failed syncs"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.models.base import SessionLocal
from app.services.product_sync import ProductSyncService

logger = logging.getLogger(__name__)

RETRY_JOB_ID = "retry_failed_products"


class SyncScheduler:
    """Scheduler for periodic retries of FAILED and stalled PENDING products"""

    def __init__(self):
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_retries(settings.retry_failed_interval_minutes)

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_retries(self, interval_minutes: int):
        """(Re)schedule the retry job; a non-positive interval disables it"""
        if self.scheduler.get_job(RETRY_JOB_ID) is not None:
            self.scheduler.remove_job(RETRY_JOB_ID)

        if interval_minutes <= 0:
            logger.info("Automatic retry of failed syncs is disabled")
            return

        self.scheduler.add_job(
            func=self._retry_failed_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=RETRY_JOB_ID,
            replace_existing=True,
        )
        logger.info(f"Scheduled retry of failed syncs every {interval_minutes} minutes")

    def _retry_failed_job(self):
        """Job function retrying failed and stalled products"""
        db = SessionLocal()
        try:
            result = ProductSyncService(db).retry_failed(settings.retry_failed_batch_size)
            logger.info(f"Scheduled retry completed: {result}")
        except Exception as e:
            logger.error(f"Scheduled retry failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
