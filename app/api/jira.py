"""Jira webhook endpoint"""
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from app.models.base import get_db
from app.services.inbound import InboundReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jira", tags=["jira"])


@router.post("/webhook")
def jira_webhook(payload: Any = Body(None), db: Session = Depends(get_db)):
    """Receive a Jira issue notification.

    Always acknowledged: Jira retries on non-2xx responses, and a failed
    reconciliation would fail the same way again.
    """
    try:
        result = InboundReconciler(db).reconcile(payload)
        logger.debug(f"Webhook reconciled: {result}")
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to reconcile Jira notification: {e}")
    return {"received": True}
