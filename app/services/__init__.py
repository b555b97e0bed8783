"""Services"""

from app.services.inbound import InboundReconciler
from app.services.jira_client import JiraClient, JiraConfig
from app.services.product_sync import ProductSyncService
from app.services.transition_resolver import TransitionConfig, TransitionResolver

__all__ = [
    "InboundReconciler",
    "JiraClient",
    "JiraConfig",
    "ProductSyncService",
    "TransitionConfig",
    "TransitionResolver",
]
