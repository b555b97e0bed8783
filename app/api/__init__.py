"""API routes"""

from app.api import jira, products, sync

__all__ = ["products", "jira", "sync"]
