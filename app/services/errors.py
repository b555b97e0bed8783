"""Sync error taxonomy.

Remote failures are raised by the Jira client and the transition resolver,
and caught by the outbound synchronizer, which turns them into a FAILED
sync outcome. Local failures propagate to the HTTP layer.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync errors."""

    retryable = False


class RemoteError(SyncError):
    """A call to Jira failed."""

    def __init__(
        self,
        message: str,
        *,
        remote_key: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.remote_key = remote_key
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Network failure, timeout, rate limit or 5xx. Safe to retry later."""

    retryable = True


class RemoteRejected(RemoteError):
    """Jira refused the payload (4xx validation)."""


class RemoteNotFound(RemoteError):
    """The referenced Jira issue does not exist (404)."""


class RemoteUnauthorized(RemoteError):
    """Credentials are missing or lack permission (401/403)."""


class TransitionUnavailable(RemoteError):
    """No live workflow transition satisfies the requested outcome."""

    def __init__(self, message: str, *, remote_key: Optional[str] = None, available=None):
        super().__init__(message, remote_key=remote_key)
        self.available = list(available or [])


class LocalNotFound(SyncError):
    """The referenced product does not exist locally (or is soft-deleted)."""

    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class LocalWriteConflict(SyncError):
    """Optimistic local write kept conflicting with concurrent writers."""


class RemoteKeyConflict(SyncError):
    """A Jira issue key is already linked to another local product."""

    def __init__(self, message: str, *, remote_key: Optional[str] = None, holder_id=None):
        super().__init__(message)
        self.remote_key = remote_key
        self.holder_id = holder_id
