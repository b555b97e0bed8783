"""Jira REST API client wrapper"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from app.config import Settings, settings
from app.services import adf
from app.services.errors import (
    RemoteError,
    RemoteNotFound,
    RemoteRejected,
    RemoteUnauthorized,
    RemoteUnavailable,
)

logger = logging.getLogger(__name__)

_BACK_REFERENCE_RE = re.compile(r"(?:^|\n)\s*Product ID:\s*(\S+)\s*$")


def add_back_reference(description: Optional[str], local_id: Any) -> str:
    """Append the 'Product ID: <id>' line Jira issues carry back to us."""
    desc = (description or "").rstrip()
    reference = f"Product ID: {local_id}"
    if desc.endswith(reference):
        return desc
    return f"{desc}\n\n{reference}" if desc else reference


def strip_back_reference(text: Optional[str]) -> str:
    """Remove a trailing back-reference line added by add_back_reference()."""
    return _BACK_REFERENCE_RE.sub("", text or "").strip()


def parse_back_reference(text: Optional[str]) -> Optional[int]:
    """Return the local product id named by a trailing back-reference, if any."""
    m = _BACK_REFERENCE_RE.search(text or "")
    if not m:
        return None
    try:
        return int(m.group(1))
    except ValueError:
        return None


@dataclass(frozen=True)
class JiraConfig:
    """Immutable Jira connection settings"""

    base_url: str
    email: str
    api_token: str
    project_key: str = ""
    issue_type: str = "Task"
    api_version: str = "3"
    timeout_seconds: float = 10.0
    max_attempts: int = 3

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "JiraConfig":
        return cls(
            base_url=s.jira_base_url,
            email=s.jira_email,
            api_token=s.jira_api_token,
            project_key=s.jira_project_key,
            issue_type=s.jira_issue_type,
            api_version=str(s.jira_api_version),
            timeout_seconds=s.jira_timeout_seconds,
            max_attempts=s.jira_max_attempts,
        )

    @property
    def uses_adf(self) -> bool:
        """API v3 expects rich text fields as ADF documents."""
        return str(self.api_version) == "3"


@dataclass(frozen=True)
class RequiredField:
    """A field Jira requires when executing a transition"""

    field_id: str
    name: str
    allowed_values: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class Transition:
    """A workflow transition currently available on an issue"""

    id: str
    name: str
    destination_status: str
    required_fields: Tuple[RequiredField, ...] = ()


@dataclass(frozen=True)
class RemoteIssue:
    """Snapshot of a Jira issue"""

    key: str
    status: Optional[str]
    summary: Optional[str]
    description: str
    updated_at: Optional[str]
    assignee: Optional[str] = None


class JiraClient:
    """Wrapper for the Jira operations the sync core depends on"""

    def __init__(self, config: JiraConfig, session: Optional[requests.Session] = None):
        """Initialize Jira client"""
        self.config = config
        self.api_url = f"{config.base_url.rstrip('/')}/rest/api/{config.api_version}"
        self._session = session or requests.Session()
        self._session.auth = (config.email, config.api_token)
        self._session.headers.update(
            {"Accept": "application/json", "Content-Type": "application/json"}
        )

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Retry predicate for transient Jira failures."""
        return isinstance(exc, RemoteUnavailable)

    def _with_retries(self, fn, *, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        max_attempts = max(1, int(self.config.max_attempts))
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    @staticmethod
    def _issue_path(remote_key: str, suffix: str = "") -> str:
        return f"issue/{quote(str(remote_key), safe='')}{suffix}"

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Extract Jira's error messages from a failed response."""
        try:
            body = response.json()
        except ValueError:
            return (response.text or "")[:500]
        if not isinstance(body, dict):
            return str(body)[:500]
        messages = list(body.get("errorMessages") or [])
        errors = body.get("errors") or {}
        if isinstance(errors, dict):
            messages.extend(f"{field}: {msg}" for field, msg in errors.items())
        return "; ".join(str(m) for m in messages) or (response.text or "")[:500]

    def _handle_response(
        self, response: requests.Response, path: str, remote_key: Optional[str]
    ) -> Dict[str, Any]:
        """Map a Jira response to its JSON body or a typed error."""
        if response.ok:
            if not response.text:
                return {}
            try:
                return response.json()
            except ValueError:
                return {}

        status = response.status_code
        detail = self._error_detail(response)
        message = f"Jira {status} on {path}: {detail}"

        if status in (401, 403):
            raise RemoteUnauthorized(message, remote_key=remote_key, status_code=status)
        if status == 404:
            raise RemoteNotFound(message, remote_key=remote_key, status_code=status)
        if status == 429 or status >= 500:
            raise RemoteUnavailable(message, remote_key=remote_key, status_code=status)
        if 400 <= status < 500:
            raise RemoteRejected(message, remote_key=remote_key, status_code=status)
        raise RemoteUnavailable(message, remote_key=remote_key, status_code=status)

    def request(
        self, method: str, path: str, *, remote_key: Optional[str] = None, **kwargs
    ) -> Dict[str, Any]:
        """Make an authenticated request against the Jira REST API."""
        url = f"{self.api_url}/{path}"
        try:
            response = self._session.request(
                method, url, timeout=self.config.timeout_seconds, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise RemoteUnavailable(f"Jira request timed out: {e}", remote_key=remote_key) from e
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"Jira connection failed: {e}", remote_key=remote_key) from e
        return self._handle_response(response, path, remote_key)

    def _format_description(self, text: Optional[str]) -> Any:
        if self.config.uses_adf:
            return adf.encode(text or "")
        return text or ""

    def create_issue(
        self, summary: str, description: Optional[str], local_id: Any
    ) -> Tuple[str, Optional[str]]:
        """Create an issue and return (remote_key, remote_id)"""
        fields = {
            "project": {"key": self.config.project_key},
            "issuetype": {"name": self.config.issue_type},
            "summary": summary,
            "description": self._format_description(add_back_reference(description, local_id)),
        }
        try:
            # Creation is not idempotent; never retried here.
            data = self.request("POST", "issue", json={"fields": fields})
        except RemoteError as e:
            logger.error(f"Failed to create Jira issue for product {local_id}: {e}")
            raise

        remote_key = data.get("key")
        if not remote_key:
            raise RemoteError(f"Jira create response for product {local_id} carried no issue key")
        remote_id = data.get("id")
        logger.info(f"Created Jira issue {remote_key} for product {local_id}")
        return remote_key, str(remote_id) if remote_id is not None else None

    def update_issue(
        self,
        remote_key: str,
        summary: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Update summary and/or description of an existing issue"""
        fields: Dict[str, Any] = {}
        if summary is not None:
            fields["summary"] = summary
        if description is not None:
            fields["description"] = self._format_description(description)
        if not fields:
            logger.debug(f"Nothing to update on Jira issue {remote_key}")
            return

        try:
            self._with_retries(
                lambda: self.request(
                    "PUT", self._issue_path(remote_key), remote_key=remote_key, json={"fields": fields}
                )
            )
        except RemoteError as e:
            logger.error(f"Failed to update Jira issue {remote_key}: {e}")
            raise
        logger.info(f"Updated Jira issue {remote_key} ({', '.join(sorted(fields))})")

    def get_issue(self, remote_key: str) -> RemoteIssue:
        """Get a specific issue by key"""
        try:
            data = self._with_retries(
                lambda: self.request("GET", self._issue_path(remote_key), remote_key=remote_key)
            )
        except RemoteError as e:
            logger.error(f"Failed to get Jira issue {remote_key}: {e}")
            raise

        fields = data.get("fields") or {}
        status = fields.get("status")
        assignee = fields.get("assignee")
        return RemoteIssue(
            key=data.get("key") or remote_key,
            status=status.get("name") if isinstance(status, dict) else status,
            summary=fields.get("summary"),
            description=adf.decode(fields.get("description")),
            updated_at=fields.get("updated"),
            assignee=assignee.get("displayName") if isinstance(assignee, dict) else None,
        )

    def list_transitions(self, remote_key: str) -> List[Transition]:
        """List transitions currently available on an issue, with their field metadata"""
        try:
            data = self._with_retries(
                lambda: self.request(
                    "GET",
                    self._issue_path(remote_key, "/transitions"),
                    remote_key=remote_key,
                    params={"expand": "transitions.fields"},
                )
            )
        except RemoteError as e:
            logger.error(f"Failed to list transitions for Jira issue {remote_key}: {e}")
            raise

        transitions = []
        for raw in data.get("transitions") or []:
            destination = raw.get("to") or {}
            required = []
            for field_id, meta in (raw.get("fields") or {}).items():
                if not isinstance(meta, dict) or not meta.get("required"):
                    continue
                required.append(
                    RequiredField(
                        field_id=field_id,
                        name=meta.get("name") or field_id,
                        allowed_values=tuple(meta.get("allowedValues") or ()),
                    )
                )
            transitions.append(
                Transition(
                    id=str(raw.get("id")),
                    name=raw.get("name") or "",
                    destination_status=destination.get("name") or "",
                    required_fields=tuple(required),
                )
            )
        return transitions

    def apply_transition(
        self,
        remote_key: str,
        transition_id: Any,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Execute a workflow transition on an issue"""
        payload: Dict[str, Any] = {"transition": {"id": str(transition_id)}}
        if extra_fields:
            payload["fields"] = extra_fields
        try:
            self.request(
                "POST",
                self._issue_path(remote_key, "/transitions"),
                remote_key=remote_key,
                json=payload,
            )
        except RemoteError as e:
            logger.error(f"Failed to transition Jira issue {remote_key} ({transition_id}): {e}")
            raise
        logger.info(f"Transitioned Jira issue {remote_key} with transition {transition_id}")
