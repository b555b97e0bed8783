"""Resolve a logical outcome ("drop" a ticket) into a live Jira transition.

Available transitions depend on the issue's current workflow state, so the
list is fetched fresh for every resolution and never cached.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.config import Settings, settings
from app.services.errors import TransitionUnavailable
from app.services.jira_client import RequiredField, Transition

logger = logging.getLogger(__name__)

DROP_KEYWORDS = ("drop", "cancel", "close")


@dataclass(frozen=True)
class TransitionConfig:
    """How to pick the transition for an outcome"""

    transition_id: Optional[str] = None
    status_name: Optional[str] = None
    keywords: Tuple[str, ...] = DROP_KEYWORDS

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "TransitionConfig":
        return cls(
            transition_id=s.jira_drop_transition_id or None,
            status_name=s.jira_drop_status_name or None,
        )


@dataclass(frozen=True)
class TransitionRequest:
    """A transition ready to be executed"""

    transition_id: str
    name: str
    destination_status: str
    fields: Dict[str, Any] = field(default_factory=dict)


def _describe(transitions: Iterable[Transition]) -> str:
    listed = [f"{t.id} ({t.name} -> {t.destination_status})" for t in transitions]
    return ", ".join(listed) if listed else "none"


def _label(value: Dict[str, Any]) -> str:
    for key in ("name", "value", "label"):
        label = value.get(key)
        if label:
            return str(label)
    return ""


def _reference(value: Dict[str, Any]) -> Dict[str, Any]:
    """Reference an allowed value the way Jira accepts it back."""
    if value.get("id") is not None:
        return {"id": str(value["id"])}
    if value.get("name") is not None:
        return {"name": value["name"]}
    return {"value": value.get("value")}


class TransitionResolver:
    """Pick a transition the remote workflow will currently accept"""

    def __init__(self, client):
        self.client = client

    def resolve(self, ticket_key: str, config: TransitionConfig) -> TransitionRequest:
        transitions = self.client.list_transitions(ticket_key)
        chosen = self._choose(ticket_key, transitions, config)
        fields = self._fill_required_fields(ticket_key, chosen, config.keywords)
        logger.info(
            f"Resolved transition {chosen.id} ({chosen.name} -> {chosen.destination_status}) "
            f"for {ticket_key}"
        )
        return TransitionRequest(
            transition_id=chosen.id,
            name=chosen.name,
            destination_status=chosen.destination_status,
            fields=fields,
        )

    def _choose(
        self, ticket_key: str, transitions: List[Transition], config: TransitionConfig
    ) -> Transition:
        if config.transition_id is not None and str(config.transition_id) != "":
            wanted = str(config.transition_id)
            for t in transitions:
                if str(t.id) == wanted:
                    return t
            raise TransitionUnavailable(
                f"Transition '{wanted}' is not available for {ticket_key}. "
                f"Available: {_describe(transitions)}",
                remote_key=ticket_key,
                available=transitions,
            )

        if config.status_name:
            wanted = config.status_name.strip().lower()
            for t in transitions:
                if t.destination_status.lower() == wanted or t.name.lower() == wanted:
                    return t
            raise TransitionUnavailable(
                f"No transition to status '{config.status_name}' is available for {ticket_key}. "
                f"Available: {_describe(transitions)}",
                remote_key=ticket_key,
                available=transitions,
            )

        keywords = [k.lower() for k in config.keywords]
        for t in transitions:
            haystack = f"{t.destination_status} {t.name}".lower()
            if any(k in haystack for k in keywords):
                return t
        raise TransitionUnavailable(
            f"No transition matching {', '.join(config.keywords)} is available for {ticket_key}. "
            f"Available: {_describe(transitions)}",
            remote_key=ticket_key,
            available=transitions,
        )

    def _fill_required_fields(
        self, ticket_key: str, transition: Transition, keywords: Iterable[str]
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for required in transition.required_fields:
            value = self._pick_allowed_value(required, keywords)
            if value is None:
                # No enumeration to choose from; Jira will reject if it insists.
                logger.warning(
                    f"Transition {transition.id} on {ticket_key} requires '{required.name}' "
                    f"without allowed values; leaving it unset"
                )
                continue
            fields[required.field_id] = _reference(value)
        return fields

    @staticmethod
    def _pick_allowed_value(
        required: RequiredField, keywords: Iterable[str]
    ) -> Optional[Dict[str, Any]]:
        allowed = [v for v in required.allowed_values if isinstance(v, dict)]
        if not allowed:
            return None
        lowered = [k.lower() for k in keywords]
        for value in allowed:
            label = _label(value).lower()
            if any(k in label for k in lowered):
                return value
        return allowed[0]
