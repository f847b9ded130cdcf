"""GitHub webhook normalization (push producer)."""

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ...core.capabilities import split_label
from ...core.events import EventKind, EventQueue, EventSource, IssueEvent
from ...core.models import utcnow

logger = logging.getLogger(__name__)

ACTION_KINDS = {
    "opened": EventKind.CREATED,
    "edited": EventKind.EDITED,
    "closed": EventKind.CLOSED,
    "reopened": EventKind.REOPENED,
    "labeled": EventKind.LABELED,
    "unlabeled": EventKind.UNLABELED,
    "assigned": EventKind.ASSIGNED,
}


class InvalidSignature(Exception):
    """Webhook payload signature did not verify."""


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify the ``X-Hub-Signature-256`` header."""
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def normalize_issue_payload(payload: Dict[str, Any], delivery_id: str) -> Optional[IssueEvent]:
    """Map an ``issues`` webhook payload to an ``IssueEvent``. None for unhandled actions."""
    kind = ACTION_KINDS.get(payload.get("action", ""))
    issue = payload.get("issue")
    if kind is None or not issue or "pull_request" in issue:
        return None

    labels = [label["name"] for label in issue.get("labels", [])]
    epic_id = None
    for label in labels:
        prefix, value = split_label(label)
        if prefix == "epic":
            epic_id = value.strip()
            break

    return IssueEvent(
        event_id=delivery_id,
        kind=kind,
        issue_number=issue["number"],
        epic_id=epic_id,
        title=issue.get("title", ""),
        body=issue.get("body") or "",
        labels=labels,
        state=issue.get("state", "open"),
        assignees=[a["login"] for a in issue.get("assignees", [])],
        updated_at=_parse_time(issue.get("updated_at")),
        source=EventSource.WEBHOOK,
    )


class WebhookReceiver:
    """Verifies and enqueues GitHub deliveries."""

    def __init__(self, queue: EventQueue, secret: Optional[str] = None):
        self.queue = queue
        self.secret = secret

    def handle(
        self,
        event_name: str,
        delivery_id: str,
        payload: Dict[str, Any],
        raw_body: Optional[bytes] = None,
        signature: Optional[str] = None,
    ) -> bool:
        """Returns True if the delivery produced a queued event.

        Raises:
            InvalidSignature: a secret is configured and the signature is wrong
        """
        if self.secret:
            if raw_body is None or not verify_signature(raw_body, signature, self.secret):
                raise InvalidSignature(f"Invalid signature for delivery {delivery_id}")
        if event_name != "issues":
            logger.debug(f"Ignoring {event_name} delivery {delivery_id}")
            return False
        event = normalize_issue_payload(payload, delivery_id)
        if event is None:
            return False
        return self.queue.put(event)
