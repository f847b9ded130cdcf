"""Inbound issue events.

Webhook deliveries and poll results are normalized into ``IssueEvent`` and
fed through one ``EventQueue``. The queue dedupes by event id, keeps events
for the same issue in FIFO order, and leases an issue to one consumer at a
time. Across issues there is no ordering guarantee.
"""

import hashlib
import json
import logging
import threading
from collections import OrderedDict, deque
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from ..errors import StaleEvent
from .models import utcnow

logger = logging.getLogger(__name__)

MAX_SEEN_EVENTS = 10_000


class EventKind(str, Enum):
    CREATED = "created"
    EDITED = "edited"
    CLOSED = "closed"
    REOPENED = "reopened"
    LABELED = "labeled"
    UNLABELED = "unlabeled"
    ASSIGNED = "assigned"


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"
    LOCAL = "local"


class IssueEvent(BaseModel):
    """Delivery-mode-agnostic issue event."""
    event_id: str
    kind: EventKind
    issue_number: int
    epic_id: Optional[str] = None
    title: str = ""
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    state: str = "open"
    assignees: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)
    source: EventSource = EventSource.LOCAL

    @property
    def issue_key(self) -> str:
        return str(self.issue_number)

    @property
    def fingerprint(self) -> str:
        """Digest of the issue content the event carries."""
        content = {
            "state": self.state,
            "title": self.title,
            "body": self.body,
            "labels": sorted(self.labels),
            "assignees": sorted(self.assignees),
        }
        return hashlib.sha256(json.dumps(content, sort_keys=True).encode()).hexdigest()


class FreshnessTracker:
    """Conditional-fetch check: skip state that is not newer than what we processed.

    Timestamps only have second resolution, so an event stamped with the
    last seen time still counts as fresh when its content fingerprint
    differs from the one recorded for that time.
    """

    def __init__(self):
        self._last_seen: Dict[str, Tuple[datetime, Optional[str]]] = {}
        self._lock = threading.Lock()

    def is_fresh(self, issue_key: str, updated_at: datetime, fingerprint: Optional[str] = None) -> bool:
        with self._lock:
            seen = self._last_seen.get(issue_key)
            if seen is None or updated_at > seen[0]:
                return True
            return updated_at == seen[0] and fingerprint is not None and fingerprint != seen[1]

    def check(self, event: IssueEvent) -> None:
        """Raise ``StaleEvent`` if the event carries no newer state."""
        if not self.is_fresh(event.issue_key, event.updated_at, event.fingerprint):
            raise StaleEvent(event.event_id, reason=f"issue #{event.issue_number} unchanged since last sync")

    def mark(self, issue_key: str, updated_at: datetime, fingerprint: Optional[str] = None) -> None:
        with self._lock:
            seen = self._last_seen.get(issue_key)
            if seen is None or updated_at >= seen[0]:
                self._last_seen[issue_key] = (updated_at, fingerprint)

    def last_seen(self, issue_key: str) -> Optional[datetime]:
        with self._lock:
            seen = self._last_seen.get(issue_key)
            return seen[0] if seen else None


class EventQueue:
    """Per-issue FIFO queue with event-id dedupe and issue leasing."""

    def __init__(self):
        self._queues: Dict[str, Deque[IssueEvent]] = {}
        self._ready: Deque[str] = deque()  # issues with pending events and no lease
        self._leased: Set[str] = set()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def put(self, event: IssueEvent) -> bool:
        """Enqueue ``event``. Returns False for a duplicate event id."""
        with self._lock:
            if event.event_id in self._seen:
                logger.debug(f"Dropping duplicate event {event.event_id}")
                return False
            self._seen[event.event_id] = None
            while len(self._seen) > MAX_SEEN_EVENTS:
                self._seen.popitem(last=False)

            key = event.issue_key
            queue = self._queues.setdefault(key, deque())
            queue.append(event)
            if len(queue) == 1 and key not in self._leased:
                self._ready.append(key)
            return True

    def get(self) -> Optional[IssueEvent]:
        """Next event from an unleased issue, or None. Leases that issue until ``done``."""
        with self._lock:
            if not self._ready:
                return None
            key = self._ready.popleft()
            self._leased.add(key)
            return self._queues[key][0]

    def done(self, event: IssueEvent) -> None:
        """Finish processing ``event``; releases the issue lease."""
        with self._lock:
            key = event.issue_key
            queue = self._queues.get(key)
            if queue and queue[0].event_id == event.event_id:
                queue.popleft()
            self._leased.discard(key)
            if queue:
                self._ready.append(key)
            else:
                self._queues.pop(key, None)

    def pending(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    def __len__(self) -> int:
        return self.pending()
