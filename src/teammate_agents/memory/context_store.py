"""Durable key/value context store, namespaced per epic.

Snapshots of epics, issues, assignments, reviews and blocked-task records
live under the epic's namespace:

  epic                 -> Epic
  issue:<issue_id>     -> Issue
  assignment:<id>      -> Assignment
  review:<id>          -> ReviewRecord
  blocked:<issue_id>   -> BlockedTaskRecord

File layout for ``FileContextStore``:
  <base_dir>/<namespace>/<key>.json
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

EPIC_KEY = "epic"


def issue_key(issue_id: str) -> str:
    return f"issue:{issue_id}"


def assignment_key(assignment_id: str) -> str:
    return f"assignment:{assignment_id}"


def review_key(review_id: str) -> str:
    return f"review:{review_id}"


def blocked_key(issue_id: str) -> str:
    return f"blocked:{issue_id}"


class ContextStore(ABC):
    """Namespaced key/value store with optional TTL (seconds)."""

    @abstractmethod
    def store(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def retrieve(self, namespace: str, key: str) -> Optional[Any]:
        """Stored value, or None if missing or expired."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, namespace: str, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    def namespaces(self) -> List[str]:
        ...

    @abstractmethod
    def clear(self, namespace: str) -> int:
        """Remove every key in ``namespace``. Returns the number removed."""

    def store_model(self, namespace: str, key: str, model: BaseModel, ttl: Optional[float] = None) -> None:
        self.store(namespace, key, model.model_dump(mode="json"), ttl=ttl)

    def retrieve_model(self, namespace: str, key: str, model_cls: Type[M]) -> Optional[M]:
        data = self.retrieve(namespace, key)
        if data is None:
            return None
        return model_cls.model_validate(data)

    def retrieve_models(self, namespace: str, prefix: str, model_cls: Type[M]) -> List[M]:
        models = []
        for key in self.keys(namespace, prefix):
            model = self.retrieve_model(namespace, key, model_cls)
            if model is not None:
                models.append(model)
        return models


def _expired(entry: Dict[str, Any], now: float) -> bool:
    expires_at = entry.get("expires_at")
    return expires_at is not None and now >= expires_at


def _make_entry(key: str, value: Any, ttl: Optional[float]) -> Dict[str, Any]:
    now = time.time()
    return {
        "key": key,
        "value": value,
        "stored_at": now,
        "expires_at": now + ttl if ttl else None,
    }


class InMemoryContextStore(ContextStore):
    """Process-local store, mainly for tests and single-shot runs."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def store(self, namespace, key, value, ttl=None):
        # Round-trip through JSON so callers can't mutate stored state
        entry = _make_entry(key, json.loads(json.dumps(value, default=str)), ttl)
        with self._lock:
            self._data.setdefault(namespace, {})[key] = entry

    def retrieve(self, namespace, key):
        with self._lock:
            entry = self._data.get(namespace, {}).get(key)
            if entry is None:
                return None
            if _expired(entry, time.time()):
                del self._data[namespace][key]
                return None
            return json.loads(json.dumps(entry["value"]))

    def delete(self, namespace, key):
        with self._lock:
            return self._data.get(namespace, {}).pop(key, None) is not None

    def keys(self, namespace, prefix=""):
        now = time.time()
        with self._lock:
            entries = self._data.get(namespace, {})
            return sorted(k for k, e in entries.items() if k.startswith(prefix) and not _expired(e, now))

    def namespaces(self):
        with self._lock:
            return sorted(ns for ns, entries in self._data.items() if entries)

    def clear(self, namespace):
        with self._lock:
            return len(self._data.pop(namespace, {}))


class FileContextStore(ContextStore):
    """JSON file per key. Writes are atomic (temp file + rename)."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def _namespace_dir(self, namespace: str) -> Path:
        return self.base_dir / _safe_segment(namespace)

    def _path(self, namespace: str, key: str) -> Path:
        return self._namespace_dir(namespace) / f"{_safe_segment(key)}.json"

    def _load(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load context entry {path}: {e}")
            return None

    def store(self, namespace, key, value, ttl=None):
        atomic_write_json(self._path(namespace, key), _make_entry(key, value, ttl))

    def retrieve(self, namespace, key):
        path = self._path(namespace, key)
        entry = self._load(path)
        if entry is None:
            return None
        if _expired(entry, time.time()):
            path.unlink(missing_ok=True)
            return None
        return entry.get("value")

    def delete(self, namespace, key):
        path = self._path(namespace, key)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def keys(self, namespace, prefix=""):
        ns_dir = self._namespace_dir(namespace)
        if not ns_dir.is_dir():
            return []
        now = time.time()
        result = []
        for path in ns_dir.glob("*.json"):
            entry = self._load(path)
            if entry is None or _expired(entry, now):
                continue
            key = entry.get("key", path.stem)
            if key.startswith(prefix):
                result.append(key)
        return sorted(result)

    def namespaces(self):
        if not self.base_dir.is_dir():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir() and any(p.glob("*.json")))

    def clear(self, namespace):
        ns_dir = self._namespace_dir(namespace)
        if not ns_dir.is_dir():
            return 0
        removed = 0
        for path in ns_dir.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        logger.info(f"Cleared {removed} context entries from {namespace}")
        return removed


def _safe_segment(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name)
