"""Timestamp-based advisory lock over a shared preference store.

Used for coordination between engine instances that share persisted
state (for example two processes migrating the same settings file).  It
is not a mutex: a holder that stops refreshing its timestamp is
overridden once the ttl has elapsed.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Protocol

import yaml

_logger = logging.getLogger(__name__)


class PreferenceStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryPreferenceStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class YamlPreferenceStore:
    """Preference store persisted as a YAML mapping.

    The file is re-read on every access so that other processes' writes
    are visible.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            _logger.warning("Ignoring unreadable preference file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)

    def get(self, key: str) -> Any:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


class AdvisoryLock:
    """Cross-instance lock keyed in a :class:`PreferenceStore`.

    Parameters
    ----------
    store:
        Shared store holding ``{owner, timestamp}`` under *key*.
    key:
        Store key of the lock record.
    ttl:
        Seconds after which a holder's record is considered stale.
    """

    def __init__(
        self,
        store: PreferenceStore,
        key: str,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.key = key
        self.ttl = ttl
        self._clock = clock

    def holder(self) -> str | None:
        record = self._record()
        return record["owner"] if record else None

    def acquire(self, owner: str) -> bool:
        record = self._record()
        now = self._clock()
        if record and record["owner"] != owner:
            age = now - record["timestamp"]
            if age < self.ttl:
                _logger.debug("Lock %s held by %s (%.1fs old)", self.key, record["owner"], age)
                return False
            _logger.warning(
                "Overriding stale lock %s held by %s (%.1fs old)", self.key, record["owner"], age,
            )
        self._store.set(self.key, {"owner": owner, "timestamp": now})
        return True

    def release(self, owner: str) -> bool:
        record = self._record()
        if not record or record["owner"] != owner:
            return False
        self._store.delete(self.key)
        return True

    def _record(self) -> dict[str, Any] | None:
        record = self._store.get(self.key)
        if not isinstance(record, dict) or "owner" not in record:
            return None
        try:
            record["timestamp"] = float(record.get("timestamp", 0))
        except (TypeError, ValueError):
            record["timestamp"] = 0.0
        return record
