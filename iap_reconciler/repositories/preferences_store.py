"""Preferences store - namespace-scoped durable key-value pairs.

Each namespace is one JSON file under the state directory. Without a state
directory the values live only in memory.
"""

import threading
from pathlib import Path
from typing import Any, Dict, Optional

from iap_reconciler.logging_config import get_logger
from iap_reconciler.utils.persistence import read_json, write_json_atomic

logger = get_logger(__name__)


class PreferencesStore:
    """Small key-value store surviving process restarts."""

    def __init__(self, namespace: str, state_dir: Optional[Path] = None):
        """Initialize preferences for a namespace.

        Args:
            namespace: Namespace name (becomes the file name)
            state_dir: Directory for the backing file; in-memory if None
        """
        self._namespace = namespace
        self._path = Path(state_dir) / f"{namespace}.json" if state_dir else None
        self._values: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._load()

    def _load(self) -> None:
        if self._path is None:
            return
        data = read_json(self._path)
        if data is None:
            return
        if not isinstance(data, dict):
            raise ValueError(f"Preferences file {self._path} must contain a JSON object")
        self._values = data
        logger.debug("preferences_loaded", namespace=self._namespace, keys=list(data.keys()))

    @property
    def namespace(self) -> str:
        return self._namespace

    def get_int(self, key: str, default: int = 0) -> int:
        """Get an integer value, or ``default`` if unset."""
        with self._lock:
            value = self._values.get(key)
        return int(value) if value is not None else default

    def put(self, key: str, value: Any) -> None:
        """Set a value and persist the namespace."""
        with self._lock:
            self._values[key] = value
            if self._path is not None:
                write_json_atomic(self._path, self._values)

    def clear(self) -> None:
        """Remove every key in the namespace."""
        with self._lock:
            self._values.clear()
            if self._path is not None:
                write_json_atomic(self._path, self._values)

    def __repr__(self) -> str:
        return f"PreferencesStore(namespace={self._namespace!r}, persistent={self._path is not None})"
