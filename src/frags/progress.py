# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Progress map: the structured output accumulated during a run."""

import copy
import threading
from typing import Any, Dict, Iterable, Optional

from frags.errors import InternalError


class ProgressMap:
    """``session -> {property: value}``, grown monotonically.

    Phase merges write each key once. Transformers may replace a session's
    slice wholesale via ``replace``.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def merge(self, session: str, values: Dict[str, Any], keys: Optional[Iterable[str]] = None) -> None:
        """Merge ``values`` (restricted to ``keys``) into ``session``.

        Raises:
            InternalError: If a key was already written
        """
        allowed = set(keys) if keys is not None else None
        with self._lock:
            current = self._data.setdefault(session, {})
            for key, value in values.items():
                if allowed is not None and key not in allowed:
                    continue
                if key in current:
                    raise InternalError(f"progress key {session}.{key} written twice")
                current[key] = value

    def append(self, session: str, values: Dict[str, Any], keys: Iterable[str]) -> None:
        """Append one item's ``values`` to per-key lists (iterating sessions).

        Every key gets an entry, None when the item did not produce it, so
        the lists stay aligned with the items.
        """
        with self._lock:
            current = self._data.setdefault(session, {})
            for key in keys:
                items = current.setdefault(key, [])
                if not isinstance(items, list):
                    raise InternalError(f"progress key {session}.{key} is not an item list")
                items.append(values.get(key))

    def replace(self, session: str, values: Dict[str, Any]) -> None:
        with self._lock:
            self._data[session] = dict(values)

    def get(self, session: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data.get(session, {}))

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Deep copy safe to hand to templates and other threads."""
        with self._lock:
            return copy.deepcopy(self._data)

    def __contains__(self, session: str) -> bool:
        with self._lock:
            return session in self._data
