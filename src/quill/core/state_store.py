"""
Process-wide application state tree with path-addressed updates.

``update("main.connection", "local", "on", reducer)`` walks the dotted path,
then each extra key, and replaces the value found there with
``reducer(old_value)``. Subscribers are told about every change.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

StateListener = Callable[[tuple, Any], None]

_MISSING = object()


def default_state() -> dict[str, Any]:
    def secondary_settings() -> dict[str, Any]:
        return {"current": "infura", "options": {"infura": "infura", "custom": ""}}

    return {
        "main": {
            "launch": False,
            "reveal": False,
            "accounts": {},
            "connection": {
                "network": "1",
                "local": {
                    "on": True,
                    "status": "loading",
                    "connected": False,
                    "type": "",
                    "network": "",
                },
                "secondary": {
                    "on": False,
                    "status": "loading",
                    "connected": False,
                    "type": "",
                    "network": "",
                    "settings": {network: secondary_settings() for network in ("1", "3", "4", "42")},
                },
            },
        },
        "view": {},
    }


def _split(path: str, keys: tuple) -> tuple:
    parts = tuple(p for p in path.split(".") if p) if path else ()
    return parts + tuple(keys)


class StateStore:
    """Nested-dict state tree guarded by a lock."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._state = initial if initial is not None else default_state()
        self._listeners: list[StateListener] = []
        self._lock = threading.RLock()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get(self, path: str = "", *keys: Any, default: Any = None) -> Any:
        """Deep copy of the value at ``path`` (plus keys), or ``default``."""
        with self._lock:
            node: Any = self._state
            for key in _split(path, keys):
                if not isinstance(node, dict) or key not in node:
                    return default
                node = node[key]
            return copy.deepcopy(node)

    def update(self, path: str, *args: Any) -> None:
        """
        Replace the value at ``path`` with ``reducer(old)``.

        Args:
            path: Dotted path into the state tree
            *args: Optional extra keys followed by the reducer

        Missing intermediate mappings are created. A reducer returning
        ``None`` for a value that does not exist leaves the tree untouched.
        """
        if not args or not callable(args[-1]):
            raise TypeError("update() requires a reducer as its last argument")
        reducer = args[-1]
        route = _split(path, args[:-1])
        if not route:
            raise ValueError("update() requires a non-empty path")

        with self._lock:
            parent = self._state
            for key in route[:-1]:
                child = parent.get(key)
                if not isinstance(child, dict):
                    child = {}
                    parent[key] = child
                parent = child
            leaf = route[-1]
            old = parent.get(leaf, _MISSING)
            new = reducer(copy.deepcopy(old) if old is not _MISSING else None)
            if new is None and old is _MISSING:
                return
            parent[leaf] = new
            snapshot = copy.deepcopy(new)

        logger.debug(
            "State updated",
            extra={"event": "state.update", "path": ".".join(str(k) for k in route)},
        )
        for listener in list(self._listeners):
            try:
                listener(route, snapshot)
            except Exception as exc:
                logger.error(
                    "State listener failed: %s",
                    exc,
                    exc_info=True,
                    extra={"event": "state.listener_failed"},
                )
