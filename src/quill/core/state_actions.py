"""
Actions on the application state tree.

Each action takes the store's ``update`` callable first, so they can be bound
to any ``StateStore`` (or a recording stub in tests).
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

Update = Callable[..., None]

_CONNECTION_RESET = {"status": "loading", "connected": False, "type": "", "network": ""}


def select_network(u: Update, network: str) -> None:
    def reducer(connection: dict) -> dict:
        connection["network"] = network
        connection["local"] = {**connection.get("local", {}), **_CONNECTION_RESET}
        connection["secondary"] = {**connection.get("secondary", {}), **_CONNECTION_RESET}
        return connection

    u("main.connection", reducer)


def select_secondary(u: Update, direction: str) -> None:
    """Cycle the secondary endpoint for the current network, wrapping around."""
    if direction == "->":
        step = 1
    elif direction == "<-":
        step = -1
    else:
        return

    def reducer(connection: dict) -> dict:
        settings = connection["secondary"]["settings"][connection["network"]]
        options = list(settings["options"].keys())
        if not options:
            return connection
        try:
            position = options.index(settings["current"])
        except ValueError:
            position = -1 if step == 1 else 0
        settings["current"] = options[(position + step) % len(options)]
        return connection

    u("main.connection", reducer)


def set_secondary_custom(u: Update, target: str) -> None:
    def reducer(connection: dict) -> dict:
        connection["secondary"]["settings"][connection["network"]]["options"]["custom"] = target
        return connection

    u("main.connection", reducer)


def toggle_connection(u: Update, node: str) -> None:
    u("main.connection", node, "on", lambda on: not on)


def set_local(u: Update, status: Mapping[str, Any]) -> None:
    u("main.connection.local", lambda local: {**(local or {}), **status})


def set_secondary(u: Update, status: Mapping[str, Any]) -> None:
    u("main.connection.secondary", lambda secondary: {**(secondary or {}), **status})


def set_launch(u: Update, launch: bool) -> None:
    u("main.launch", lambda _: launch)


def toggle_launch(u: Update) -> None:
    u("main.launch", lambda launch: not launch)


def toggle_reveal(u: Update) -> None:
    u("main.reveal", lambda reveal: not reveal)


def clear_permissions(u: Update, account: str) -> None:
    def reducer(existing: dict | None) -> dict | None:
        if existing is None:
            return None
        existing["permissions"] = {}
        return existing

    u("main.accounts", account, reducer)


def give_access(u: Update, request: Mapping[str, Any], access: bool) -> None:
    """Record whether ``request['origin']`` may use ``request['account']``."""
    handler_id = request["handlerId"]

    def reducer(existing: dict | None) -> dict:
        account = existing or {"permissions": {}}
        account.setdefault("permissions", {})[handler_id] = {
            "handlerId": handler_id,
            "origin": request.get("origin"),
            "provider": access,
        }
        return account

    u("main.accounts", request["account"], reducer)


def toggle_access(u: Update, account: str, handler_id: str) -> None:
    def reducer(existing: dict | None) -> dict | None:
        if existing is None:
            return None
        permission = existing.get("permissions", {}).get(handler_id)
        if permission is not None:
            permission["provider"] = not permission["provider"]
        return existing

    u("main.accounts", account, reducer)


def sync_path(u: Update, path: str, value: Any) -> None:
    """Set an arbitrary path from a renderer; the ``main`` subtree is off limits."""
    if not path or path == "*" or path.startswith("main"):
        return
    u(path, lambda _: value)
