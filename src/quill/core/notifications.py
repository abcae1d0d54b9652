"""
Notification sinks for signer session events.

The session only ever calls ``broadcast(channel, event, payload)`` and never
waits on the result. ``EventBus`` is the in-process implementation the window
layer subscribes to.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

MAIN_ACTION_CHANNEL = "main:action"

Subscriber = Callable[[str, Any], None]


@runtime_checkable
class NotificationSink(Protocol):
    def broadcast(self, channel: str, event: str, payload: Any = None) -> None:
        ...


@runtime_checkable
class TrayPresenter(Protocol):
    """Sinks that can bring the tray window forward when work arrives."""

    def show_tray(self) -> None:
        ...


@dataclass(frozen=True)
class BroadcastEvent:
    channel: str
    event: str
    payload: Any = None


class NullSink:
    """Sink that drops everything."""

    def broadcast(self, channel: str, event: str, payload: Any = None) -> None:
        return None


class EventBus:
    """
    Fire-and-forget broadcast hub.

    Subscribers register per channel (or ``"*"`` for every channel) and are
    called synchronously in registration order. A failing subscriber is logged
    and skipped so one broken window cannot stall the session.
    """

    def __init__(self, history_size: int = 256):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self.history: deque[BroadcastEvent] = deque(maxlen=history_size)
        self.tray_requests = 0

    def subscribe(self, channel: str, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers[channel].append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers[channel]:
                self._subscribers[channel].remove(subscriber)

        return unsubscribe

    def broadcast(self, channel: str, event: str, payload: Any = None) -> None:
        self.history.append(BroadcastEvent(channel, event, payload))
        for subscriber in list(self._subscribers[channel]) + list(self._subscribers["*"]):
            try:
                subscriber(event, payload)
            except Exception as exc:
                logger.error(
                    "Broadcast subscriber failed: %s",
                    exc,
                    exc_info=True,
                    extra={"event": "notifications.subscriber_failed", "channel": channel, "event_name": event},
                )

    def show_tray(self) -> None:
        self.tray_requests += 1
        self.broadcast("tray:action", "show")

    def events(self, channel: str | None = None) -> list[BroadcastEvent]:
        """Recorded broadcasts, optionally filtered by channel."""
        return [e for e in self.history if channel is None or e.channel == channel]
