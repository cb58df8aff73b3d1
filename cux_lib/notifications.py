"""Publication of worker notifications to consumers on other threads."""

import logging
import queue
import threading
import time
from collections import deque
from typing import Any, Callable, Iterable, List, Optional

from cux_lib.models import Event, Notification

logger = logging.getLogger(__name__)

Subscriber = Callable[[Event], None]


class NotificationHub:
    """Fan-out of notifications emitted by the worker.

    Consumers either register a callback (invoked on the emitting thread, so it
    must be quick) or take a queue from ``listen()`` and drain it on their own
    thread. The most recent ``history`` events are also kept for ``recent()``.
    """

    def __init__(self, history: int = 256) -> None:
        if history <= 0:
            raise ValueError(f"history must be positive, got {history}")
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._listeners: List["queue.Queue[Event]"] = []
        self._history: "deque[Event]" = deque(maxlen=history)

    def emit(self, kind: Notification, payload: Any = None) -> Event:
        """Publish a notification to every subscriber and listener.

        Args:
            kind: Notification to publish
            payload: Optional value carried with it

        Returns:
            The published Event
        """
        event = Event(kind=kind, payload=payload)
        logger.debug(f"Notification: {kind.value}")

        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
            listeners = list(self._listeners)

        for listener in listeners:
            listener.put(event)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber failed on {kind.value}: {e}", exc_info=True)

        return event

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every later notification.

        Returns:
            Callable that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def listen(self) -> "queue.Queue[Event]":
        """Get a queue that receives every notification emitted from now on."""
        listener: "queue.Queue[Event]" = queue.Queue()
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unlisten(self, listener: "queue.Queue[Event]") -> None:
        """Stop delivering notifications to a queue obtained from ``listen()``."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def recent(self) -> List[Event]:
        """Most recent notifications, oldest first."""
        with self._lock:
            return list(self._history)


def wait_for_event(
    listener: "queue.Queue[Event]",
    kinds: Iterable[Notification],
    timeout: float,
) -> Optional[Event]:
    """Drain ``listener`` until one of ``kinds`` arrives.

    Other events are discarded.

    Returns:
        The matching Event, or None on timeout
    """
    wanted = set(kinds)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            event = listener.get(timeout=remaining)
        except queue.Empty:
            return None
        if event.kind in wanted:
            return event
