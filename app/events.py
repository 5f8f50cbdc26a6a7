"""Publish/subscribe channel for "library changed" notifications.

The application shell creates one :class:`LibraryEvents` and hands it to the
services that change library data and to the views that need to refresh.
There is no module-level instance.
"""
import logging
import threading
from typing import Any, Callable, Dict, List

Listener = Callable[[Dict[str, Any]], None]


class Subscription:
    """Handle returned by :meth:`LibraryEvents.subscribe`."""

    def __init__(self, channel: 'LibraryEvents', callback: Listener) -> None:
        self._channel = channel
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop receiving events.  Safe to call more than once."""
        if self._active:
            self._channel._remove(self._callback)
            self._active = False


class LibraryEvents:
    """Thread-safe observer registry.

    Listeners receive a dict with a ``type`` key (``session_started``,
    ``session_ended``, ``library_updated`` ...) plus event-specific fields.
    A listener that raises is logged and skipped; the others still run.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._log = logging.getLogger('playpulse.events')

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def subscribe(self, callback: Listener) -> Subscription:
        with self._lock:
            self._listeners.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

    def publish(self, event_type: str, **data: Any) -> int:
        """Deliver an event to every listener.

        Returns:
            Number of listeners that handled the event without raising.
        """
        event = {'type': event_type, **data}
        with self._lock:
            listeners = list(self._listeners)
        delivered = 0
        for callback in listeners:
            try:
                callback(event)
                delivered += 1
            except Exception:
                self._log.exception("Error in library event listener for %s", event_type)
        return delivered
