"""
Presence signals raised by the controller.

Each signal is one-shot: a waiter that observes it consumes it.
"""

import threading
from typing import Optional


class PresenceEvent:
    """A named, one-shot signal backed by threading.Event."""

    def __init__(self, name: str):
        self.name = name
        self._event = threading.Event()

    def signal(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_signaled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until signaled, then consume the signal. False on timeout."""
        if not self._event.wait(timeout):
            return False
        self._event.clear()
        return True

    def __repr__(self) -> str:
        return f"PresenceEvent({self.name!r}, signaled={self.is_signaled()})"
