"""In-memory notifier for tests and in-process subscribers."""

from __future__ import annotations

import threading
from typing import Callable, List

from ..models import StateChange
from .base import BaseNotifier

Subscriber = Callable[[StateChange], None]


class InMemoryNotifier(BaseNotifier):
    """Keeps every published change and forwards it to local subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self.published: List[StateChange] = []

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, change: StateChange) -> None:
        with self._lock:
            self.published.append(change)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(change)

    def for_instance(self, instance_id: str) -> List[StateChange]:
        with self._lock:
            return [c for c in self.published if c.instance_id == instance_id]
