"""Fire-and-forget fan-out of state changes to notifiers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Iterable, List, Optional, Set

from ..models import StateChange
from .base import BaseNotifier

logger = logging.getLogger(__name__)


class NotificationHub:
    """Dispatch each state change to every notifier on a worker pool.

    The runtime calls :meth:`emit` after a transition commits and never waits
    for delivery. Delivery failures are logged, not raised: notification is
    best effort and must not undo a recorded transition.
    """

    def __init__(
        self, notifiers: Iterable[BaseNotifier] = (), max_workers: int = 4
    ) -> None:
        self._notifiers: List[BaseNotifier] = list(notifiers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="countersign-notify"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def add(self, notifier: BaseNotifier) -> None:
        self._notifiers.append(notifier)

    def emit(self, change: StateChange) -> None:
        for notifier in list(self._notifiers):
            future = self._executor.submit(notifier.publish, change)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._make_done_callback(notifier, change))

    def _make_done_callback(self, notifier: BaseNotifier, change: StateChange):
        def done(future: Future) -> None:
            with self._lock:
                self._pending.discard(future)
            exc = future.exception()
            if exc is not None:
                logger.warning(
                    f"{type(notifier).__name__} failed to deliver "
                    f"{change.action.value} for instance {change.instance_id}: {exc}"
                )

        return done

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until queued deliveries finish (tests, shutdown)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        for notifier in self._notifiers:
            notifier.disconnect()
