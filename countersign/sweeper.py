"""Background expiry of instances past their deadline."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from .errors import CountersignError, NotExpired, NotInProgress
from .models import WorkflowInstance, utcnow
from .persistence import WorkflowRepository
from .runtime import ApprovalRuntime

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically expire in-progress instances whose deadline has passed.

    Expiry goes through :meth:`ApprovalRuntime.expire`, so it races with
    approvals under the same compare-and-swap rules. Losing that race is
    normal and only logged.
    """

    def __init__(
        self,
        runtime: ApprovalRuntime,
        repository: WorkflowRepository,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._runtime = runtime
        self._repository = repository
        self.interval = interval
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: Optional[datetime] = None) -> List[WorkflowInstance]:
        """Expire everything due at ``now``; returns the instances expired."""
        now = now or self._clock()
        expired = []
        for instance in self._repository.due_for_expiry(now):
            try:
                expired.append(self._runtime.expire(instance.id, now=now))
            except (NotInProgress, NotExpired) as exc:
                logger.debug(f"Skipping expiry of {instance.id}: {exc}")
            except CountersignError as exc:
                logger.warning(f"Could not expire instance {instance.id}: {exc}")
        if expired:
            logger.info(f"Expired {len(expired)} instance(s)")
        return expired

    def run(self, lifespan: Optional[float] = None) -> None:
        """Sweep every ``interval`` seconds until stopped or ``lifespan`` elapses.

        Args:
            lifespan: Maximum time in seconds to keep sweeping. If None, runs until stop().
        """
        start_time = time.monotonic() if lifespan else None
        while not self._stop.is_set():
            try:
                self.sweep_once()
            except Exception:
                # retried on the next pass
                logger.exception("Expiry sweep failed; retrying after the interval")
            wait = self.interval
            if start_time is not None:
                remaining = lifespan - (time.monotonic() - start_time)
                if remaining <= 0:
                    break
                wait = min(wait, remaining)
            self._stop.wait(wait)

    def start(self) -> None:
        """Run the sweep loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run, name="countersign-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
