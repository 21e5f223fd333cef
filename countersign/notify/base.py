"""Base notifier interface for state-change notifications."""

from __future__ import annotations

import abc

from ..models import StateChange


class BaseNotifier(metaclass=abc.ABCMeta):
    """Abstract sink for :class:`StateChange` events."""

    def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    def publish(self, change: StateChange) -> None:
        """Deliver one state change."""
        raise NotImplementedError
