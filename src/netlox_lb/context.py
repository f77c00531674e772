"""Deadline and cancellation carried through a single reconcile call."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event
from typing import Optional

from .exceptions import ReconcileCancelled


@dataclass
class OperationContext:
    """Caller-supplied deadline (``time.monotonic()`` based) and cancel flag."""

    deadline: Optional[float] = None
    cancel_event: Optional[Event] = None

    @classmethod
    def with_timeout(cls, seconds: float, cancel_event: Optional[Event] = None) -> "OperationContext":
        return cls(deadline=time.monotonic() + seconds, cancel_event=cancel_event)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ReconcileCancelled("operation cancelled by caller")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise ReconcileCancelled("operation deadline exceeded")

    def timeout_for(self, default: Optional[float]) -> Optional[float]:
        """Return the tighter of ``default`` and the remaining time."""

        remaining = self.remaining()
        if remaining is None:
            return default
        if default is None:
            return remaining
        return min(default, remaining)
