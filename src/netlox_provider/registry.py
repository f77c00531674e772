"""Fan service lifecycle events out to registered handlers."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List, Optional

from netlox_lb.exceptions import NetloxError

from .base import ServiceHandler
from .events import ServiceDelete, ServiceUpsert

LOG = logging.getLogger(__name__)

_HANDLER_METHODS = {
    ServiceUpsert: "on_service_upsert",
    ServiceDelete: "on_service_delete",
}


class ProviderRegistry:
    """Named handlers receiving every service event.

    A handler that fails with :class:`~netlox_lb.exceptions.NetloxError` does
    not keep the event from the others; the first such error is raised once
    all handlers were called so the caller can retry the event.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._handlers: Dict[str, ServiceHandler] = {}

    @property
    def names(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def register(self, name: str, handler: ServiceHandler) -> None:
        with self._lock:
            if name in self._handlers:
                raise ValueError(f"handler '{name}' already registered")
            self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        with self._lock:
            self._handlers.pop(name, None)

    def handle(self, event: ServiceUpsert | ServiceDelete) -> None:
        method = _HANDLER_METHODS.get(type(event))
        if method is None:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

        with self._lock:
            handlers = list(self._handlers.items())

        first_error: Optional[NetloxError] = None
        for name, handler in handlers:
            try:
                getattr(handler, method)(event.service)
            except NetloxError as exc:
                LOG.warning(
                    "handler '%s' failed on %s for %s/%s: %s",
                    name,
                    type(event).__name__,
                    event.service.namespace,
                    event.service.name,
                    exc,
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
