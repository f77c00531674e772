"""Watcher lifecycle for the netlox agent."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from threading import Event, Thread
from typing import Any, List, Optional, Sequence

from netlox_provider import ProviderRegistry

from .config import AgentConfig
from .watchers import FileServiceWatcher, create_kubernetes_watcher

LOG = logging.getLogger(__name__)

WATCHER_TYPES = ("file", "kubernetes")


def build_watchers(
    config: AgentConfig,
    registry: ProviderRegistry,
    stop_event: Event,
    api: Optional[Any] = None,
) -> List[Thread]:
    """Create one watcher thread per configured ``watchers`` entry."""

    watchers: List[Thread] = []
    for watcher_cfg in config.watchers:
        if watcher_cfg.type == "file":
            watchers.append(
                FileServiceWatcher(
                    registry=registry,
                    path=Path(watcher_cfg.path),
                    interval=watcher_cfg.interval,
                    stop_event=stop_event,
                )
            )
        elif watcher_cfg.type == "kubernetes":
            if api is None:
                raise ValueError("kubernetes watcher requires a cluster connection")
            watchers.append(
                create_kubernetes_watcher(
                    registry, api, watcher_cfg.options, stop_event, watcher_cfg.interval
                )
            )
        else:
            raise ValueError(
                f"unsupported watcher type '{watcher_cfg.type}', expected one of {', '.join(WATCHER_TYPES)}"
            )
    return watchers


class AgentRuntime:
    """Run watcher threads and drain them on shutdown.

    Watchers reconcile inline, so joining a watcher waits for the reconcile
    it is running to finish.  ``stop`` gives them ``shutdown_timeout``
    seconds in total.
    """

    def __init__(
        self,
        watchers: Sequence[Thread],
        stop_event: Event,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._watchers = list(watchers)
        self._stop_event = stop_event
        self._shutdown_timeout = shutdown_timeout

    @property
    def watchers(self) -> List[Thread]:
        return list(self._watchers)

    def start(self) -> None:
        if not self._watchers:
            LOG.warning("no watchers configured; agent will idle")
        for watcher in self._watchers:
            # React to the current state before the first interval elapses.
            try:
                watcher.poll()  # type: ignore[attr-defined]
            except Exception:
                LOG.exception("initial poll failed for watcher %s", watcher.name)
            watcher.start()

    def wait(self, tick: float = 1.0) -> None:
        while not self._stop_event.is_set():
            self._stop_event.wait(tick)

    def stop(self) -> bool:
        """Signal the watchers and wait for them; ``False`` if any is still busy."""

        self._stop_event.set()
        deadline = time.monotonic() + self._shutdown_timeout
        busy = []
        for watcher in self._watchers:
            if not watcher.is_alive():
                continue
            watcher.join(max(0.0, deadline - time.monotonic()))
            if watcher.is_alive():
                busy.append(watcher.name)
        if busy:
            LOG.warning(
                "watchers still reconciling after %.1fs, abandoning: %s",
                self._shutdown_timeout,
                ", ".join(busy),
            )
            return False
        return True
