"""File-based service watcher."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Event, Thread
from typing import Dict

from netlox_lb.orchestrator import Service
from netlox_provider import ProviderRegistry

from .state import ServiceKey, ServiceStateTracker, service_key

LOG = logging.getLogger(__name__)


def _extract_state(payload: dict) -> Dict[ServiceKey, Service]:
    if not isinstance(payload, dict):
        raise ValueError("services file must contain a JSON object")
    entries = payload.get("services")
    if entries is None:
        raise ValueError("services file missing 'services' key")
    if not isinstance(entries, list):
        raise ValueError("'services' must be a list")

    state: Dict[ServiceKey, Service] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"service entry must be a mapping, got {entry!r}")
        service = Service.from_dict(entry)
        state[service_key(service)] = service
    return state


class FileServiceWatcher(Thread):
    """Poll a JSON services file and publish service events."""

    def __init__(
        self,
        registry: ProviderRegistry,
        path: Path,
        interval: float,
        stop_event: Event,
    ) -> None:
        super().__init__(daemon=True, name=f"file-watcher:{path}")
        self._path = Path(path)
        self._interval = interval
        self._stop_event = stop_event
        self._tracker = ServiceStateTracker(registry)

    @property
    def services(self) -> Dict[ServiceKey, Service]:
        return self._tracker.services

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll()
            except Exception:  # pragma: no cover - logged below
                LOG.exception("file watcher encountered an error")
            self._stop_event.wait(self._interval)

    def poll(self) -> None:
        if not self._path.exists():
            LOG.debug("services file %s does not exist yet", self._path)
            return

        try:
            payload = json.loads(self._path.read_text())
        except json.JSONDecodeError as exc:
            LOG.warning("failed to parse services file %s: %s", self._path, exc)
            return

        try:
            desired = _extract_state(payload)
        except (KeyError, TypeError, ValueError) as exc:
            LOG.warning("invalid services file %s: %s", self._path, exc)
            return

        self._tracker.update(desired)
