"""Turn snapshots of desired services into provider events."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Tuple

from netlox_lb.exceptions import NetloxError
from netlox_lb.orchestrator import Service
from netlox_provider import ProviderRegistry
from netlox_provider.events import ServiceDelete, ServiceUpsert

LOG = logging.getLogger(__name__)

ServiceKey = Tuple[str, str]


def service_key(service: Service) -> ServiceKey:
    return (service.namespace, service.uid)


class ServiceStateTracker:
    """Diff successive snapshots and publish what changed.

    Only services whose event was handled are remembered, so a failed upsert
    or delete is attempted again with the next snapshot.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry
        self._current: Dict[ServiceKey, Service] = {}

    @property
    def services(self) -> Dict[ServiceKey, Service]:
        return dict(self._current)

    def update(self, desired: Mapping[ServiceKey, Service]) -> None:
        for key, service in desired.items():
            if self._current.get(key) == service:
                continue
            LOG.debug("service %s/%s updated", service.namespace, service.name)
            try:
                self._registry.handle(ServiceUpsert(service))
            except NetloxError as exc:
                LOG.warning("failed to reconcile service %s/%s: %s", service.namespace, service.name, exc)
                continue
            self._current[key] = service

        for key in set(self._current) - set(desired):
            service = self._current[key]
            LOG.debug("service %s/%s removed", service.namespace, service.name)
            try:
                self._registry.handle(ServiceDelete(service))
            except NetloxError as exc:
                LOG.warning("failed to delete service %s/%s: %s", service.namespace, service.name, exc)
                continue
            del self._current[key]
