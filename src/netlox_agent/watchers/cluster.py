"""Kubernetes API poller for load balancer services."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Any, Dict, Mapping, Optional

from netlox_lb.exceptions import ServiceListError
from netlox_lb.kube import list_load_balancer_services
from netlox_lb.orchestrator import Service
from netlox_provider import ProviderRegistry

from .state import ServiceKey, ServiceStateTracker, service_key

LOG = logging.getLogger(__name__)


class KubernetesServiceWatcher(Thread):
    """Poll the API server for ``type: LoadBalancer`` Services.

    A failed list keeps the last known state; only a successful list can
    turn into delete events.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        api: Any,
        *,
        interval: float,
        stop_event: Event,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        super().__init__(daemon=True, name="kubernetes-watcher")
        self._api = api
        self._interval = interval
        self._stop = stop_event
        self._namespace = namespace
        self._label_selector = label_selector
        self._request_timeout = request_timeout
        self._tracker = ServiceStateTracker(registry)

    @property
    def services(self) -> Dict[ServiceKey, Service]:
        return self._tracker.services

    def run(self) -> None:
        LOG.info(
            "Starting kubernetes service watcher (namespace=%s, interval=%ss)",
            self._namespace or "<all>",
            self._interval,
        )
        while not self._stop.is_set():
            try:
                self.poll()
            except Exception:  # pragma: no cover - logged below
                LOG.exception("kubernetes watcher encountered an error")
            self._stop.wait(self._interval)
        LOG.info("Stopping kubernetes service watcher")

    def poll(self) -> None:
        try:
            services = list_load_balancer_services(
                self._api,
                namespace=self._namespace,
                label_selector=self._label_selector,
                timeout=self._request_timeout,
            )
        except ServiceListError as exc:
            LOG.warning("failed to list services: %s", exc)
            return

        LOG.debug("kubernetes poll found %d load balancer services", len(services))
        self._tracker.update({service_key(service): service for service in services})


def create_kubernetes_watcher(
    registry: ProviderRegistry,
    api: Any,
    options: Mapping[str, Any],
    stop_event: Event,
    default_interval: float,
) -> KubernetesServiceWatcher:
    timeout = options.get("request_timeout")
    return KubernetesServiceWatcher(
        registry,
        api,
        interval=float(options.get("interval", default_interval)),
        stop_event=stop_event,
        namespace=options.get("namespace") or None,
        label_selector=options.get("label_selector") or None,
        request_timeout=float(timeout) if timeout is not None else None,
    )
