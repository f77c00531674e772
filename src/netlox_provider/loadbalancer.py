"""Load balancer lifecycle entry points exposed to the host runtime."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from netlox_lb.context import OperationContext
from netlox_lb.ipam import IPAM, AddressManager
from netlox_lb.orchestrator import LoadBalancerStatus, Service, ServiceWriter
from netlox_lb.reconciler import Reconciler
from netlox_lb.store import DocumentStore

from .base import ServiceHandler
from .opts import register_provider_opts, settings_from_conf

LOG = logging.getLogger(__name__)

MAX_NAME_SUFFIX = 32


def load_balancer_name(service: Service) -> str:
    """Deterministic name for ``service``: ``<namespace>-a<uid without dashes>``.

    The uid part is capped at 32 characters.
    """

    suffix = ("a" + service.uid).replace("-", "")[:MAX_NAME_SUFFIX]
    return f"{service.namespace}-{suffix}"


class LoadBalancer(ServiceHandler):
    """Wrap :class:`~netlox_lb.reconciler.Reconciler` for the host runtime.

    Implementations of the host contract must treat ``service`` and ``nodes``
    as read-only; the reconciler works on copies.
    """

    def __init__(self, reconciler: Reconciler) -> None:
        self._reconciler = reconciler

    @classmethod
    def from_conf(
        cls,
        store: DocumentStore,
        writer: ServiceWriter,
        conf=None,
        ipam: Optional[IPAM] = None,
    ) -> "LoadBalancer":
        """Build a load balancer configured from the ``[netlox]`` oslo.config group.

        The options are registered on ``conf`` (``cfg.CONF`` by default) if the
        host has not done so.  ``store`` should be created with the same
        ``services_key``.
        """

        conf = register_provider_opts(conf)
        settings = settings_from_conf(conf)
        reconciler = Reconciler(store, ipam or AddressManager(), writer, settings=settings)
        return cls(reconciler)

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def name(self, service: Service) -> str:
        return load_balancer_name(service)

    def get_status(
        self, service: Service, ctx: Optional[OperationContext] = None
    ) -> Tuple[Optional[LoadBalancerStatus], bool]:
        """Return ``(status, exists)`` for ``service``."""

        binding = self._reconciler.lookup(service, ctx)
        if binding is None:
            return None, False
        return self._reconciler.recorded_status(service, binding), True

    def ensure(
        self,
        service: Service,
        nodes: Sequence[str] = (),
        ctx: Optional[OperationContext] = None,
    ) -> LoadBalancerStatus:
        LOG.debug("ensure %s for %d nodes", self.name(service), len(nodes))
        return self._reconciler.ensure(service, ctx)

    def update(
        self,
        service: Service,
        nodes: Sequence[str] = (),
        ctx: Optional[OperationContext] = None,
    ) -> None:
        self.ensure(service, nodes, ctx)

    def ensure_deleted(self, service: Service, ctx: Optional[OperationContext] = None) -> None:
        self._reconciler.delete(service, ctx)

    def on_service_upsert(self, service: Service) -> None:
        self.update(service)

    def on_service_delete(self, service: Service) -> None:
        self.ensure_deleted(service)
