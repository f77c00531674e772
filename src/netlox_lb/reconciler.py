"""Allocation and reconciliation of service VIPs.

The reconciler drives a service through ``Unbound -> Bound -> Unbound``:

* :meth:`Reconciler.ensure` binds an unbound service to an address (either the
  one the service requested or one leased from the configured pools), writes
  the address back to the orchestrator and records the binding in the
  namespace registry document.  Ensuring an already bound service is a no-op
  and never touches IPAM.  Leases live in process memory, so before leasing
  the reconciler reserves every VIP already recorded for the namespace.
* :meth:`Reconciler.delete` drops the binding and releases the lease.

Calls for the same namespace are serialized with an in-process lock, and
registry writes are compare-and-swap against the document version so writers
in other processes cannot silently overwrite each other.
"""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, Iterator, Optional, Tuple

from .config import ProviderSettings
from .context import OperationContext
from .exceptions import (
    DocumentConflict,
    DocumentExists,
    DocumentNotFound,
    InvalidService,
    LeaseReleaseError,
    RegistryDecodeError,
)
from .ipam import IPAM
from .orchestrator import LoadBalancerStatus, Service, ServiceWriter
from .pools import PoolConfig, resolve_address
from .services import ServiceBinding, ServiceRegistry
from .store import Document, DocumentStore

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseReleaseFailure:
    """A lease that could not be returned to its pool."""

    namespace: str
    address: str
    reason: str


@dataclass
class ReconcilerState:
    """Mutable runtime state tracked by the reconciler."""

    release_failures: Deque[LeaseReleaseFailure] = field(default_factory=lambda: deque(maxlen=100))


class NamespaceLocks:
    """Hand out one lock per namespace."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    @contextmanager
    def hold(self, namespace: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(namespace, Lock())
        with lock:
            yield


class Reconciler:
    """Bind services to VIPs and keep the namespace registries in sync."""

    def __init__(
        self,
        store: DocumentStore,
        ipam: IPAM,
        writer: ServiceWriter,
        settings: Optional[ProviderSettings] = None,
    ) -> None:
        self._store = store
        self._ipam = ipam
        self._writer = writer
        self._settings = settings or ProviderSettings()
        self._locks = NamespaceLocks()
        self._state = ReconcilerState()

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def release_failures(self) -> Tuple[LeaseReleaseFailure, ...]:
        return tuple(self._state.release_failures)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def ensure(self, service: Service, ctx: Optional[OperationContext] = None) -> LoadBalancerStatus:
        """Bind ``service`` to an address unless it is already bound."""

        ctx = ctx or OperationContext()
        if not service.ports:
            raise InvalidService(f"service {service.namespace}/{service.name} exposes no ports")

        with self._locks.hold(service.namespace):
            pool_document = self._load_or_create(
                self._settings.config_document, self._settings.config_namespace, ctx
            )
            document = self._load_or_create(self._settings.registry_document, service.namespace, ctx)

            LOG.info("syncing service '%s' (%s)", service.name, service.uid)
            registry = self._read_registry(document)

            existing = registry.find(service.uid)
            if existing is not None:
                LOG.info(
                    "found existing service '%s' (%s) with vip %s",
                    service.name,
                    service.uid,
                    existing.vip,
                )
                return self.recorded_status(service, existing)

            self._adopt(service.namespace, registry)

            address = service.load_balancer_ip
            if address:
                leased = self._reserve_requested(service)
            else:
                ctx.check()
                address = resolve_address(
                    PoolConfig.from_data(pool_document.data),
                    service.namespace,
                    self._ipam,
                    pool_document.name,
                )
                leased = True

            binding = ServiceBinding.for_service(service, address)
            LOG.info("Updating service [%s], with load balancer address [%s]", service.name, address)
            try:
                ctx.check()
                self._writer.update(service.with_address(address), timeout=self._timeout(ctx))
            except Exception:
                if leased:
                    self._release(service.namespace, address)
                raise

            stored = self._record(document, registry, binding, ctx)
            if stored.vip != address:
                return self._yield_to(service, stored, address, leased, ctx)
            return LoadBalancerStatus.for_address(address)

    def delete(self, service: Service, ctx: Optional[OperationContext] = None) -> None:
        """Drop the binding for ``service`` and release its lease."""

        ctx = ctx or OperationContext()
        LOG.info("deleting service '%s' (%s)", service.name, service.uid)

        with self._locks.hold(service.namespace):
            ctx.check()
            try:
                document = self._store.get(
                    self._settings.registry_document, service.namespace, timeout=self._timeout(ctx)
                )
            except DocumentNotFound:
                LOG.info(
                    "registry document [%s] doesn't exist in %s, nothing to delete",
                    self._settings.registry_document,
                    service.namespace,
                )
                return

            try:
                registry = ServiceRegistry.deserialize(document.get(self._settings.services_key))
            except RegistryDecodeError as exc:
                LOG.warning(
                    "registry in [%s/%s] is unreadable, treating '%s' as deleted: %s",
                    service.namespace,
                    document.name,
                    service.name,
                    exc,
                )
                return

            self._adopt(service.namespace, registry)
            binding = registry.find(service.uid)
            address = service.load_balancer_ip or (binding.vip if binding else "")
            if address and (service.status.ingress or binding is not None):
                self._release(service.namespace, address)

            if binding is None:
                LOG.debug("service '%s' (%s) has no binding", service.name, service.uid)
                return

            self._write_with_retry(
                document,
                registry,
                lambda current: current.remove_by_uid(service.uid),
                ctx,
            )

    def lookup(self, service: Service, ctx: Optional[OperationContext] = None) -> Optional[ServiceBinding]:
        """Return the recorded binding for ``service`` without changing anything."""

        ctx = ctx or OperationContext()
        ctx.check()
        try:
            document = self._store.get(
                self._settings.registry_document, service.namespace, timeout=self._timeout(ctx)
            )
        except DocumentNotFound:
            return None
        blob = document.get(self._settings.services_key)
        if blob is None:
            return None
        # Unlike ensure, a lookup reports an unreadable registry to the caller.
        return ServiceRegistry.deserialize(blob).find(service.uid)

    @staticmethod
    def recorded_status(service: Service, binding: ServiceBinding) -> LoadBalancerStatus:
        """Status of a bound service: its reported status, else the bound VIP."""

        if service.status.ingress:
            return service.status
        return LoadBalancerStatus.for_address(binding.vip)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _timeout(self, ctx: OperationContext) -> Optional[float]:
        return ctx.timeout_for(self._settings.request_timeout)

    def _load_or_create(self, name: str, namespace: str, ctx: OperationContext) -> Document:
        ctx.check()
        try:
            return self._store.get(name, namespace, timeout=self._timeout(ctx))
        except DocumentNotFound:
            LOG.info("document [%s] not found in %s, creating it", name, namespace)

        ctx.check()
        try:
            return self._store.create(name, namespace, timeout=self._timeout(ctx))
        except DocumentExists:
            # Another writer created it between our get and create.
            return self._store.get(name, namespace, timeout=self._timeout(ctx))

    def _read_registry(self, document: Document) -> ServiceRegistry:
        blob = document.get(self._settings.services_key)
        if blob is None:
            return ServiceRegistry()
        try:
            return ServiceRegistry.deserialize(blob)
        except RegistryDecodeError as exc:
            LOG.warning(
                "Unable to read services from [%s/%s], starting from an empty registry: %s",
                document.namespace,
                document.name,
                exc,
            )
            return ServiceRegistry()

    def _adopt(self, namespace: str, registry: ServiceRegistry) -> None:
        """Reserve every recorded VIP so the pools skip it."""

        adopted = 0
        for binding in registry:
            try:
                if self._ipam.reserve(namespace, binding.vip):
                    adopted += 1
            except ValueError:
                LOG.warning(
                    "service '%s' (%s) in %s has an invalid vip %r, skipping",
                    binding.name,
                    binding.uid,
                    namespace,
                    binding.vip,
                )
        if adopted:
            LOG.info("adopted %d recorded addresses in namespace %s", adopted, namespace)

    def _reserve_requested(self, service: Service) -> bool:
        """Lease the address the service asked for; ``True`` if this call leased it."""

        try:
            leased = self._ipam.reserve(service.namespace, service.load_balancer_ip)
        except ValueError as exc:
            raise InvalidService(
                f"service {service.namespace}/{service.name} requests an invalid "
                f"address {service.load_balancer_ip!r}"
            ) from exc
        if not leased:
            LOG.warning(
                "requested address %s for service '%s' is already leased in %s",
                service.load_balancer_ip,
                service.name,
                service.namespace,
            )
        return leased

    def _yield_to(
        self,
        service: Service,
        stored: ServiceBinding,
        address: str,
        leased: bool,
        ctx: OperationContext,
    ) -> LoadBalancerStatus:
        """Adopt a binding another writer recorded first and drop our own address."""

        LOG.info(
            "service '%s' (%s) is bound to %s, dropping %s",
            service.name,
            service.uid,
            stored.vip,
            address,
        )
        if leased:
            self._release(service.namespace, address)
        self._adopt(service.namespace, ServiceRegistry([stored]))
        ctx.check()
        self._writer.update(service.with_address(stored.vip), timeout=self._timeout(ctx))
        return self.recorded_status(service, stored)

    def _record(
        self,
        document: Document,
        registry: ServiceRegistry,
        binding: ServiceBinding,
        ctx: OperationContext,
    ) -> ServiceBinding:
        """Persist ``binding`` and return the binding the registry ends up with."""

        winner = binding

        def _insert(current: ServiceRegistry) -> Optional[ServiceRegistry]:
            nonlocal winner
            if not current.insert_if_absent(binding):
                winner = current.find(binding.uid) or binding
                LOG.warning(
                    "service '%s' (%s) was recorded concurrently, keeping the stored binding",
                    binding.name,
                    binding.uid,
                )
                return None
            winner = binding
            return current

        self._write_with_retry(document, registry, _insert, ctx)
        return winner

    def _write_with_retry(
        self,
        document: Document,
        registry: ServiceRegistry,
        mutate: Callable[[ServiceRegistry], Optional[ServiceRegistry]],
        ctx: OperationContext,
    ) -> None:
        """Apply ``mutate`` to the registry and write it, re-reading on conflict.

        ``mutate`` returns the registry to persist, or ``None`` to skip the
        write.
        """

        retries = self._settings.conflict_retries
        current = registry
        for attempt in range(retries + 1):
            updated = mutate(current)
            if updated is None:
                return
            ctx.check()
            try:
                self._store.update(document, updated, timeout=self._timeout(ctx))
                return
            except DocumentConflict:
                if attempt >= retries:
                    raise
                LOG.info(
                    "registry [%s/%s] changed concurrently, retrying (%d/%d)",
                    document.namespace,
                    document.name,
                    attempt + 1,
                    retries,
                )
            document = self._load_or_create(document.name, document.namespace, ctx)
            current = self._read_registry(document)

    def _release(self, namespace: str, address: str) -> None:
        try:
            self._ipam.release(namespace, address)
        except LeaseReleaseError as exc:
            LOG.warning("failed to release %s in namespace %s: %s", address, namespace, exc)
            self._state.release_failures.append(
                LeaseReleaseFailure(namespace=namespace, address=address, reason=str(exc))
            )
