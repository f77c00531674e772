"""Orchestrator-side view of a service exposed through a VIP.

These light-weight dataclasses carry the handful of fields the reconciler
reads from a cluster service object.  They are frozen so the reconciler can
never modify the caller's copy in place; the address it allocates is written
back through a :class:`ServiceWriter` on a copy made with
:func:`dataclasses.replace`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .exceptions import InvalidService, ServiceUpdateError

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServicePort:
    port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class LoadBalancerIngress:
    ip: str


@dataclass(frozen=True)
class LoadBalancerStatus:
    """Observable load balancer status (the ingress address list)."""

    ingress: Tuple[LoadBalancerIngress, ...] = ()

    @classmethod
    def for_address(cls, address: str) -> "LoadBalancerStatus":
        return cls(ingress=(LoadBalancerIngress(ip=address),))

    @property
    def addresses(self) -> Tuple[str, ...]:
        return tuple(entry.ip for entry in self.ingress)


@dataclass(frozen=True)
class Service:
    """Service object as seen by the provider.

    Attributes
    ----------
    uid:
        Stable identifier assigned by the orchestrator.
    load_balancer_ip:
        Requested address; empty means "allocate one from a pool".
    status:
        Current load balancer status reported by the orchestrator.
    """

    uid: str
    name: str
    namespace: str
    ports: Sequence[ServicePort] = ()
    load_balancer_ip: str = ""
    status: LoadBalancerStatus = field(default_factory=LoadBalancerStatus)

    @property
    def primary_port(self) -> ServicePort:
        if not self.ports:
            raise InvalidService(f"service {self.namespace}/{self.name} exposes no ports")
        return self.ports[0]

    def with_address(self, address: str) -> "Service":
        return replace(self, load_balancer_ip=address)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Service":
        """Build a service from its JSON form (camelCase keys)."""

        try:
            uid = str(data["uid"])
            name = str(data["name"])
        except KeyError as exc:
            raise InvalidService(f"service entry missing {exc.args[0]!r}") from None

        ports = tuple(
            ServicePort(port=int(p["port"]), protocol=str(p.get("protocol", "TCP")))
            for p in data.get("ports", [])
        )
        status_raw = data.get("status") or {}
        ingress = tuple(
            LoadBalancerIngress(ip=str(entry["ip"]))
            for entry in status_raw.get("ingress", [])
            if entry.get("ip")
        )
        return cls(
            uid=uid,
            name=name,
            namespace=str(data.get("namespace", "default")),
            ports=ports,
            load_balancer_ip=str(data.get("loadBalancerIP") or ""),
            status=LoadBalancerStatus(ingress=ingress),
        )


class ServiceWriter(ABC):
    """Writes the allocated address back onto the orchestrator's service."""

    @abstractmethod
    def update(self, service: Service, timeout: Optional[float] = None) -> None:
        """Persist ``service.load_balancer_ip`` on the desired-state record."""


class MemoryServiceWriter(ServiceWriter):
    """Keep written services in memory, keyed by ``(namespace, uid)``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._services: Dict[Tuple[str, str], Service] = {}

    def update(self, service: Service, timeout: Optional[float] = None) -> None:
        if not service.load_balancer_ip:
            raise ServiceUpdateError(
                f"refusing to record service {service.namespace}/{service.name} without an address"
            )
        with self._lock:
            self._services[(service.namespace, service.uid)] = service
        LOG.debug(
            "recorded address %s for service %s/%s",
            service.load_balancer_ip,
            service.namespace,
            service.name,
        )

    def get(self, namespace: str, uid: str) -> Optional[Service]:
        with self._lock:
            return self._services.get((namespace, uid))
