"""Address leasing for CIDR and range pools."""

from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, FrozenSet, Iterator, List, Set, Union

from .exceptions import InvalidPool, LeaseNotFound, PoolExhausted

LOG = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPAM(ABC):
    """Lease addresses out of pools on behalf of a namespace."""

    @abstractmethod
    def allocate_from_cidr(self, namespace: str, cidr: str) -> str:
        """Lease an unused host address from ``cidr``."""

    @abstractmethod
    def allocate_from_range(self, namespace: str, ip_range: str) -> str:
        """Lease an unused address from ``start-end``."""

    @abstractmethod
    def reserve(self, namespace: str, address: str) -> bool:
        """Lease a specific ``address``; ``False`` if it was already leased.

        Raises ``ValueError`` when ``address`` is not an IP address.
        """

    @abstractmethod
    def release(self, namespace: str, address: str) -> None:
        """Return ``address`` to the pool."""


def _split(value: str) -> List[str]:
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


def _cidr_hosts(cidr: str) -> Iterator[IPAddress]:
    try:
        network = ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise InvalidPool(f"invalid CIDR '{cidr}': {exc}") from exc
    # hosts() skips network/broadcast except for /31, /32 (and v6 equivalents).
    return iter(network.hosts())


def _range_hosts(ip_range: str) -> Iterator[IPAddress]:
    start_raw, sep, end_raw = ip_range.partition("-")
    if not sep:
        raise InvalidPool(f"invalid range '{ip_range}': expected <start>-<end>")
    try:
        start = ipaddress.ip_address(start_raw.strip())
        end = ipaddress.ip_address(end_raw.strip())
    except ValueError as exc:
        raise InvalidPool(f"invalid range '{ip_range}': {exc}") from exc
    if start.version != end.version:
        raise InvalidPool(f"invalid range '{ip_range}': mixed address families")
    if start > end:
        raise InvalidPool(f"invalid range '{ip_range}': start is after end")

    def _walk() -> Iterator[IPAddress]:
        current = start
        while current <= end:
            yield current
            current = current + 1

    return _walk()


class AddressManager(IPAM):
    """In-process IPAM tracking leased addresses per namespace.

    Both allocation methods accept a comma-separated list of pools and try
    them in order.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._leases: Dict[str, Set[str]] = {}

    def _allocate(self, namespace: str, pools: str, hosts, kind: str) -> str:
        candidates = _split(pools)
        if not candidates:
            raise InvalidPool(f"empty {kind} pool definition")

        # Parse every pool before taking the lock so bad input fails fast.
        iterators = [hosts(pool) for pool in candidates]
        with self._lock:
            leased = self._leases.setdefault(namespace, set())
            for pool, addresses in zip(candidates, iterators):
                for address in addresses:
                    text = str(address)
                    if text not in leased:
                        leased.add(text)
                        LOG.debug("leased %s from %s pool %s for namespace %s", text, kind, pool, namespace)
                        return text
        raise PoolExhausted(f"no free address left in {kind} pool '{pools}' for namespace '{namespace}'")

    def allocate_from_cidr(self, namespace: str, cidr: str) -> str:
        return self._allocate(namespace, cidr, _cidr_hosts, "cidr")

    def allocate_from_range(self, namespace: str, ip_range: str) -> str:
        return self._allocate(namespace, ip_range, _range_hosts, "range")

    def reserve(self, namespace: str, address: str) -> bool:
        """Mark an externally chosen ``address`` as leased.

        Returns ``False`` when it was already leased.
        """

        text = str(ipaddress.ip_address(address))
        with self._lock:
            leased = self._leases.setdefault(namespace, set())
            if text in leased:
                return False
            leased.add(text)
            return True

    def release(self, namespace: str, address: str) -> None:
        with self._lock:
            leased = self._leases.get(namespace)
            if not leased or address not in leased:
                raise LeaseNotFound(namespace, address)
            leased.discard(address)
        LOG.debug("released %s in namespace %s", address, namespace)

    def leases(self, namespace: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._leases.get(namespace, ()))
