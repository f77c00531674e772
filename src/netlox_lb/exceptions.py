"""Error kinds raised by the VIP allocation engine."""

from __future__ import annotations


class NetloxError(Exception):
    """Base class for all provider errors."""


class DocumentNotFound(NetloxError):
    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(f"document '{name}' not found in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class DocumentExists(NetloxError):
    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(f"document '{name}' already exists in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class DocumentConflict(NetloxError):
    """The document changed since it was read."""


class StoreError(NetloxError):
    """Transient failure talking to the backing document store."""


class NoPoolConfigured(NetloxError):
    def __init__(self, namespace: str, document: str) -> None:
        super().__init__(
            f"no address pool for namespace '{namespace}' in '{document}': "
            "expected one of cidr-<namespace>, cidr-global, range-<namespace>, range-global"
        )
        self.namespace = namespace
        self.document = document


class PoolExhausted(NetloxError):
    """Every address in the selected pool is already leased."""


class InvalidPool(NetloxError, ValueError):
    """A pool definition could not be parsed."""


class LeaseReleaseError(NetloxError):
    """Releasing an address lease failed."""


class LeaseNotFound(LeaseReleaseError):
    def __init__(self, namespace: str, address: str) -> None:
        super().__init__(f"address {address} is not leased in namespace '{namespace}'")
        self.namespace = namespace
        self.address = address


class ServiceUpdateError(NetloxError):
    """Writing the allocated address back to the orchestrator failed."""


class ServiceListError(NetloxError):
    """Listing services from the orchestrator failed."""


class RegistryDecodeError(NetloxError, ValueError):
    """A persisted registry blob could not be decoded."""


class InvalidService(NetloxError, ValueError):
    """A service object cannot be bound (e.g. it exposes no ports)."""


class ReconcileCancelled(NetloxError):
    """The caller cancelled the operation or its deadline passed."""
