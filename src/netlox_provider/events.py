"""Event primitives consumed by the provider registry."""

from __future__ import annotations

from dataclasses import dataclass

from netlox_lb.orchestrator import Service


@dataclass(frozen=True)
class ServiceUpsert:
    """A service was created or updated.

    The host delivers the full service object each time so handlers can
    reconcile without keeping their own copy.
    """

    service: Service


@dataclass(frozen=True)
class ServiceDelete:
    """A service was removed from the cluster."""

    service: Service
