"""Virtual IP allocation for load-balanced cluster services.

This package hosts the allocation-and-reconciliation engine of the ``netlox``
load balancer provider.  Given a service that asks for external exposure it
decides whether the service is already bound to an address, leases a new one
from the configured pools when it is not, records the decision durably in a
per-namespace registry document and rolls the lease back if writing the
address to the orchestrator fails.

The building blocks, leaves first:

* :mod:`netlox_lb.services` - bindings and the per-namespace registry;
* :mod:`netlox_lb.store` - persistence of registry documents;
* :mod:`netlox_lb.pools` and :mod:`netlox_lb.ipam` - pool selection and
  address leasing; and
* :class:`netlox_lb.reconciler.Reconciler` - the state machine tying them
  together.

Kubernetes-backed adapters live in :mod:`netlox_lb.kube`; no other module of
this package imports the ``kubernetes`` client.
"""

from .reconciler import Reconciler  # noqa: F401

__all__ = ["Reconciler"]
