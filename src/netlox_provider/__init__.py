"""Host-facing side of the netlox load balancer provider.

The host runtime (a cloud-controller style manager) talks to the provider
through :class:`~netlox_provider.loadbalancer.LoadBalancer`.  Runtimes that
deliver change notifications instead of direct calls can publish
:class:`ServiceUpsert` / :class:`ServiceDelete` events into a
:class:`ProviderRegistry`, which fans them out to registered handlers.
"""

from .events import ServiceDelete, ServiceUpsert  # noqa: F401
from .loadbalancer import LoadBalancer  # noqa: F401
from .registry import ProviderRegistry  # noqa: F401

__all__ = [
    "LoadBalancer",
    "ProviderRegistry",
    "ServiceDelete",
    "ServiceUpsert",
]
