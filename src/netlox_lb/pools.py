"""Address pool selection.

Pools are configured in a cluster-scoped document whose keys follow
``cidr-<namespace>``, ``cidr-global``, ``range-<namespace>`` and
``range-global``.  Selection order is namespace CIDR, global CIDR, namespace
range, global range: CIDR pools always win over range pools, and within a
kind the namespace pool wins over the global one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Optional, Tuple

from .exceptions import NoPoolConfigured
from .ipam import IPAM

LOG = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
CIDR = "cidr"
RANGE = "range"


def pool_key(kind: str, scope: str) -> str:
    return f"{kind}-{scope}"


@dataclass(frozen=True)
class PoolChoice:
    """The pool chosen for an allocation."""

    kind: str
    key: str
    value: str


@dataclass(frozen=True)
class PoolConfig:
    """Read-only view over the pool configuration document."""

    entries: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Optional[Mapping[str, str]]) -> "PoolConfig":
        return cls(entries=dict(data or {}))

    def _candidates(self, namespace: str) -> Iterator[Tuple[str, str]]:
        for kind in (CIDR, RANGE):
            yield kind, pool_key(kind, namespace)
            yield kind, pool_key(kind, GLOBAL_SCOPE)

    def select(self, namespace: str) -> Optional[PoolChoice]:
        """Return the first configured pool for ``namespace`` or ``None``."""

        for kind, key in self._candidates(namespace):
            value = self.entries.get(key)
            if value:
                return PoolChoice(kind=kind, key=key, value=value)
            LOG.debug("no %s pool under key [%s]", kind, key)
        return None


def resolve_address(
    pools: PoolConfig,
    namespace: str,
    ipam: IPAM,
    document_name: str,
) -> str:
    """Lease an address for ``namespace`` from the highest-priority pool.

    ``document_name`` is used only to make :class:`NoPoolConfigured` point at
    the document an operator has to edit.
    """

    choice = pools.select(namespace)
    if choice is None:
        raise NoPoolConfigured(namespace, document_name)

    LOG.info("Taking address from [%s] pool for namespace %s", choice.key, namespace)
    if choice.kind == CIDR:
        return ipam.allocate_from_cidr(namespace, choice.value)
    return ipam.allocate_from_range(namespace, choice.value)
