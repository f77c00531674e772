"""Service-to-VIP bindings and their per-namespace registry."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Union

from .exceptions import RegistryDecodeError
from .orchestrator import Service


@dataclass(frozen=True)
class ServiceBinding:
    """One allocation record: a service uid bound to its VIP and port."""

    uid: str
    name: str
    vip: str
    port: int
    protocol: str

    @classmethod
    def for_service(cls, service: Service, vip: str) -> "ServiceBinding":
        # Only the first port is tracked; multi-port services are not supported.
        port = service.primary_port
        return cls(
            uid=service.uid,
            name=service.name,
            vip=vip,
            port=int(port.port),
            protocol=str(port.protocol),
        )

    def to_dict(self) -> dict:
        return {
            "vip": self.vip,
            "port": self.port,
            "type": self.protocol,
            "uid": self.uid,
            "serviceName": self.name,
        }

    @classmethod
    def from_dict(cls, entry: dict) -> "ServiceBinding":
        if not isinstance(entry, dict):
            raise RegistryDecodeError(f"service entry must be an object, got {type(entry).__name__}")
        try:
            return cls(
                uid=str(entry.get("uid", "")),
                name=str(entry.get("serviceName", "")),
                vip=str(entry.get("vip", "")),
                port=int(entry.get("port", 0)),
                protocol=str(entry.get("type", "")),
            )
        except (TypeError, ValueError) as exc:
            raise RegistryDecodeError(f"invalid service entry {entry!r}: {exc}") from exc


@dataclass
class ServiceRegistry:
    """Ordered bindings for one namespace.

    ``add`` appends blindly; use :meth:`insert_if_absent` when the uid may
    already be present.
    """

    services: List[ServiceBinding] = field(default_factory=list)

    def __iter__(self) -> Iterator[ServiceBinding]:
        return iter(self.services)

    def __len__(self) -> int:
        return len(self.services)

    def find(self, uid: str) -> Optional[ServiceBinding]:
        return next((s for s in self.services if s.uid == uid), None)

    def add(self, binding: ServiceBinding) -> None:
        self.services.append(binding)

    def insert_if_absent(self, binding: ServiceBinding) -> bool:
        """Append ``binding`` unless its uid is already bound.

        Returns ``True`` when the binding was added.
        """

        if self.find(binding.uid) is not None:
            return False
        self.services.append(binding)
        return True

    def remove_by_uid(self, uid: str) -> "ServiceRegistry":
        """Return a new registry without the binding for ``uid``."""

        return ServiceRegistry(services=[s for s in self.services if s.uid != uid])

    def serialize(self) -> str:
        return json.dumps({"services": [s.to_dict() for s in self.services]})

    @classmethod
    def deserialize(cls, blob: Union[str, bytes, None]) -> "ServiceRegistry":
        if blob is None or not blob.strip():
            raise RegistryDecodeError("registry blob is empty")
        try:
            payload = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RegistryDecodeError(f"registry blob is not valid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise RegistryDecodeError("registry blob must be a JSON object")
        entries = payload.get("services")
        # A registry written with no bindings may carry ``null``.
        if entries is None:
            return cls()
        if not isinstance(entries, list):
            raise RegistryDecodeError("'services' must be a list")
        return cls(services=[ServiceBinding.from_dict(entry) for entry in entries])
