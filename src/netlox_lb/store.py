"""Persistence of registry documents.

A *document* is a namespaced key/value record (a ConfigMap on Kubernetes).
The store only cares about durability: it never interprets the registry it
writes beyond serializing it into the well-known services key.

Every document carries an opaque ``resource_version``.  Stores must refuse an
update made against a stale version with :class:`DocumentConflict` so the
reconciler can re-read and re-apply its change instead of silently losing a
concurrent write.
"""

from __future__ import annotations

import copy
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import PROVIDER_ANNOTATION, PROVIDER_NAME, SERVICES_KEY
from .exceptions import DocumentConflict, DocumentExists, DocumentNotFound
from .services import ServiceRegistry

LOG = logging.getLogger(__name__)


@dataclass
class Document:
    """Namespaced key/value document.

    ``data`` and ``annotations`` are ``None`` until first written, mirroring a
    freshly created ConfigMap.  ``source`` holds the backend object the
    document was read from, so a store can write back fields it does not model.
    """

    name: str
    namespace: str
    data: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    resource_version: Optional[str] = None
    source: Any = field(default=None, compare=False, repr=False)

    def get(self, key: str) -> Optional[str]:
        if not self.data:
            return None
        return self.data.get(key)


class DocumentStore(ABC):
    """Read and write registry documents.

    No method retries; transient failures surface as
    :class:`~netlox_lb.exceptions.StoreError`.
    """

    def __init__(
        self,
        *,
        services_key: str = SERVICES_KEY,
        provider_name: str = PROVIDER_NAME,
    ) -> None:
        self.services_key = services_key
        self.provider_name = provider_name

    @abstractmethod
    def get(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        """Return the document or raise :class:`DocumentNotFound`."""

    @abstractmethod
    def create(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        """Create an empty document or raise :class:`DocumentExists`."""

    @abstractmethod
    def replace(self, document: Document, timeout: Optional[float] = None) -> Document:
        """Persist ``document`` if its ``resource_version`` is current.

        On success ``document.resource_version`` is advanced to the stored one.
        """

    def update(
        self,
        document: Document,
        registry: ServiceRegistry,
        timeout: Optional[float] = None,
    ) -> Document:
        """Serialize ``registry`` into ``document`` and persist it."""

        if document.data is None:
            document.data = {}
        if document.annotations is None:
            document.annotations = {PROVIDER_ANNOTATION: self.provider_name}

        document.data[self.services_key] = registry.serialize()
        LOG.debug(
            "writing %d bindings to %s/%s",
            len(registry),
            document.namespace,
            document.name,
        )
        return self.replace(document, timeout=timeout)


class MemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store with optimistic versioning."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._lock = Lock()
        self._documents: Dict[Tuple[str, str], Document] = {}
        self._versions = itertools.count(1)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def get(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        with self._lock:
            stored = self._documents.get((namespace, name))
            if stored is None:
                raise DocumentNotFound(name, namespace)
            return copy.deepcopy(stored)

    def create(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        with self._lock:
            key = (namespace, name)
            if key in self._documents:
                raise DocumentExists(name, namespace)
            document = Document(name=name, namespace=namespace, resource_version=self._next_version())
            self._documents[key] = document
            LOG.debug("created document %s/%s", namespace, name)
            return copy.deepcopy(document)

    def replace(self, document: Document, timeout: Optional[float] = None) -> Document:
        with self._lock:
            key = (document.namespace, document.name)
            stored = self._documents.get(key)
            if stored is None:
                raise DocumentNotFound(document.name, document.namespace)
            if stored.resource_version != document.resource_version:
                raise DocumentConflict(
                    f"document {document.namespace}/{document.name} changed "
                    f"(have {document.resource_version}, stored {stored.resource_version})"
                )
            updated = copy.deepcopy(document)
            updated.resource_version = self._next_version()
            self._documents[key] = updated
            document.resource_version = updated.resource_version
            return copy.deepcopy(updated)

    def seed(self, name: str, namespace: str, data: Mapping[str, str]) -> Document:
        """Create or overwrite a document with ``data`` (used for pool config)."""

        with self._lock:
            document = Document(
                name=name,
                namespace=namespace,
                data={str(k): str(v) for k, v in data.items()},
                resource_version=self._next_version(),
            )
            self._documents[(namespace, name)] = document
            return copy.deepcopy(document)
