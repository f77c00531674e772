"""Kubernetes adapters: ConfigMap-backed documents and Service write-back.

Only this module imports the ``kubernetes`` client so the rest of the package
(and its tests) stays independent of a live cluster.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from .exceptions import (
    DocumentConflict,
    DocumentExists,
    DocumentNotFound,
    ServiceListError,
    ServiceUpdateError,
    StoreError,
)
from .orchestrator import (
    LoadBalancerIngress,
    LoadBalancerStatus,
    Service,
    ServicePort,
    ServiceWriter,
)
from .store import Document, DocumentStore

LOG = logging.getLogger(__name__)


def build_core_api(in_cluster: bool = True, kubeconfig: Optional[str] = None) -> client.CoreV1Api:
    """Load cluster credentials and return a ``CoreV1Api`` client."""

    if in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=kubeconfig)
    return client.CoreV1Api()


def _request_kwargs(timeout: Optional[float]) -> Dict[str, Any]:
    if timeout is None:
        return {}
    return {"_request_timeout": timeout}


def _to_document(config_map: Any, name: str, namespace: str) -> Document:
    metadata = config_map.metadata
    annotations = getattr(metadata, "annotations", None) if metadata else None
    return Document(
        name=getattr(metadata, "name", None) or name,
        namespace=getattr(metadata, "namespace", None) or namespace,
        data=dict(config_map.data) if config_map.data is not None else None,
        annotations=dict(annotations) if annotations is not None else None,
        resource_version=getattr(metadata, "resource_version", None) if metadata else None,
        source=config_map,
    )


def _config_map_body(document: Document) -> client.V1ConfigMap:
    """Apply ``document`` onto the ConfigMap it was read from.

    Labels, owner references, finalizers and ``binaryData`` of the stored
    object are sent back unchanged.
    """

    if isinstance(document.source, client.V1ConfigMap):
        body = copy.deepcopy(document.source)
    else:
        body = client.V1ConfigMap()
    if body.metadata is None:
        body.metadata = client.V1ObjectMeta()
    body.metadata.name = document.name
    body.metadata.namespace = document.namespace
    body.metadata.annotations = document.annotations
    body.metadata.resource_version = document.resource_version
    body.data = document.data
    return body


class ConfigMapStore(DocumentStore):
    """Store registry documents as ConfigMaps.

    Updates use ``replace`` with the document's ``resourceVersion`` so the API
    server rejects stale writes with HTTP 409.
    """

    def __init__(self, api: client.CoreV1Api, **kwargs) -> None:
        super().__init__(**kwargs)
        self._api = api

    def get(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        try:
            config_map = self._api.read_namespaced_config_map(name, namespace, **_request_kwargs(timeout))
        except ApiException as exc:
            if exc.status == 404:
                raise DocumentNotFound(name, namespace) from exc
            raise StoreError(f"reading configMap {namespace}/{name} failed: {exc.reason}") from exc
        except TransportError as exc:
            raise StoreError(f"reading configMap {namespace}/{name} failed: {exc}") from exc
        return _to_document(config_map, name, namespace)

    def create(self, name: str, namespace: str, timeout: Optional[float] = None) -> Document:
        body = client.V1ConfigMap(metadata=client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            config_map = self._api.create_namespaced_config_map(namespace, body, **_request_kwargs(timeout))
        except ApiException as exc:
            if exc.status == 409:
                raise DocumentExists(name, namespace) from exc
            raise StoreError(f"creating configMap {namespace}/{name} failed: {exc.reason}") from exc
        except TransportError as exc:
            raise StoreError(f"creating configMap {namespace}/{name} failed: {exc}") from exc
        LOG.info("created configMap %s/%s", namespace, name)
        return _to_document(config_map, name, namespace)

    def replace(self, document: Document, timeout: Optional[float] = None) -> Document:
        body = _config_map_body(document)
        try:
            config_map = self._api.replace_namespaced_config_map(
                document.name, document.namespace, body, **_request_kwargs(timeout)
            )
        except ApiException as exc:
            if exc.status == 409:
                raise DocumentConflict(
                    f"configMap {document.namespace}/{document.name} was modified concurrently"
                ) from exc
            if exc.status == 404:
                raise DocumentNotFound(document.name, document.namespace) from exc
            raise StoreError(
                f"updating configMap {document.namespace}/{document.name} failed: {exc.reason}"
            ) from exc
        except TransportError as exc:
            raise StoreError(f"updating configMap {document.namespace}/{document.name} failed: {exc}") from exc
        stored = _to_document(config_map, document.name, document.namespace)
        document.resource_version = stored.resource_version
        document.source = stored.source
        return stored


class KubeServiceWriter(ServiceWriter):
    """Patch ``spec.loadBalancerIP`` on the Kubernetes Service."""

    def __init__(self, api: client.CoreV1Api) -> None:
        self._api = api

    def update(self, service: Service, timeout: Optional[float] = None) -> None:
        body = {"spec": {"loadBalancerIP": service.load_balancer_ip}}
        try:
            self._api.patch_namespaced_service(
                service.name, service.namespace, body, **_request_kwargs(timeout)
            )
        except (ApiException, TransportError) as exc:
            raise ServiceUpdateError(f"Error updating Service Spec [{service.name}] : {exc}") from exc


def service_from_kubernetes(obj: Any) -> Service:
    """Convert a ``V1Service`` into the provider's :class:`Service` view."""

    metadata = obj.metadata
    spec = obj.spec
    ports = tuple(
        ServicePort(port=int(p.port), protocol=str(p.protocol or "TCP"))
        for p in (spec.ports or [])
    )

    ingress = ()
    lb_status = getattr(obj.status, "load_balancer", None) if obj.status else None
    if lb_status is not None and lb_status.ingress:
        ingress = tuple(
            LoadBalancerIngress(ip=entry.ip or entry.hostname)
            for entry in lb_status.ingress
            if entry.ip or entry.hostname
        )

    return Service(
        uid=str(metadata.uid),
        name=str(metadata.name),
        namespace=str(metadata.namespace or "default"),
        ports=ports,
        load_balancer_ip=spec.load_balancer_ip or "",
        status=LoadBalancerStatus(ingress=ingress),
    )


def list_load_balancer_services(
    api: client.CoreV1Api,
    namespace: Optional[str] = None,
    label_selector: Optional[str] = None,
    timeout: Optional[float] = None,
) -> List[Service]:
    """Return every ``type: LoadBalancer`` Service, cluster-wide or in ``namespace``."""

    kwargs = _request_kwargs(timeout)
    if label_selector:
        kwargs["label_selector"] = label_selector
    try:
        if namespace:
            result = api.list_namespaced_service(namespace, **kwargs)
        else:
            result = api.list_service_for_all_namespaces(**kwargs)
    except ApiException as exc:
        raise ServiceListError(f"listing services failed: {exc.reason}") from exc
    except TransportError as exc:
        raise ServiceListError(f"listing services failed: {exc}") from exc

    return [
        service_from_kubernetes(item)
        for item in result.items or []
        if item.spec is not None and item.spec.type == "LoadBalancer"
    ]
