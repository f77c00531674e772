"""Provider-level settings shared by the reconciler and its adapters.

Settings are passed explicitly into the :class:`~netlox_lb.reconciler.Reconciler`
instead of living in module globals, so several providers with different
document names can coexist in one process (tests rely on this).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

PROVIDER_NAME = "netlox"
DEFAULT_DOCUMENT = "netlox"
DEFAULT_CONFIG_NAMESPACE = "kube-system"
SERVICES_KEY = "netlox-services"
PROVIDER_ANNOTATION = "provider"


@dataclass(frozen=True)
class ProviderSettings:
    """Names and knobs the provider operates with.

    Attributes
    ----------
    config_namespace:
        Namespace holding the cluster-scoped pool configuration document.
    config_document:
        Name of the pool configuration document.
    registry_document:
        Name of the per-namespace registry document.
    services_key:
        Key inside the registry document holding the JSON registry blob.
    conflict_retries:
        How many times a registry write is re-applied after the store reports
        a concurrent modification.
    request_timeout:
        Default per-request timeout (seconds) for store calls when the caller
        supplies no deadline.
    """

    config_namespace: str = DEFAULT_CONFIG_NAMESPACE
    config_document: str = DEFAULT_DOCUMENT
    registry_document: str = DEFAULT_DOCUMENT
    services_key: str = SERVICES_KEY
    provider_name: str = PROVIDER_NAME
    conflict_retries: int = 3
    request_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderSettings":
        env = os.environ if environ is None else environ
        document = env.get("NETLOX_CONFIG_MAP") or DEFAULT_DOCUMENT
        return cls(
            config_namespace=env.get("NETLOX_NAMESPACE") or DEFAULT_CONFIG_NAMESPACE,
            config_document=document,
            registry_document=document,
        )

    @classmethod
    def from_mapping(
        cls,
        section: Mapping[str, object],
        base: Optional["ProviderSettings"] = None,
    ) -> "ProviderSettings":
        """Build settings from a config-file section, falling back to ``base``."""

        defaults = base or cls()
        document = section.get("document")
        timeout = section.get("request_timeout", defaults.request_timeout)
        retries = int(section.get("conflict_retries", defaults.conflict_retries))
        if retries < 0:
            raise ValueError("'conflict_retries' must not be negative")
        return cls(
            config_namespace=str(section.get("config_namespace", defaults.config_namespace)),
            config_document=str(section.get("config_document", document or defaults.config_document)),
            registry_document=str(section.get("registry_document", document or defaults.registry_document)),
            services_key=str(section.get("services_key", defaults.services_key)),
            provider_name=str(section.get("provider_name", defaults.provider_name)),
            conflict_retries=retries,
            request_timeout=float(timeout) if timeout is not None else None,
        )
