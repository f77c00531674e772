"""Entry point for the standalone netlox agent."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any, Optional, Tuple

from netlox_lb.ipam import AddressManager
from netlox_lb.kube import ConfigMapStore, KubeServiceWriter, build_core_api
from netlox_lb.orchestrator import MemoryServiceWriter, ServiceWriter
from netlox_lb.reconciler import Reconciler
from netlox_lb.store import DocumentStore, MemoryDocumentStore
from netlox_provider import LoadBalancer, ProviderRegistry

from .config import AgentConfig, load_config
from .runtime import AgentRuntime, build_watchers

LOG = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def needs_cluster(config: AgentConfig) -> bool:
    return config.store.type == "kubernetes" or any(
        watcher.type == "kubernetes" for watcher in config.watchers
    )


def connect(config: AgentConfig) -> Any:
    kubeconfig = config.store.kubeconfig
    return build_core_api(
        in_cluster=config.store.in_cluster,
        kubeconfig=str(kubeconfig) if kubeconfig else None,
    )


def build_backend(config: AgentConfig, api: Optional[Any] = None) -> Tuple[DocumentStore, ServiceWriter]:
    """Create the document store and service writer selected in ``config``."""

    provider = config.provider
    store_kwargs = {
        "services_key": provider.services_key,
        "provider_name": provider.provider_name,
    }

    if config.store.type == "kubernetes":
        if config.pools:
            LOG.warning(
                "ignoring 'pools' section: pools are read from configMap %s/%s",
                provider.config_namespace,
                provider.config_document,
            )
        api = api if api is not None else connect(config)
        return ConfigMapStore(api, **store_kwargs), KubeServiceWriter(api)

    store = MemoryDocumentStore(**store_kwargs)
    if config.pools:
        store.seed(provider.config_document, provider.config_namespace, config.pools)
        LOG.info("seeded %d address pools: %s", len(config.pools), ", ".join(sorted(config.pools)))
    return store, MemoryServiceWriter()


def build_registry(config: AgentConfig, api: Optional[Any] = None) -> ProviderRegistry:
    store, writer = build_backend(config, api)
    reconciler = Reconciler(store, AddressManager(), writer, settings=config.provider)

    registry = ProviderRegistry()
    registry.register("netlox", LoadBalancer(reconciler))
    return registry


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the netlox load balancer agent")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/netlox/agent.yaml"),
        help="Path to the agent configuration file",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for in-flight reconciles on shutdown",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    config = load_config(args.config)
    api = connect(config) if needs_cluster(config) else None
    registry = build_registry(config, api)

    stop_event = Event()
    runtime = AgentRuntime(
        build_watchers(config, registry, stop_event, api),
        stop_event,
        shutdown_timeout=args.shutdown_timeout,
    )

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, draining watchers", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    runtime.start()
    try:
        runtime.wait()
    except KeyboardInterrupt:  # pragma: no cover - fallback if signal not set
        pass
    clean = runtime.stop()

    LOG.info("netlox agent stopped")
    return 0 if clean else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
